"""SQLite journal of dispatch attempts and lifecycle events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from plan_relay.storage.alembic_runner import upgrade_head
from plan_relay.storage.common import build_sqlite_engine, utc_now
from plan_relay.storage.sqlmodel_models import DispatchAttempt, DispatchEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AttemptView:
    """Readable attempt row for CLI history."""

    attempt_id: int
    run_timestamp: str
    task_id: int
    description: str
    platform: str
    model: str
    status: str
    fallback_used: bool
    rate_limited: bool
    timed_out: bool
    exit_code: int | None
    error_summary: str | None
    started_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class EventView:
    event_id: int
    event_type: str
    task_id: int | None
    created_at: datetime
    details: dict[str, object] = field(default_factory=dict)


class DispatchJournal:
    """Append-only audit trail; writes never break the dispatch loop."""

    def __init__(self, *, db_path: Path, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def init_schema(self) -> None:
        """Apply migrations up to head."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def start_attempt(  # noqa: PLR0913
        self,
        *,
        run_timestamp: str,
        task_id: int,
        description: str,
        platform: str,
        model: str,
    ) -> int | None:
        try:
            with Session(self.engine) as session:
                row = DispatchAttempt(
                    run_timestamp=run_timestamp,
                    task_id=task_id,
                    description=description,
                    platform=platform,
                    model=model,
                    status="running",
                    started_at=_to_db_datetime(utc_now()),
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return row.id
        except SQLAlchemyError as error:
            logger.warning("Journal: failed to start attempt for task %s: %s", task_id, error)
            return None

    def finish_attempt(  # noqa: PLR0913
        self,
        attempt_id: int | None,
        *,
        status: str,
        model: str,
        exit_code: int | None,
        fallback_used: bool,
        rate_limited: bool,
        timed_out: bool,
        error_summary: str | None,
    ) -> None:
        if attempt_id is None:
            return
        try:
            with Session(self.engine) as session:
                row = session.get(DispatchAttempt, attempt_id)
                if row is None:
                    return
                row.status = status
                row.model = model
                row.exit_code = exit_code
                row.fallback_used = fallback_used
                row.rate_limited = rate_limited
                row.timed_out = timed_out
                row.error_summary = error_summary
                row.finished_at = _to_db_datetime(utc_now())
                session.add(row)
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Journal: failed to finish attempt %s: %s", attempt_id, error)

    def add_event(
        self,
        event_type: str,
        *,
        task_id: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        try:
            with Session(self.engine) as session:
                session.add(
                    DispatchEvent(
                        event_type=event_type,
                        task_id=task_id,
                        details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                        if details
                        else None,
                        created_at=_to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Journal: failed to record %s event: %s", event_type, error)

    def list_attempts(self, *, limit: int = 20) -> list[AttemptView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DispatchAttempt).order_by(col(DispatchAttempt.id).desc()).limit(limit),
            ).all()
        return [_to_attempt_view(row) for row in rows]

    def list_events(self, *, limit: int = 20, task_id: int | None = None) -> list[EventView]:
        with Session(self.engine) as session:
            statement = select(DispatchEvent).order_by(col(DispatchEvent.id).desc()).limit(limit)
            if task_id is not None:
                statement = statement.where(DispatchEvent.task_id == task_id)
            rows = session.exec(statement).all()

        events: list[EventView] = []
        for row in rows:
            details: dict[str, object] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                EventView(
                    event_id=row.id or 0,
                    event_type=row.event_type,
                    task_id=row.task_id,
                    created_at=_to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_attempt_view(row: DispatchAttempt) -> AttemptView:
    return AttemptView(
        attempt_id=row.id or 0,
        run_timestamp=row.run_timestamp,
        task_id=row.task_id,
        description=row.description,
        platform=row.platform,
        model=row.model,
        status=row.status,
        fallback_used=row.fallback_used,
        rate_limited=row.rate_limited,
        timed_out=row.timed_out,
        exit_code=row.exit_code,
        error_summary=row.error_summary,
        started_at=_to_utc_aware_datetime(row.started_at),
        finished_at=(
            _to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )
