"""Typed records for messages, plans, dispatch runs and the session lock.

Everything on disk is loose JSON written by more than one process. These
dataclasses are the only way the rest of the package sees that data: each
record has a ``from_record`` parser that rejects malformed input with
``RecordValidationError`` and a ``to_record`` serializer that keeps the field
names the chat frontend expects.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RecordValidationError(ValueError):
    """Raised when a JSON record does not match its schema."""


class Origin(str, Enum):
    """Who produced a queued message."""

    USER = "user"
    AGENT = "agent"


class TaskStatus(str, Enum):
    """Per-task lifecycle, one direction only."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class PlanStatus(str, Enum):
    """Plan-level states shared by ExecutionPlan and DispatchRun."""

    PENDING_REVIEW = "pending_review"
    CONFIRMING = "confirming"
    SELECTING_MODEL = "selecting_model"
    APPROVED = "approved"
    EXECUTING = "executing"
    STOPPED = "stopped"
    COMPLETED = "completed"


class ExecutionMode(str, Enum):
    """Whether the dispatcher pauses for the operator after each task."""

    STEP = "step"
    AUTO = "auto"


class Tier(str, Enum):
    """Difficulty/cost bucket used to pick default platform and model."""

    TOP = "top"
    MID = "mid"
    FREE = "free"


class BranchMode(str, Enum):
    CONTINUE = "continue"
    FRESH = "fresh"


@dataclass(slots=True)
class DocumentRef:
    """File attachment queued for delivery instead of plain text."""

    path: str
    caption: str = ""


@dataclass(slots=True)
class Message:
    """One inbound or outbound queue entry."""

    id: str
    timestamp: str
    origin: Origin
    text: str | None = None
    document: DocumentRef | None = None
    read: bool = False
    sent: bool = False
    reply_markup: dict[str, Any] | None = None

    def to_record(self) -> dict[str, object]:
        record: dict[str, object] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "from": self.origin.value,
        }
        if self.document is not None:
            record["type"] = "document"
            record["filePath"] = self.document.path
            record["caption"] = self.document.caption
        else:
            record["text"] = self.text or ""
        if self.origin is Origin.USER:
            record["read"] = self.read
        else:
            record["sent"] = self.sent
        if self.reply_markup is not None:
            record["reply_markup"] = self.reply_markup
        return record

    @classmethod
    def from_record(cls, record: object) -> Message:
        payload = _require_mapping(record, "message")
        origin = _parse_enum(Origin, payload.get("from", Origin.USER.value), "message.from")
        document = None
        text = None
        if payload.get("type") == "document":
            document = DocumentRef(
                path=_require_str(payload, "filePath", "message"),
                caption=_optional_str(payload, "caption", "message") or "",
            )
        else:
            text = _require_str(payload, "text", "message")
        reply_markup = payload.get("reply_markup")
        if reply_markup is not None and not isinstance(reply_markup, dict):
            raise RecordValidationError("message.reply_markup must be an object")
        return cls(
            id=_require_str(payload, "id", "message"),
            timestamp=_require_str(payload, "timestamp", "message"),
            origin=origin,
            text=text,
            document=document,
            read=_optional_bool(payload, "read", "message"),
            sent=_optional_bool(payload, "sent", "message"),
            reply_markup=reply_markup,
        )


@dataclass(slots=True)
class Task:
    """One atomic unit of planned work."""

    id: int
    description: str
    summary: str | None = None
    difficulty: int = 0
    tier: Tier = Tier.MID
    platform: str | None = None
    model: str | None = None
    deps: list[int] = field(default_factory=list)
    scope: list[str] = field(default_factory=list)
    # planner hint only; execution is always sequential
    parallel: bool = False
    task_status: TaskStatus | None = None
    error: str | None = None

    def to_record(self) -> dict[str, object]:
        record: dict[str, object] = {
            "id": self.id,
            "description": self.description,
            "difficulty": self.difficulty,
            "tier": self.tier.value,
            "platform": self.platform,
            "model": self.model,
            "deps": list(self.deps),
            "parallel": self.parallel,
            "taskStatus": self.task_status.value if self.task_status is not None else None,
        }
        if self.summary is not None:
            record["summary"] = self.summary
        if self.scope:
            record["scope"] = list(self.scope)
        if self.error is not None:
            record["error"] = self.error
        return record

    @classmethod
    def from_record(cls, record: object) -> Task:
        payload = _require_mapping(record, "task")
        status_raw = payload.get("taskStatus")
        return cls(
            id=_require_int(payload, "id", "task"),
            description=_require_str(payload, "description", "task"),
            summary=_optional_str(payload, "summary", "task"),
            difficulty=_optional_int(payload, "difficulty", "task") or 0,
            tier=_parse_enum(Tier, payload.get("tier") or Tier.MID.value, "task.tier"),
            platform=_optional_str(payload, "platform", "task"),
            model=_optional_str(payload, "model", "task"),
            deps=_parse_deps(payload.get("deps")),
            scope=_parse_scope(payload.get("scope")),
            parallel=_optional_bool(payload, "parallel", "task"),
            task_status=(
                _parse_enum(TaskStatus, status_raw, "task.taskStatus")
                if status_raw is not None
                else None
            ),
            error=_optional_str(payload, "error", "task"),
        )


@dataclass(slots=True)
class TaskCounts:
    """Status histogram over a task list."""

    total: int = 0
    pending: int = 0
    running: int = 0
    done: int = 0
    error: int = 0

    @property
    def remaining(self) -> int:
        return self.total - self.done - self.error

    @classmethod
    def of(cls, statuses: Iterable[TaskStatus | None]) -> TaskCounts:
        counts = cls()
        for status in statuses:
            counts.total += 1
            if status is TaskStatus.DONE:
                counts.done += 1
            elif status is TaskStatus.ERROR:
                counts.error += 1
            elif status is TaskStatus.RUNNING:
                counts.running += 1
            else:
                counts.pending += 1
        return counts


@dataclass(slots=True)
class ExecutionPlan:
    """Editable task list plus its approval status."""

    status: PlanStatus
    tasks: list[Task]
    spec_ref: str | None = None
    default_platform: str | None = None
    default_model: str | None = None

    def task(self, task_id: int) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def counts(self) -> TaskCounts:
        return TaskCounts.of(task.task_status for task in self.tasks)

    def to_record(self) -> dict[str, object]:
        record: dict[str, object] = {
            "status": self.status.value,
            "tasks": [task.to_record() for task in self.tasks],
        }
        if self.spec_ref is not None:
            record["specRef"] = self.spec_ref
        if self.default_platform is not None:
            record["defaultPlatform"] = self.default_platform
        if self.default_model is not None:
            record["defaultModel"] = self.default_model
        return record

    @classmethod
    def from_record(cls, record: object) -> ExecutionPlan:
        payload = _require_mapping(record, "executionPlan")
        tasks_raw = payload.get("tasks")
        if not isinstance(tasks_raw, list):
            raise RecordValidationError("executionPlan.tasks must be a list")
        return cls(
            status=_parse_enum(
                PlanStatus,
                payload.get("status") or PlanStatus.PENDING_REVIEW.value,
                "executionPlan.status",
            ),
            tasks=[Task.from_record(item) for item in tasks_raw],
            spec_ref=_optional_str(payload, "specRef", "executionPlan"),
            default_platform=_optional_str(payload, "defaultPlatform", "executionPlan"),
            default_model=_optional_str(payload, "defaultModel", "executionPlan"),
        )


@dataclass(slots=True)
class DispatchTask:
    """Execution-facing projection of one plan task."""

    id: int
    description: str
    platform: str
    model: str
    deps: list[int] = field(default_factory=list)
    scope: list[str] = field(default_factory=list)
    parallel: bool = False
    summary: str | None = None
    task_status: TaskStatus | None = None
    error: str | None = None

    @classmethod
    def from_task(cls, task: Task, *, platform: str, model: str) -> DispatchTask:
        return cls(
            id=task.id,
            description=task.description,
            platform=task.platform or platform,
            model=task.model or model,
            deps=list(task.deps),
            scope=list(task.scope),
            parallel=task.parallel,
            summary=task.summary,
            task_status=task.task_status,
            error=task.error,
        )

    def to_record(self) -> dict[str, object]:
        record: dict[str, object] = {
            "id": self.id,
            "description": self.description,
            "platform": self.platform,
            "model": self.model,
            "parallel": self.parallel,
            "deps": list(self.deps),
        }
        if self.scope:
            record["scope"] = list(self.scope)
        if self.summary is not None:
            record["summary"] = self.summary
        if self.task_status is not None:
            record["taskStatus"] = self.task_status.value
        if self.error is not None:
            record["error"] = self.error
        return record

    @classmethod
    def from_record(cls, record: object) -> DispatchTask:
        payload = _require_mapping(record, "dispatch.task")
        status_raw = payload.get("taskStatus")
        return cls(
            id=_require_int(payload, "id", "dispatch.task"),
            description=_require_str(payload, "description", "dispatch.task"),
            platform=_require_str(payload, "platform", "dispatch.task"),
            model=_require_str(payload, "model", "dispatch.task"),
            deps=_parse_deps(payload.get("deps")),
            scope=_parse_scope(payload.get("scope")),
            parallel=_optional_bool(payload, "parallel", "dispatch.task"),
            summary=_optional_str(payload, "summary", "dispatch.task"),
            task_status=(
                _parse_enum(TaskStatus, status_raw, "dispatch.task.taskStatus")
                if status_raw is not None
                else None
            ),
            error=_optional_str(payload, "error", "dispatch.task"),
        )


@dataclass(slots=True)
class DispatchRun:
    """The single approved snapshot the dispatcher consumes."""

    timestamp: str
    status: PlanStatus
    tasks: list[DispatchTask]
    mode: ExecutionMode = ExecutionMode.STEP
    spec_ref: str | None = None
    awaiting_continue: bool = False

    def task(self, task_id: int) -> DispatchTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def counts(self) -> TaskCounts:
        return TaskCounts.of(task.task_status for task in self.tasks)

    def to_record(self) -> dict[str, object]:
        record: dict[str, object] = {
            "timestamp": self.timestamp,
            "status": self.status.value,
            "mode": self.mode.value,
            "tasks": [task.to_record() for task in self.tasks],
        }
        if self.spec_ref is not None:
            record["specRef"] = self.spec_ref
        if self.awaiting_continue:
            record["awaitingContinue"] = True
        return record

    @classmethod
    def from_record(cls, record: object) -> DispatchRun:
        payload = _require_mapping(record, "dispatch")
        tasks_raw = payload.get("tasks")
        if not isinstance(tasks_raw, list):
            raise RecordValidationError("dispatch.tasks must be a list")
        return cls(
            timestamp=_require_str(payload, "timestamp", "dispatch"),
            status=_parse_enum(PlanStatus, payload.get("status"), "dispatch.status"),
            tasks=[DispatchTask.from_record(item) for item in tasks_raw],
            mode=_parse_enum(
                ExecutionMode,
                payload.get("mode") or ExecutionMode.STEP.value,
                "dispatch.mode",
            ),
            spec_ref=_optional_str(payload, "specRef", "dispatch"),
            awaiting_continue=_optional_bool(payload, "awaitingContinue", "dispatch"),
        )


@dataclass(slots=True)
class LockInfo:
    """Contents of the session lock marker."""

    holder: str
    pid: int
    acquired_at: str
    agent_pid: int | None = None

    def to_record(self) -> dict[str, object]:
        return {
            "holder": self.holder,
            "pid": self.pid,
            "acquired_at": self.acquired_at,
            "agent_pid": self.agent_pid,
        }

    @classmethod
    def from_record(cls, record: object) -> LockInfo:
        payload = _require_mapping(record, "lock")
        return cls(
            holder=_require_str(payload, "holder", "lock"),
            pid=_require_int(payload, "pid", "lock"),
            acquired_at=_require_str(payload, "acquired_at", "lock"),
            agent_pid=_optional_int(payload, "agent_pid", "lock"),
        )


def _require_mapping(value: object, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise RecordValidationError(f"{name} must be an object")
    return value


def _require_str(payload: dict[str, Any], key: str, name: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise RecordValidationError(f"{name}.{key} must be a string")
    return value


def _optional_str(payload: dict[str, Any], key: str, name: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RecordValidationError(f"{name}.{key} must be a string")
    return value


def _require_int(payload: dict[str, Any], key: str, name: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise RecordValidationError(f"{name}.{key} must be an integer")
    return value


def _optional_int(payload: dict[str, Any], key: str, name: str) -> int | None:
    if payload.get(key) is None:
        return None
    return _require_int(payload, key, name)


def _optional_bool(payload: dict[str, Any], key: str, name: str) -> bool:
    value = payload.get(key, False)
    if not isinstance(value, bool):
        raise RecordValidationError(f"{name}.{key} must be a boolean")
    return value


def _parse_deps(value: object) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise RecordValidationError("task.deps must be a list")
    deps: list[int] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise RecordValidationError(f"task.deps entries must be integers: {item!r}")
        deps.append(item)
    return deps


def _parse_scope(value: object) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise RecordValidationError("task.scope must be a list of paths")
    return list(value)


def _parse_enum(enum_type: type[Enum], value: object, name: str) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        raise RecordValidationError(f"Unsupported {name}: {value!r}") from None
