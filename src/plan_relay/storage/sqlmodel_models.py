"""SQLModel ORM tables for the dispatch journal."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class DispatchAttempt(SQLModel, table=True):
    __tablename__ = "dispatch_attempts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dispatch_attempts_task_started", "task_id", "started_at"),)

    id: int | None = Field(default=None, primary_key=True)
    run_timestamp: str = Field(index=True)
    task_id: int = Field(index=True)
    description: str
    platform: str
    model: str
    status: str = Field(index=True)
    fallback_used: bool = Field(default=False)
    rate_limited: bool = Field(default=False)
    timed_out: bool = Field(default=False)
    exit_code: int | None = Field(default=None)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class DispatchEvent(SQLModel, table=True):
    __tablename__ = "dispatch_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dispatch_events_time", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    task_id: int | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
