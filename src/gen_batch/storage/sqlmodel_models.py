"""SQLModel ORM tables for the generation queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel

REQUEST_STATUSES = ("queued", "submitting", "in_progress", "done", "failed", "timeout")
DOWNLOAD_STATES = ("queued", "running", "done", "failed")


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ",".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class GenerationRequest(SQLModel, table=True):
    __tablename__ = "requests"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(_in_clause("status", REQUEST_STATUSES), name="ck_requests_status"),
        Index("idx_requests_queue", "status", "request_index"),
    )

    id: int | None = Field(default=None, primary_key=True)
    request_index: int = Field(unique=True)
    prompt_text: str = Field(sa_column=Column(Text, nullable=False))
    tail_slug: str
    fingerprint: str = Field(unique=True)
    status: str = Field(index=True)
    submit_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    done_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationAttempt(SQLModel, table=True):
    __tablename__ = "attempts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_attempts_request_take", "request_id", "take_index"),)

    id: int | None = Field(default=None, primary_key=True)
    request_id: int = Field(
        sa_column=Column(
            ForeignKey("requests.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    take_index: int
    operation_id: str = Field(unique=True)
    scene_id: str | None = None
    status: str | None = Field(default=None, index=True)
    locator: str | None = Field(default=None, sa_column=Column(Text))
    model: str | None = None
    duration_sec: int | None = None
    last_poll_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    downloaded: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    file_path: str | None = None
    submission_round: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DownloadTask(SQLModel, table=True):
    __tablename__ = "download_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(_in_clause("state", DOWNLOAD_STATES), name="ck_download_tasks_state"),
        Index("idx_download_tasks_state", "state", "id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    request_id: int = Field(
        sa_column=Column(
            ForeignKey("requests.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_id: int = Field(
        sa_column=Column(
            ForeignKey("attempts.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    state: str
    retries: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class RequestEvent(SQLModel, table=True):
    __tablename__ = "request_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_request_events_request_time", "request_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    request_id: int = Field(
        sa_column=Column(
            ForeignKey("requests.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
