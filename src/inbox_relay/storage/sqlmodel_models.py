"""SQLModel ORM tables for the task journal."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class FileTaskRow(SQLModel, table=True):
    __tablename__ = "file_tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    source_path: str
    processing_path: str
    state: str = Field(index=True)
    attempt: int = 0
    max_attempts: int
    failure_class: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    destination_path: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class FileTaskAttemptRow(SQLModel, table=True):
    __tablename__ = "file_task_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "task_id",
            "attempt_no",
            name="uq_file_task_attempts_task_attempt_no",
        ),
    )

    attempt_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("file_tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    attempt_no: int
    succeeded: bool
    exit_code: int | None = None
    timed_out: bool = False
    failure_class: str | None = None
    reason_code: str
    elapsed_ms: int | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    stderr_preview: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
