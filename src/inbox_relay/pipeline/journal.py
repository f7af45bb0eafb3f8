"""Persistent journal of file tasks, used to reconcile after a restart."""

from __future__ import annotations

from pathlib import Path

from sqlmodel import Session, col, select

from inbox_relay.pipeline.models import (
    AttemptRecord,
    FailureClass,
    FileTask,
    FileTaskRecordView,
    FileTaskState,
)
from inbox_relay.storage.alembic_runner import upgrade_head
from inbox_relay.storage.common import as_utc, build_journal_engine, utc_now
from inbox_relay.storage.sqlmodel_models import FileTaskAttemptRow, FileTaskRow

_UNFINISHED_STATES = (
    FileTaskState.ARRIVED.value,
    FileTaskState.CLAIMED.value,
    FileTaskState.PROCESSING.value,
)


class TaskJournal:
    """Task state persistence facade backed by SQLModel + SQLite.

    Safe to share between worker threads: every call opens its own session.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_journal_engine(db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def record_claim(self, task: FileTask) -> None:
        """Insert (or refresh, on resume) the row for a claimed task."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(FileTaskRow, task.task_id)
            if row is None:
                row = FileTaskRow(
                    task_id=task.task_id,
                    name=task.name,
                    source_path=str(task.source_path),
                    processing_path=str(task.processing_path),
                    state=task.state.value,
                    attempt=task.attempt,
                    max_attempts=task.max_attempts,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.state = task.state.value
                row.attempt = task.attempt
                row.max_attempts = task.max_attempts
                row.updated_at = now
            session.add(row)
            session.commit()

    def record_attempt(self, task_id: str, record: AttemptRecord) -> None:
        """Store one attempt, bump the task's attempt counter and keep the last failure."""

        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                FileTaskAttemptRow(
                    task_id=task_id,
                    attempt_no=record.attempt_no,
                    succeeded=record.succeeded,
                    exit_code=record.exit_code,
                    timed_out=record.timed_out,
                    failure_class=_failure_value(record.failure_class),
                    reason_code=record.reason_code,
                    elapsed_ms=int(record.elapsed_seconds * 1000),
                    error_summary=record.error_summary,
                    stderr_preview=record.stderr or None,
                    created_at=now,
                ),
            )
            row = session.get(FileTaskRow, task_id)
            if row is not None:
                row.attempt = max(row.attempt, record.attempt_no)
                if not record.succeeded:
                    row.failure_class = _failure_value(record.failure_class)
                    row.error_summary = record.error_summary
                row.updated_at = now
                session.add(row)
            session.commit()

    def record_state(self, task: FileTask, *, destination: Path | None = None) -> None:
        """Persist the task's current state; terminal states also stamp ``finished_at``."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(FileTaskRow, task.task_id)
            if row is None:
                return
            row.state = task.state.value
            row.attempt = task.attempt
            row.failure_class = _failure_value(task.failure_class)
            row.error_summary = task.error_summary
            if destination is not None:
                row.destination_path = str(destination)
            if task.state.is_terminal:
                row.finished_at = now
            row.updated_at = now
            session.add(row)
            session.commit()

    def close_record(
        self,
        task_id: str,
        *,
        state: FileTaskState,
        error_summary: str | None = None,
        destination: Path | None = None,
    ) -> None:
        """Close a record found stale at startup without a live task object."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(FileTaskRow, task_id)
            if row is None:
                return
            row.state = state.value
            if error_summary is not None:
                row.error_summary = error_summary
            if destination is not None:
                row.destination_path = str(destination)
            row.finished_at = now
            row.updated_at = now
            session.add(row)
            session.commit()

    def get_task(self, task_id: str) -> FileTaskRecordView | None:
        with Session(self.engine) as session:
            row = session.get(FileTaskRow, task_id)
            return _to_view(row) if row is not None else None

    def list_unfinished(self) -> list[FileTaskRecordView]:
        """Tasks that never reached a terminal state, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(FileTaskRow)
                .where(col(FileTaskRow.state).in_(_UNFINISHED_STATES))
                .order_by(col(FileTaskRow.created_at).asc()),
            ).all()
            return [_to_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        limit: int = 50,
        unfinished_only: bool = False,
    ) -> list[FileTaskRecordView]:
        """Most recently updated tasks first."""

        with Session(self.engine) as session:
            statement = select(FileTaskRow)
            if unfinished_only:
                statement = statement.where(col(FileTaskRow.state).in_(_UNFINISHED_STATES))
            rows = session.exec(
                statement.order_by(col(FileTaskRow.updated_at).desc()).limit(limit),
            ).all()
            return [_to_view(row) for row in rows]

    def list_attempts(self, task_id: str) -> list[AttemptRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(FileTaskAttemptRow)
                .where(FileTaskAttemptRow.task_id == task_id)
                .order_by(col(FileTaskAttemptRow.attempt_no).asc()),
            ).all()
            return [
                AttemptRecord(
                    attempt_no=row.attempt_no,
                    succeeded=row.succeeded,
                    failure_class=FailureClass(row.failure_class) if row.failure_class else None,
                    reason_code=row.reason_code,
                    error_summary=row.error_summary,
                    exit_code=row.exit_code,
                    timed_out=row.timed_out,
                    elapsed_seconds=(row.elapsed_ms or 0) / 1000.0,
                    stderr=row.stderr_preview or "",
                )
                for row in rows
            ]


def _failure_value(value: FailureClass | None) -> str | None:
    return value.value if value is not None else None


def _to_view(row: FileTaskRow) -> FileTaskRecordView:
    return FileTaskRecordView(
        task_id=row.task_id,
        name=row.name,
        source_path=row.source_path,
        processing_path=row.processing_path,
        state=FileTaskState(row.state),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        error_summary=row.error_summary,
        destination_path=row.destination_path,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        finished_at=as_utc(row.finished_at) if row.finished_at is not None else None,
    )
