from __future__ import annotations

from pathlib import Path

import allure
import pytest
from sqlalchemy import inspect, text

from inbox_relay.pipeline.journal import TaskJournal
from inbox_relay.pipeline.models import AttemptRecord, FailureClass, FileTask, FileTaskState

pytestmark = [
    allure.epic("Inbox Relay"),
    allure.feature("Task Journal"),
]


@pytest.fixture()
def journal(tmp_path: Path):
    journal = TaskJournal(tmp_path / "state" / "journal.db")
    journal.init_schema()
    yield journal
    journal.close()


def _task(tmp_path: Path, name: str = "a.txt", task_id: str = "task-1") -> FileTask:
    return FileTask(
        task_id=task_id,
        name=name,
        source_path=tmp_path / "input" / name,
        processing_path=tmp_path / "processing" / name,
        output_dir=tmp_path / "output",
        error_dir=tmp_path / "error",
        max_attempts=3,
        state=FileTaskState.CLAIMED,
    )


def test_migration_creates_tables(journal: TaskJournal) -> None:
    tables = set(inspect(journal.engine).get_table_names())
    assert {"file_tasks", "file_task_attempts", "alembic_version"} <= tables


def test_journal_connections_use_wal_and_foreign_keys(journal: TaskJournal) -> None:
    with journal.engine.connect() as connection:
        assert connection.execute(text("PRAGMA journal_mode")).scalar() == "wal"
        assert connection.execute(text("PRAGMA foreign_keys")).scalar() == 1


def test_init_schema_is_idempotent(journal: TaskJournal) -> None:
    journal.init_schema()
    assert journal.list_tasks() == []


def test_claim_attempts_and_terminal_state_are_persisted(
    journal: TaskJournal,
    tmp_path: Path,
) -> None:
    task = _task(tmp_path)
    journal.record_claim(task)
    journal.record_attempt(
        task.task_id,
        AttemptRecord(
            attempt_no=1,
            succeeded=False,
            failure_class=FailureClass.TOOL_EXIT_NONZERO,
            reason_code="exit_code_1",
            error_summary="Tool exited with code 1.",
            exit_code=1,
            elapsed_seconds=0.25,
            stderr="boom",
        ),
    )

    view = journal.get_task(task.task_id)
    assert view is not None
    assert view.state is FileTaskState.CLAIMED
    assert view.attempt == 1
    assert view.finished_at is None
    assert [item.task_id for item in journal.list_unfinished()] == [task.task_id]

    task.attempt = 1
    task.failure_class = FailureClass.TOOL_EXIT_NONZERO
    task.error_summary = "Tool exited with code 1."
    task.transition(FileTaskState.FAILED)
    journal.record_state(task, destination=tmp_path / "error" / "a.txt")

    view = journal.get_task(task.task_id)
    assert view is not None
    assert view.state is FileTaskState.FAILED
    assert view.failure_class is FailureClass.TOOL_EXIT_NONZERO
    assert view.destination_path == str(tmp_path / "error" / "a.txt")
    assert view.finished_at is not None
    assert journal.list_unfinished() == []

    attempts = journal.list_attempts(task.task_id)
    assert len(attempts) == 1
    assert attempts[0].exit_code == 1
    assert attempts[0].elapsed_seconds == 0.25
    assert attempts[0].stderr == "boom"


def test_close_record_marks_stale_task_finished(journal: TaskJournal, tmp_path: Path) -> None:
    task = _task(tmp_path)
    journal.record_claim(task)

    journal.close_record(
        task.task_id,
        state=FileTaskState.FAILED,
        error_summary="Processing copy missing at startup.",
    )

    view = journal.get_task(task.task_id)
    assert view is not None
    assert view.state is FileTaskState.FAILED
    assert view.error_summary == "Processing copy missing at startup."
    assert view.finished_at is not None


def test_list_tasks_filters_and_limits(journal: TaskJournal, tmp_path: Path) -> None:
    for index in range(3):
        journal.record_claim(_task(tmp_path, name=f"f{index}.txt", task_id=f"task-{index}"))
    done = _task(tmp_path, name="done.txt", task_id="task-done")
    journal.record_claim(done)
    done.transition(FileTaskState.SUCCEEDED)
    journal.record_state(done)

    assert len(journal.list_tasks(limit=2)) == 2
    unfinished = journal.list_tasks(unfinished_only=True)
    assert {view.task_id for view in unfinished} == {"task-0", "task-1", "task-2"}
