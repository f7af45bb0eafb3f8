"""Per-file state machine: claim, invoke with retries, route."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from inbox_relay.config import Settings, UnrecognizedPolicy
from inbox_relay.pipeline.invoker.base import InvocationRequest
from inbox_relay.pipeline.journal import TaskJournal
from inbox_relay.pipeline.models import (
    ArrivalNotice,
    AttemptRecord,
    FailureClass,
    FileTask,
    FileTaskState,
    TaskDisposition,
    TaskOutcome,
)
from inbox_relay.pipeline.retry import RetryController
from inbox_relay.pipeline.stages import ClaimStatus, StageMover, StageMoveError

logger = logging.getLogger(__name__)

_DISPOSITIONS = {
    FileTaskState.SUCCEEDED: TaskDisposition.SUCCEEDED,
    FileTaskState.FAILED: TaskDisposition.FAILED,
    FileTaskState.IGNORED: TaskDisposition.IGNORED,
}


class PipelineOrchestrator:
    """Drives one ``FileTask`` from arrival to a terminal stage directory.

    Stateless between files: each call creates a task record, advances it, and
    discards it once the terminal move is done. ``handle`` never raises, so one
    file's failure can never stop the watcher.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        mover: StageMover,
        retry: RetryController,
        journal: TaskJournal | None = None,
    ) -> None:
        watch = settings.watch
        if watch.processing_dir is None or watch.output_dir is None or watch.error_dir is None:
            raise ValueError("Processing, Output and Error directories must be configured.")
        self.settings = settings
        self.mover = mover
        self.retry = retry
        self.journal = journal
        self.processing_dir = watch.processing_dir.resolve()
        self.output_dir = watch.output_dir.resolve()
        self.error_dir = watch.error_dir.resolve()
        self.ignored_dir = watch.ignored_dir.resolve() if watch.ignored_dir else None
        tool_output = settings.tool_output_dir or watch.output_dir
        self.tool_output_dir = tool_output.resolve()

    def handle(self, arrival: ArrivalNotice) -> TaskOutcome:
        """Process one arrival end to end."""

        task: FileTask | None = None
        try:
            task = self._new_task(arrival.name, Path(arrival.source_path))
            status = self.mover.claim(task.source_path, task.processing_path)
            if status is ClaimStatus.DUPLICATE:
                logger.info("Already in Processing, skipping: %s", task.processing_path)
                return TaskOutcome(name=task.name, disposition=TaskDisposition.DUPLICATE)
            if status is ClaimStatus.SOURCE_MISSING:
                logger.warning("Source vanished before it could be claimed: %s", task.source_path)
                return TaskOutcome(name=task.name, disposition=TaskDisposition.VANISHED)

            task.transition(FileTaskState.CLAIMED)
            logger.info("Copied to Processing: %s", task.processing_path)
            self._journal(lambda journal: journal.record_claim(task))
            return self._drive(task, first_attempt_no=1, attempts_budget=task.max_attempts)
        except Exception as error:  # noqa: BLE001 - per-file boundary
            logger.exception("Unexpected error while handling %s", arrival.name)
            return self._fail_unexpected(task, arrival.name, error)

    def resume(
        self,
        *,
        name: str,
        source_path: Path,
        task_id: str | None = None,
        attempts_used: int = 0,
        last_failure: FailureClass | None = None,
    ) -> TaskOutcome:
        """Finish a task whose processing copy survived a previous run."""

        task: FileTask | None = None
        try:
            task = self._new_task(name, source_path, task_id=task_id)
            task.attempt = min(attempts_used, task.max_attempts)
            task.transition(FileTaskState.CLAIMED)
            self._journal(lambda journal: journal.record_claim(task))
            logger.info(
                "Resuming %s from Processing after %d attempt(s)",
                task.name,
                task.attempt,
            )
            if task.attempt >= task.max_attempts and self._is_recognized(task.name):
                task.failure_class = last_failure or FailureClass.UNEXPECTED
                task.error_summary = "Attempt budget exhausted before restart."
                return self._finish(task, FileTaskState.FAILED, self.error_dir)
            return self._drive(
                task,
                first_attempt_no=task.attempt + 1,
                attempts_budget=task.max_attempts - task.attempt,
            )
        except Exception as error:  # noqa: BLE001 - per-file boundary
            logger.exception("Unexpected error while resuming %s", name)
            return self._fail_unexpected(task, name, error)

    def _new_task(self, name: str, source_path: Path, *, task_id: str | None = None) -> FileTask:
        base_name = Path(name).name
        if base_name in {"", ".", ".."}:
            raise ValueError(f"Invalid file name: {name!r}")
        return FileTask(
            task_id=task_id or str(uuid4()),
            name=base_name,
            source_path=Path(source_path).absolute(),
            processing_path=self.processing_dir / base_name,
            output_dir=self.output_dir,
            error_dir=self.error_dir,
            max_attempts=self.settings.watch.retry_count,
        )

    def _drive(
        self,
        task: FileTask,
        *,
        first_attempt_no: int,
        attempts_budget: int,
    ) -> TaskOutcome:
        if not self._is_recognized(task.name):
            return self._route_unrecognized(task)

        task.transition(FileTaskState.PROCESSING)
        self._journal(lambda journal: journal.record_state(task))
        request = InvocationRequest.for_input(
            task.processing_path,
            output_dir=self.tool_output_dir,
            sidecar_extension=self.settings.tool.sidecar_extension,
        )
        result = self.retry.run(
            request,
            max_attempts=attempts_budget,
            first_attempt_no=first_attempt_no,
            on_attempt=lambda record: self._on_attempt(task, record),
        )
        if result.succeeded:
            return self._finish(task, FileTaskState.SUCCEEDED, self.output_dir)
        if result.interrupted:
            logger.warning(
                "Shutdown interrupted %s after %d attempt(s); left in Processing",
                task.name,
                task.attempt,
            )
            return TaskOutcome(
                name=task.name,
                disposition=TaskDisposition.INTERRUPTED,
                attempts=task.attempt,
            )

        last = result.last_attempt
        if last is not None:
            task.failure_class = last.failure_class
            task.error_summary = last.error_summary
        return self._finish(task, FileTaskState.FAILED, self.error_dir)

    def _on_attempt(self, task: FileTask, record: AttemptRecord) -> None:
        task.attempt = record.attempt_no
        self._journal(lambda journal: journal.record_attempt(task.task_id, record))

    def _route_unrecognized(self, task: FileTask) -> TaskOutcome:
        policy = self.settings.watch.unrecognized_policy
        logger.info("Unrecognized input %s; policy=%s", task.name, policy.value)
        if policy is UnrecognizedPolicy.PASS_THROUGH:
            return self._finish(task, FileTaskState.SUCCEEDED, self.output_dir)
        if policy is UnrecognizedPolicy.IGNORE and self.ignored_dir is not None:
            return self._finish(task, FileTaskState.IGNORED, self.ignored_dir)
        task.failure_class = FailureClass.UNRECOGNIZED_INPUT
        task.error_summary = f"Unrecognized file type: {task.name}"
        return self._finish(task, FileTaskState.FAILED, self.error_dir)

    def _finish(self, task: FileTask, state: FileTaskState, destination_dir: Path) -> TaskOutcome:
        route = self.mover.route(
            task.processing_path,
            destination_dir,
            source_path=task.source_path,
        )
        if not route.moved:
            raise StageMoveError(f"Processing copy of {task.name} was lost before routing.")
        task.transition(state)
        self._journal(lambda journal: journal.record_state(task, destination=route.destination))
        if state is FileTaskState.SUCCEEDED:
            logger.info("File moved to Output: %s", route.destination)
        elif state is FileTaskState.IGNORED:
            logger.info("File moved to Ignored: %s", route.destination)
        else:
            logger.error(
                "File moved to Errors: %s (%s) %s",
                route.destination,
                task.failure_class.value if task.failure_class else "unknown",
                task.error_summary or "",
            )
        return TaskOutcome(
            name=task.name,
            disposition=_DISPOSITIONS[state],
            attempts=task.attempt,
            destination=route.destination,
            failure_class=task.failure_class,
            error_summary=task.error_summary,
        )

    def _fail_unexpected(self, task: FileTask | None, name: str, error: Exception) -> TaskOutcome:
        outcome = TaskOutcome(
            name=task.name if task is not None else name,
            disposition=TaskDisposition.FAILED,
            attempts=task.attempt if task is not None else 0,
            failure_class=FailureClass.UNEXPECTED,
            error_summary=str(error),
        )
        if task is None or task.state not in {FileTaskState.CLAIMED, FileTaskState.PROCESSING}:
            return outcome

        task.failure_class = FailureClass.UNEXPECTED
        task.error_summary = str(error)
        try:
            route = self.mover.route(
                task.processing_path,
                self.error_dir,
                source_path=task.source_path,
            )
        except StageMoveError:
            logger.exception(
                "Could not route %s to Errors; left in Processing for reconciliation",
                task.name,
            )
            return outcome
        if route.moved:
            task.transition(FileTaskState.FAILED)
            self._journal(
                lambda journal: journal.record_state(task, destination=route.destination),
            )
            outcome.destination = route.destination
            logger.error("File moved to Errors: %s", route.destination)
        return outcome

    def _is_recognized(self, name: str) -> bool:
        lowered = name.lower()
        return any(lowered.endswith(ext) for ext in self.settings.watch.recognized_extensions)

    def _journal(self, action: Callable[[TaskJournal], None]) -> None:
        if self.journal is None:
            return
        try:
            action(self.journal)
        except SQLAlchemyError:
            logger.warning("Task journal write failed", exc_info=True)
