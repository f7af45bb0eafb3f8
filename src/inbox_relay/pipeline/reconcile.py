"""Startup reconciliation of work left behind by a previous run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from inbox_relay.pipeline.journal import TaskJournal
from inbox_relay.pipeline.models import FileTaskRecordView, FileTaskState, TaskOutcome
from inbox_relay.pipeline.orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileSummary:
    resumed: list[TaskOutcome] = field(default_factory=list)
    orphans: list[TaskOutcome] = field(default_factory=list)
    closed: int = 0

    @property
    def total(self) -> int:
        return len(self.resumed) + len(self.orphans) + self.closed


class StartupReconciler:
    """Finish tasks that were claimed but never routed.

    Journal records still unfinished are resumed from their processing copy
    with whatever attempt budget is left. Files sitting in Processing with no
    record at all are treated as fresh claims.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        *,
        journal: TaskJournal | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.journal = journal

    def run(self) -> ReconcileSummary:
        summary = ReconcileSummary()
        known: set[str] = set()

        if self.journal is not None:
            for record in self.journal.list_unfinished():
                known.add(record.name)
                processing_path = Path(record.processing_path)
                if processing_path.exists():
                    summary.resumed.append(self._resume_record(record))
                else:
                    self._close_missing(self.journal, record)
                    summary.closed += 1

        for path in sorted(self.orchestrator.processing_dir.iterdir()):
            if not path.is_file() or path.name in known:
                continue
            logger.warning("Orphan file in Processing with no task record: %s", path.name)
            summary.orphans.append(
                self.orchestrator.resume(
                    name=path.name,
                    source_path=self._input_path(path.name),
                ),
            )

        if summary.total:
            logger.info(
                "Reconciled %d resumed, %d orphan(s), %d closed record(s)",
                len(summary.resumed),
                len(summary.orphans),
                summary.closed,
            )
        return summary

    def _resume_record(self, record: FileTaskRecordView) -> TaskOutcome:
        return self.orchestrator.resume(
            name=record.name,
            source_path=Path(record.source_path),
            task_id=record.task_id,
            attempts_used=record.attempt,
            last_failure=record.failure_class,
        )

    def _close_missing(self, journal: TaskJournal, record: FileTaskRecordView) -> None:
        output_copy = self.orchestrator.output_dir / record.name
        error_copy = self.orchestrator.error_dir / record.name
        if output_copy.exists():
            state, destination, summary = FileTaskState.SUCCEEDED, output_copy, None
        elif error_copy.exists():
            state, destination, summary = FileTaskState.FAILED, error_copy, None
        else:
            state, destination = FileTaskState.FAILED, None
            summary = "Processing copy missing at startup."
        logger.warning(
            "Closing stale record %s for %s as %s",
            record.task_id,
            record.name,
            state.value,
        )
        journal.close_record(
            record.task_id,
            state=state,
            error_summary=summary,
            destination=destination,
        )

    def _input_path(self, name: str) -> Path:
        input_dir = self.orchestrator.settings.watch.input_dir
        if input_dir is None:
            raise ValueError("Input directory must be configured.")
        return input_dir.resolve() / name
