"""Controllers for inbox-relay CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from inbox_relay.config import ConfigError, Settings
from inbox_relay.pipeline.failure_classifier import classify_invocation, preview
from inbox_relay.pipeline.invoker import (
    InvocationRequest,
    InvokerError,
    ToolInvoker,
    build_invoker,
)
from inbox_relay.pipeline.journal import TaskJournal
from inbox_relay.pipeline.models import ArrivalNotice, TaskDisposition
from inbox_relay.pipeline.orchestrator import PipelineOrchestrator
from inbox_relay.pipeline.reconcile import ReconcileSummary, StartupReconciler
from inbox_relay.pipeline.retry import RetryController
from inbox_relay.pipeline.stages import StageMover, ensure_stage_directories
from inbox_relay.pipeline.watcher import DirectoryWatcher, FileStabilityProbe
from inbox_relay.pipeline.worker_pool import ArrivalWorkerPool

logger = logging.getLogger(__name__)

InvokerFactory = Callable[[Settings], ToolInvoker]


@dataclass(slots=True)
class WatchCommand:
    """CLI inputs for the watch command."""

    config_path: Path | None
    log_level: str | None = None


@dataclass(slots=True)
class ReconcileCommand:
    """CLI inputs for the reconcile command."""

    config_path: Path | None


@dataclass(slots=True)
class InvokeCommand:
    """CLI inputs for a one-shot tool invocation."""

    config_path: Path | None
    file_path: Path


@dataclass(slots=True)
class TasksCommand:
    """CLI inputs for listing journal records."""

    config_path: Path | None
    limit: int = 20
    unfinished: bool = False


@dataclass(slots=True)
class InvokeResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class RelayRuntime:
    """Components wired for one command run."""

    settings: Settings
    invoker: ToolInvoker
    journal: TaskJournal | None
    orchestrator: PipelineOrchestrator


class RelayCliController:
    """Coordinates inbox-relay command execution."""

    def __init__(self, *, invoker_factory: InvokerFactory = build_invoker) -> None:
        self.invoker_factory = invoker_factory

    def watch(
        self,
        command: WatchCommand,
        *,
        stop_event: threading.Event | None = None,
    ) -> list[str]:
        """Watch the inbox until ``stop_event`` is set or SIGINT/SIGTERM arrives."""

        settings = load_settings(command.config_path)
        logging.getLogger().setLevel((command.log_level or settings.log_level).upper())
        stop = stop_event or threading.Event()
        counts: Counter[str] = Counter()
        counts_lock = threading.Lock()

        with _runtime(settings, invoker_factory=self.invoker_factory, stop_event=stop) as runtime:
            reconciled = StartupReconciler(runtime.orchestrator, journal=runtime.journal).run()
            probe = FileStabilityProbe.from_settings(settings.watch)

            def process(arrival: ArrivalNotice) -> None:
                probe.wait_until_stable(arrival.source_path)
                outcome = runtime.orchestrator.handle(arrival)
                with counts_lock:
                    counts[outcome.disposition.value] += 1

            pool = ArrivalWorkerPool(
                process,
                workers=settings.watch.worker_count,
                queue_size=settings.watch.queue_size,
            )
            watcher = DirectoryWatcher(settings.watch, pool.submit)
            pool.start()
            with _signal_handlers(stop):
                try:
                    watcher.start()
                    if settings.watch.scan_existing_on_start:
                        watcher.scan_existing()
                    logger.info("Watching for files. Press Ctrl+C to exit.")
                    while not stop.wait(0.5):
                        pass
                finally:
                    stop.set()
                    watcher.stop()
                    runtime.invoker.terminate_all()
                    pool.stop(timeout=10.0)

        return [
            "Watcher stopped: "
            f"succeeded={counts[TaskDisposition.SUCCEEDED.value]} "
            f"failed={counts[TaskDisposition.FAILED.value]} "
            f"ignored={counts[TaskDisposition.IGNORED.value]} "
            f"duplicates={counts[TaskDisposition.DUPLICATE.value]} "
            f"interrupted={counts[TaskDisposition.INTERRUPTED.value]}",
            _reconcile_line(reconciled),
        ]

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = load_settings(command.config_path)
        with _runtime(settings, invoker_factory=self.invoker_factory) as runtime:
            summary = StartupReconciler(runtime.orchestrator, journal=runtime.journal).run()
        lines = [_reconcile_line(summary)]
        for outcome in [*summary.resumed, *summary.orphans]:
            lines.append(
                f"  {outcome.name}: {outcome.disposition.value} attempts={outcome.attempts} "
                f"destination={outcome.destination or '-'}",
            )
        return lines

    def invoke(self, command: InvokeCommand) -> InvokeResult:
        """Run the tool once for a file, without claiming or routing it."""

        settings = load_settings(command.config_path)
        tool_output_dir = settings.tool_output_dir
        if tool_output_dir is None:
            raise ConfigError("WatchSettings:OutputDirectory is required.")
        request = InvocationRequest.for_input(
            command.file_path.resolve(),
            output_dir=tool_output_dir.resolve(),
            sidecar_extension=settings.tool.sidecar_extension,
        )
        invoker = self.invoker_factory(settings)
        try:
            invocation = invoker.invoke(request)
        except InvokerError as error:
            return InvokeResult(
                lines=[f"Invocation failed: {error.failure_class.value}: {error}"],
                success=False,
            )

        failure = classify_invocation(invocation)
        lines = [
            f"Command: {' '.join(invocation.command)}",
            f"exit_code={invocation.exit_code if invocation.exit_code is not None else '-'} "
            f"timed_out={'yes' if invocation.timed_out else 'no'} "
            f"elapsed={invocation.elapsed_seconds:.2f}s",
        ]
        if invocation.stderr:
            lines.append(f"stderr: {preview(invocation.stderr, limit=500)}")
        if failure is not None:
            lines.append(f"Result: failed ({failure.reason_code})")
        else:
            lines.append("Result: ok")
        return InvokeResult(lines=lines, success=failure is None)

    def tasks(self, command: TasksCommand) -> list[str]:
        settings = load_settings(command.config_path)
        if settings.journal_path is None:
            raise ConfigError("Task journal is disabled (JournalPath is empty).")
        journal = TaskJournal(settings.journal_path)
        try:
            journal.init_schema()
            records = journal.list_tasks(limit=command.limit, unfinished_only=command.unfinished)
        finally:
            journal.close()

        if not records:
            return ["No tasks recorded."]
        return [
            f"{record.task_id} {record.state.value} "
            f"attempts={record.attempt}/{record.max_attempts} "
            f"name={record.name} "
            f"failure={record.failure_class.value if record.failure_class else '-'} "
            f"updated={record.updated_at.isoformat(timespec='seconds')} "
            f"destination={record.destination_path or '-'}"
            for record in records
        ]


def load_settings(config_path: Path | None) -> Settings:
    settings = Settings.from_file(config_path)
    settings.validate()
    return settings


def _reconcile_line(summary: ReconcileSummary) -> str:
    return (
        "Reconciled: "
        f"resumed={len(summary.resumed)} orphans={len(summary.orphans)} closed={summary.closed}"
    )


@contextmanager
def _runtime(
    settings: Settings,
    *,
    invoker_factory: InvokerFactory,
    stop_event: threading.Event | None = None,
) -> Iterator[RelayRuntime]:
    ensure_stage_directories(settings)
    journal: TaskJournal | None = None
    if settings.journal_path is not None:
        journal = TaskJournal(settings.journal_path)
    try:
        if journal is not None:
            journal.init_schema()
        invoker = invoker_factory(settings)
        retry = RetryController(
            invoker,
            delay_seconds=settings.watch.retry_delay_seconds,
            stop_event=stop_event,
        )
        orchestrator = PipelineOrchestrator(
            settings=settings,
            mover=StageMover(),
            retry=retry,
            journal=journal,
        )
        yield RelayRuntime(
            settings=settings,
            invoker=invoker,
            journal=journal,
            orchestrator=orchestrator,
        )
    finally:
        if journal is not None:
            journal.close()


@contextmanager
def _signal_handlers(stop_event: threading.Event) -> Iterator[None]:
    # Handlers can only be installed from the main thread.
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    signals = [signal.SIGINT, signal.SIGTERM]
    originals = {signum: signal.getsignal(signum) for signum in signals}

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s; shutting down", name)
        stop_event.set()

    for signum in signals:
        signal.signal(signum, _handler)
    try:
        yield
    finally:
        for signum, original in originals.items():
            signal.signal(signum, original)
