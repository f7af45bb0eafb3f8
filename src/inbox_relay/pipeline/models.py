"""Domain models for the file pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class FileTaskState(str, Enum):
    """Lifecycle of one arriving file."""

    ARRIVED = "arrived"
    CLAIMED = "claimed"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {FileTaskState.SUCCEEDED, FileTaskState.FAILED, FileTaskState.IGNORED},
)


class FailureClass(str, Enum):
    """Normalized failure classes for attempts and tasks."""

    TIMEOUT = "timeout"
    TOOL_EXIT_NONZERO = "tool_exit_nonzero"
    TOOL_NOT_FOUND = "tool_not_found"
    RESOURCE_MISSING = "resource_missing"
    INPUT_MISSING = "input_missing"
    FILESYSTEM = "filesystem"
    UNRECOGNIZED_INPUT = "unrecognized_input"
    UNEXPECTED = "unexpected"


class TaskDisposition(str, Enum):
    """How the orchestrator finished with one arrival."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    VANISHED = "vanished"
    INTERRUPTED = "interrupted"


@dataclass(slots=True, frozen=True)
class ArrivalNotice:
    """A detected file arrival in the Input directory."""

    name: str
    source_path: Path


@dataclass(slots=True)
class FileTask:
    """Unit of work for one arriving file. Owned and mutated only by the orchestrator."""

    task_id: str
    name: str
    source_path: Path
    processing_path: Path
    output_dir: Path
    error_dir: Path
    max_attempts: int
    attempt: int = 0
    state: FileTaskState = FileTaskState.ARRIVED
    failure_class: FailureClass | None = None
    error_summary: str | None = None

    def transition(self, state: FileTaskState) -> None:
        if self.state.is_terminal:
            raise ValueError(
                f"Task {self.task_id} is already terminal ({self.state.value}); "
                f"cannot move to {state.value}.",
            )
        self.state = state


@dataclass(slots=True)
class ProcessInvocation:
    """One external tool run. Created and discarded inside a single invoker call."""

    command: list[str]
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool
    elapsed_seconds: float
    confirmed: bool = True

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0


@dataclass(slots=True)
class AttemptRecord:
    """Outcome of one attempt as reported by the retry controller."""

    attempt_no: int
    succeeded: bool
    failure_class: FailureClass | None
    reason_code: str
    error_summary: str | None
    exit_code: int | None = None
    timed_out: bool = False
    elapsed_seconds: float = 0.0
    stderr: str = ""


@dataclass(slots=True)
class RetryResult:
    """Aggregate outcome of the retry loop for one task."""

    succeeded: bool
    attempts: list[AttemptRecord] = field(default_factory=list)
    interrupted: bool = False

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def last_attempt(self) -> AttemptRecord | None:
        return self.attempts[-1] if self.attempts else None


@dataclass(slots=True)
class TaskOutcome:
    """What happened to one arrival, reported after the task record is discarded."""

    name: str
    disposition: TaskDisposition
    attempts: int = 0
    destination: Path | None = None
    failure_class: FailureClass | None = None
    error_summary: str | None = None


@dataclass(slots=True)
class FileTaskRecordView:
    """Readable journal row for CLI and reconciliation."""

    task_id: str
    name: str
    source_path: str
    processing_path: str
    state: FileTaskState
    attempt: int
    max_attempts: int
    failure_class: FailureClass | None
    error_summary: str | None
    destination_path: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None
