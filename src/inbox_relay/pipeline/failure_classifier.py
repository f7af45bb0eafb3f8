"""Deterministic classification of tool attempt failures."""

from __future__ import annotations

from dataclasses import dataclass

from inbox_relay.pipeline.invoker.base import InvokerError
from inbox_relay.pipeline.models import FailureClass, ProcessInvocation

STDERR_PREVIEW_CHARS = 2_000


@dataclass(slots=True)
class AttemptFailure:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    summary: str


def classify_invocation(invocation: ProcessInvocation) -> AttemptFailure | None:
    """Classify a finished tool run; ``None`` means the run succeeded."""

    if invocation.timed_out:
        return AttemptFailure(
            failure_class=FailureClass.TIMEOUT,
            reason_code="tool_timeout",
            summary=(
                f"Tool did not exit within {invocation.elapsed_seconds:.1f}s and was killed."
            ),
        )
    if invocation.exit_code == 0:
        return None
    stderr = preview(invocation.stderr)
    summary = f"Tool exited with code {invocation.exit_code}."
    if stderr:
        summary = f"{summary} Stderr: {stderr}"
    return AttemptFailure(
        failure_class=FailureClass.TOOL_EXIT_NONZERO,
        reason_code=f"exit_code_{invocation.exit_code}",
        summary=summary,
    )


def classify_invoker_error(error: InvokerError) -> AttemptFailure:
    """Classify a tool run that could not be started."""

    return AttemptFailure(
        failure_class=error.failure_class,
        reason_code=error.failure_class.value,
        summary=str(error),
    )


def preview(text: str, *, limit: int = STDERR_PREVIEW_CHARS) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return f"{stripped[:limit]}..."
