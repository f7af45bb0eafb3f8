"""Invoker interface for external tool execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from inbox_relay.pipeline.models import FailureClass, ProcessInvocation


@dataclass(slots=True, frozen=True)
class InvocationRequest:
    """Inputs required to run the tool once on one file."""

    input_path: Path
    sidecar_path: Path
    output_dir: Path

    @classmethod
    def for_input(cls, input_path: Path, *, output_dir: Path, sidecar_extension: str):
        """Build a request with the sidecar path derived by appending ``sidecar_extension``."""

        absolute = Path(input_path).resolve()
        return cls(
            input_path=absolute,
            sidecar_path=absolute.with_name(absolute.name + sidecar_extension),
            output_dir=Path(output_dir).resolve(),
        )


class InvokerError(RuntimeError):
    """Tool could not be run at all (missing resource, missing input, spawn failure)."""

    def __init__(self, message: str, *, failure_class: FailureClass) -> None:
        super().__init__(message)
        self.failure_class = failure_class


class ToolInvoker(Protocol):
    """Protocol implemented by tool backends."""

    def invoke(self, request: InvocationRequest) -> ProcessInvocation:
        """Run the tool once and return what happened."""

    def terminate_all(self) -> None:
        """Terminate any child process still running."""
