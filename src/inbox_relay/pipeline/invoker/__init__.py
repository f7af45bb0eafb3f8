"""Tool invoker implementations."""

from inbox_relay.config import InvokerBackend, Settings
from inbox_relay.pipeline.invoker.base import InvocationRequest, InvokerError, ToolInvoker
from inbox_relay.pipeline.invoker.cli_invoker import CliToolInvoker, terminate_process_tree
from inbox_relay.pipeline.invoker.keystroke_invoker import KeystrokeToolInvoker


def build_invoker(settings: Settings) -> ToolInvoker:
    """Select the configured invoker backend."""

    if settings.tool.backend is InvokerBackend.KEYSTROKE:
        return KeystrokeToolInvoker(settings.tool, settings.keystroke)
    return CliToolInvoker(settings.tool)


__all__ = [
    "CliToolInvoker",
    "InvocationRequest",
    "InvokerError",
    "KeystrokeToolInvoker",
    "ToolInvoker",
    "build_invoker",
    "terminate_process_tree",
]
