from __future__ import annotations

import sys
from dataclasses import replace

import allure
import pytest

from inbox_relay.config import InvokerBackend, KeystrokeSettings
from inbox_relay.pipeline.invoker import (
    CliToolInvoker,
    InvocationRequest,
    InvokerError,
    KeystrokeToolInvoker,
    build_invoker,
)
from inbox_relay.pipeline.models import FailureClass
from inbox_relay.pipeline.retry import RetryController

pytestmark = [
    allure.epic("Inbox Relay"),
    allure.feature("Tool Invocation"),
]


class _RecordingKeyboard:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def write(self, message: str, interval: float = 0.0) -> None:
        self.events.append(("write", message))

    def press(self, keys: str, presses: int = 1, interval: float = 0.0) -> None:
        self.events.append(("press", keys, presses))


@pytest.fixture()
def gui_tool(stub_settings):
    # A long-running child stands in for the GUI window.
    return replace(
        stub_settings.tool,
        executable=sys.executable,
        launcher_args=("-c", "import time; time.sleep(30)"),
        resource_path=None,
        backend=InvokerBackend.KEYSTROKE,
    )


def test_keystroke_sequence_types_paths_and_closes_window(gui_tool, stage_dirs) -> None:
    source = stage_dirs.processing / "scan.txt"
    source.write_text("x", "utf-8")
    keyboard = _RecordingKeyboard()
    sleeps: list[float] = []
    invoker = KeystrokeToolInvoker(
        gui_tool,
        KeystrokeSettings(gui_wait_ms=1_000, key_wait_ms=100, run_wait_ms=2_000),
        keyboard_factory=lambda: keyboard,
        sleep=sleeps.append,
    )
    request = InvocationRequest.for_input(
        source,
        output_dir=stage_dirs.tool_output,
        sidecar_extension=".csi",
    )

    invocation = invoker.invoke(request)

    writes = [event[1] for event in keyboard.events if event[0] == "write"]
    assert writes == [
        str(request.input_path),
        str(request.sidecar_path).replace(".txt", ""),
        str(request.output_dir),
    ]
    assert ("press", "tab", 5) in keyboard.events
    assert sleeps[0] == 1.0
    assert 2.0 in sleeps
    assert invocation.succeeded
    assert invocation.confirmed is False
    assert invoker._active is None


def test_missing_input_fails_without_launching(gui_tool, stage_dirs) -> None:
    keyboard = _RecordingKeyboard()
    invoker = KeystrokeToolInvoker(
        gui_tool,
        KeystrokeSettings(),
        keyboard_factory=lambda: keyboard,
        sleep=lambda _: None,
    )
    request = InvocationRequest.for_input(
        stage_dirs.processing / "gone.txt",
        output_dir=stage_dirs.tool_output,
        sidecar_extension=".csi",
    )

    with pytest.raises(InvokerError) as caught:
        invoker.invoke(request)

    assert caught.value.failure_class is FailureClass.INPUT_MISSING
    assert keyboard.events == []


def test_build_invoker_selects_backend(stub_settings, gui_tool) -> None:
    assert isinstance(build_invoker(stub_settings), CliToolInvoker)
    assert isinstance(build_invoker(replace(stub_settings, tool=gui_tool)), KeystrokeToolInvoker)


class _BrokenKeyboard(_RecordingKeyboard):
    def write(self, message: str, interval: float = 0.0) -> None:
        raise RuntimeError("display went away")


def test_driver_error_is_an_attempt_failure_subject_to_retries(gui_tool, stage_dirs) -> None:
    source = stage_dirs.processing / "scan.txt"
    source.write_text("x", "utf-8")
    invoker = KeystrokeToolInvoker(
        gui_tool,
        KeystrokeSettings(gui_wait_ms=1_000),
        keyboard_factory=_BrokenKeyboard,
        sleep=lambda _: None,
    )
    request = InvocationRequest.for_input(
        source,
        output_dir=stage_dirs.tool_output,
        sidecar_extension=".csi",
    )

    result = RetryController(invoker, delay_seconds=0.0).run(request, max_attempts=3)

    assert not result.succeeded
    assert [record.attempt_no for record in result.attempts] == [1, 2, 3]
    assert all(record.failure_class is FailureClass.UNEXPECTED for record in result.attempts)
    assert "display went away" in (result.attempts[-1].error_summary or "")
    assert invoker._active is None


def test_window_that_ignores_terminate_is_killed_without_raising(gui_tool, stage_dirs) -> None:
    stubborn = replace(
        gui_tool,
        launcher_args=(
            "-c",
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(30)",
        ),
    )
    source = stage_dirs.processing / "scan.txt"
    source.write_text("x", "utf-8")
    invoker = KeystrokeToolInvoker(
        stubborn,
        KeystrokeSettings(gui_wait_ms=1, key_wait_ms=0, run_wait_ms=0),
        keyboard_factory=_RecordingKeyboard,
        sleep=lambda _: None,
    )
    request = InvocationRequest.for_input(
        source,
        output_dir=stage_dirs.tool_output,
        sidecar_extension=".csi",
    )

    invocation = invoker.invoke(request)

    assert invocation.succeeded
    assert invoker._active is None
