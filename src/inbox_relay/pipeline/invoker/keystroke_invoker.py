"""Legacy GUI backend: drive an interactive tool window with simulated keystrokes.

Opt-in only (``ToolSettings.backend = keystroke``). There is no success signal beyond
a fixed wait, so every run is reported as an unconfirmed success, and a sequence
interrupted half way cannot be resumed safely.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from inbox_relay.config import KeystrokeSettings, ToolSettings
from inbox_relay.pipeline.invoker.base import InvocationRequest, InvokerError
from inbox_relay.pipeline.invoker.cli_invoker import terminate_process_tree
from inbox_relay.pipeline.models import FailureClass, ProcessInvocation

logger = logging.getLogger(__name__)


class KeyboardDriver(Protocol):
    """Subset of the ``pyautogui`` keyboard API used here."""

    def write(self, message: str, interval: float = 0.0) -> None: ...

    def press(self, keys: str, presses: int = 1, interval: float = 0.0) -> None: ...


def load_pyautogui() -> KeyboardDriver:
    """Import ``pyautogui`` on demand; it needs a display at import time."""

    try:
        import pyautogui  # noqa: PLC0415
    except ImportError as error:
        raise InvokerError(
            "The keystroke backend requires the 'gui' extra (pyautogui).",
            failure_class=FailureClass.TOOL_NOT_FOUND,
        ) from error
    except Exception as error:  # noqa: BLE001 - pyautogui raises assorted display errors
        raise InvokerError(
            f"The keystroke backend cannot reach a display: {error}",
            failure_class=FailureClass.TOOL_NOT_FOUND,
        ) from error
    return pyautogui


class KeystrokeToolInvoker:
    """Launch the tool's GUI and type the file paths into its form."""

    def __init__(
        self,
        tool: ToolSettings,
        keystroke: KeystrokeSettings,
        *,
        keyboard_factory: Callable[[], KeyboardDriver] = load_pyautogui,
        sleep: Callable[[float], Any] = time.sleep,
        tab_interval_seconds: float = 0.05,
    ) -> None:
        self.tool = tool
        self.keystroke = keystroke
        self._keyboard_factory = keyboard_factory
        self._sleep = sleep
        self._tab_interval = tab_interval_seconds
        self._active: subprocess.Popen[bytes] | None = None
        # One GUI window at a time: keystrokes go to whichever window has focus.
        self._lock = threading.Lock()

    def build_command(self) -> list[str]:
        command = [self.tool.executable, *self.tool.launcher_args]
        if self.tool.resource_path is not None:
            command.append(str(Path(self.tool.resource_path).resolve()))
        return command

    def invoke(self, request: InvocationRequest) -> ProcessInvocation:
        with self._lock:
            return self._run(request)

    def terminate_all(self) -> None:
        if self._active is not None:
            terminate_process_tree(self._active, grace_seconds=self.keystroke.gui_wait_ms / 1000)

    def _run(self, request: InvocationRequest) -> ProcessInvocation:
        resource = self.tool.resource_path
        if resource is not None and not Path(resource).is_file():
            raise InvokerError(
                f"Tool resource not found: {resource}",
                failure_class=FailureClass.RESOURCE_MISSING,
            )
        if not request.input_path.is_file():
            raise InvokerError(
                f"Input file not found: {request.input_path}",
                failure_class=FailureClass.INPUT_MISSING,
            )
        try:
            request.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise InvokerError(
                f"Cannot create tool output directory {request.output_dir}: {error}",
                failure_class=FailureClass.FILESYSTEM,
            ) from error
        keyboard = self._keyboard_factory()

        command = self.build_command()
        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                command,
                cwd=str(self.tool.working_dir) if self.tool.working_dir is not None else None,
            )
        except FileNotFoundError as error:
            raise InvokerError(
                f"Tool executable not found: {command[0]}",
                failure_class=FailureClass.TOOL_NOT_FOUND,
            ) from error
        except OSError as error:
            raise InvokerError(
                f"Tool failed to start: {error}",
                failure_class=FailureClass.FILESYSTEM,
            ) from error
        self._active = process
        try:
            self._drive_form(keyboard, request)
        except Exception as error:  # noqa: BLE001 - pyautogui raises assorted driver errors
            raise InvokerError(
                f"Keystroke sequence failed for {request.input_path.name}: {error}",
                failure_class=FailureClass.UNEXPECTED,
            ) from error
        finally:
            self._close_window(process)
            self._active = None

        logger.info("Keystroke sequence completed for %s", request.input_path.name)
        return ProcessInvocation(
            command=command,
            stdout="",
            stderr="",
            exit_code=0,
            timed_out=False,
            elapsed_seconds=time.monotonic() - started,
            confirmed=False,
        )

    def _drive_form(self, keyboard: KeyboardDriver, request: InvocationRequest) -> None:
        key_wait = self.keystroke.key_wait_ms / 1000
        self._sleep(self.keystroke.gui_wait_ms / 1000)

        keyboard.write(str(request.input_path))
        self._sleep(key_wait)
        self._press(keyboard, "tab", 2)
        # The form expects the sidecar without the input's .txt suffix.
        keyboard.write(str(request.sidecar_path).replace(".txt", ""))
        self._sleep(key_wait)
        self._press(keyboard, "tab", 2)
        keyboard.write(str(request.output_dir))
        self._sleep(key_wait)
        self._press(keyboard, "tab", 5)
        keyboard.press("space")

        self._sleep(self.keystroke.run_wait_ms / 1000)

        keyboard.press("space")
        self._sleep(key_wait)
        keyboard.press("tab")
        keyboard.press("space")
        self._sleep(key_wait)
        keyboard.press("space")
        keyboard.press("space")

    def _press(self, keyboard: KeyboardDriver, key: str, times: int) -> None:
        keyboard.press(key, presses=times, interval=self._tab_interval)

    def _close_window(self, process: subprocess.Popen[bytes]) -> None:
        try:
            process.terminate()
        except OSError:
            return
        try:
            process.wait(timeout=self.keystroke.gui_wait_ms / 1000)
        except subprocess.TimeoutExpired:
            try:
                process.kill()
                process.wait(timeout=self.keystroke.gui_wait_ms / 1000)
            except OSError:
                return
            except subprocess.TimeoutExpired:
                logger.warning("Tool window pid=%s did not exit after kill", process.pid)
