"""Subprocess-based invoker for the external conversion tool."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO

import psutil

from inbox_relay.config import ToolSettings
from inbox_relay.pipeline.invoker.base import InvocationRequest, InvokerError
from inbox_relay.pipeline.models import FailureClass, ProcessInvocation

logger = logging.getLogger(__name__)


class CliToolInvoker:
    """Run the tool as a child process with the fixed positional-argument convention.

    Command line: ``<executable> [launcher args] [resource] <input> <sidecar> <output dir>``.
    The run is over when the tool exits; reader threads drain both output streams
    meanwhile. A run that outlives the configured timeout is killed together with its
    descendants.
    """

    def __init__(self, settings: ToolSettings, *, grace_seconds: float = 2.0) -> None:
        self.settings = settings
        self.grace_seconds = grace_seconds
        self._active: dict[int, subprocess.Popen[str]] = {}
        self._lock = threading.Lock()

    def build_command(self, request: InvocationRequest) -> list[str]:
        command = [self.settings.executable, *self.settings.launcher_args]
        if self.settings.resource_path is not None:
            command.append(str(Path(self.settings.resource_path).resolve()))
        command.extend(
            [str(request.input_path), str(request.sidecar_path), str(request.output_dir)],
        )
        return command

    def invoke(self, request: InvocationRequest) -> ProcessInvocation:
        self._check_preconditions(request)
        command = self.build_command(request)
        working_dir = self.settings.working_dir
        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                command,
                cwd=str(working_dir) if working_dir is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=os.name != "nt",
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

        with self._lock:
            self._active[process.pid] = process
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            _start_reader(process.stdout, stdout_chunks),
            _start_reader(process.stderr, stderr_chunks),
        ]
        try:
            timed_out = False
            try:
                process.wait(timeout=self.settings.timeout_seconds)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.warning(
                    "Tool pid=%s did not exit within %.1fs; terminating process tree",
                    process.pid,
                    self.settings.timeout_seconds,
                )
                terminate_process_tree(process, grace_seconds=self.grace_seconds)
        finally:
            with self._lock:
                self._active.pop(process.pid, None)
        elapsed = time.monotonic() - started

        # A descendant that inherited the pipes can keep them open after the tool exits.
        if not _join_readers(readers, self.grace_seconds):
            logger.debug("Output of tool pid=%s still held open by a descendant", process.pid)
        stdout = "".join(list(stdout_chunks))
        stderr = "".join(list(stderr_chunks))
        if stdout:
            logger.debug("Tool stdout for %s:\n%s", request.input_path.name, stdout)
        if stderr:
            logger.debug("Tool stderr for %s:\n%s", request.input_path.name, stderr)
        return ProcessInvocation(
            command=command,
            stdout=stdout or "",
            stderr=stderr or "",
            exit_code=None if timed_out else process.returncode,
            timed_out=timed_out,
            elapsed_seconds=elapsed,
        )

    def terminate_all(self) -> None:
        with self._lock:
            processes = list(self._active.values())
        for process in processes:
            logger.info("Terminating in-flight tool pid=%s", process.pid)
            terminate_process_tree(process, grace_seconds=self.grace_seconds)

    def _check_preconditions(self, request: InvocationRequest) -> None:
        resource = self.settings.resource_path
        if resource is not None and not Path(resource).is_file():
            raise InvokerError(
                f"Tool resource not found: {resource}",
                failure_class=FailureClass.RESOURCE_MISSING,
            )
        working_dir = self.settings.working_dir
        if working_dir is not None and not Path(working_dir).is_dir():
            raise InvokerError(
                f"Tool working directory not found: {working_dir}",
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


def terminate_process_tree(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    *,
    grace_seconds: float = 2.0,
) -> None:
    """Terminate a child process and all its descendants, escalating to kill."""

    try:
        descendants = psutil.Process(process.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        descendants = []

    for child in descendants:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            continue
    try:
        process.terminate()
    except OSError:
        pass

    _, alive = psutil.wait_procs(descendants, timeout=grace_seconds)
    for child in alive:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            continue

    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        try:
            process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Tool pid=%s did not exit after kill", process.pid)
    _kill_process_group(process.pid)


def _kill_process_group(pgid: int) -> None:
    # Catches descendants that re-parented away from the psutil tree.
    if os.name == "nt":
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        return


def _start_reader(stream: IO[str] | None, chunks: list[str]) -> threading.Thread | None:
    if stream is None:
        return None
    reader = threading.Thread(target=_drain, args=(stream, chunks), daemon=True)
    reader.start()
    return reader


def _drain(stream: IO[str], chunks: list[str]) -> None:
    try:
        for line in iter(stream.readline, ""):
            chunks.append(line)
    except (OSError, ValueError):
        return
    finally:
        stream.close()


def _join_readers(readers: list[threading.Thread | None], timeout_seconds: float) -> bool:
    deadline = time.monotonic() + timeout_seconds
    for reader in readers:
        if reader is not None:
            reader.join(max(0.0, deadline - time.monotonic()))
    return not any(reader is not None and reader.is_alive() for reader in readers)
