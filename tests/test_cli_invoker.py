from __future__ import annotations

import subprocess
import sys
import time
from dataclasses import replace
from pathlib import Path

import allure
import psutil
import pytest

from inbox_relay.pipeline.invoker import CliToolInvoker, InvocationRequest, InvokerError
from inbox_relay.pipeline.invoker.cli_invoker import terminate_process_tree
from inbox_relay.pipeline.models import FailureClass

pytestmark = [
    allure.epic("Inbox Relay"),
    allure.feature("Tool Invocation"),
]


def _request(path: Path, stage_dirs) -> InvocationRequest:
    return InvocationRequest.for_input(
        path,
        output_dir=stage_dirs.tool_output,
        sidecar_extension=".csi",
    )


def _process_gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def test_request_derives_sidecar_by_appending_extension(tmp_path: Path) -> None:
    request = InvocationRequest.for_input(
        tmp_path / "report.txt",
        output_dir=tmp_path / "out",
        sidecar_extension=".csi",
    )
    assert request.sidecar_path.name == "report.txt.csi"
    assert request.input_path.is_absolute()


def test_command_line_follows_positional_convention(stub_settings, stage_dirs) -> None:
    tool = replace(stub_settings.tool, executable="java", launcher_args=("-jar",))
    invoker = CliToolInvoker(tool)
    source = stage_dirs.processing / "a.txt"

    command = invoker.build_command(_request(source, stage_dirs))

    assert command[:3] == ["java", "-jar", str(tool.resource_path)]
    assert command[3:] == [
        str(source.resolve()),
        str(source.resolve()) + ".csi",
        str(stage_dirs.tool_output.resolve()),
    ]


def test_successful_run_reports_exit_zero(stub_settings, stage_dirs) -> None:
    source = stage_dirs.processing / "a.txt"
    source.write_text("hello", "utf-8")

    invocation = CliToolInvoker(stub_settings.tool).invoke(_request(source, stage_dirs))

    assert invocation.succeeded
    assert invocation.exit_code == 0
    assert "wrote a.converted" in invocation.stdout
    assert (stage_dirs.tool_output / "a.converted").read_text("utf-8") == "hello"
    assert stage_dirs.calls() == ["a.txt"]


def test_nonzero_exit_captures_stderr(stub_settings, stage_dirs, monkeypatch) -> None:
    monkeypatch.setenv("INBOX_RELAY_STUB_FAIL_TIMES", "-1")
    monkeypatch.setenv("INBOX_RELAY_STUB_EXIT_CODE", "7")
    source = stage_dirs.processing / "a.txt"
    source.write_text("hello", "utf-8")

    invocation = CliToolInvoker(stub_settings.tool).invoke(_request(source, stage_dirs))

    assert not invocation.succeeded
    assert invocation.exit_code == 7
    assert not invocation.timed_out
    assert "conversion of a.txt failed" in invocation.stderr


def test_timeout_kills_tool_and_its_descendants(
    stub_settings,
    stage_dirs,
    monkeypatch,
    tmp_path: Path,
) -> None:
    pid_file = tmp_path / "grandchild.pid"
    monkeypatch.setenv("INBOX_RELAY_STUB_SLEEP_SECONDS", "60")
    monkeypatch.setenv("INBOX_RELAY_STUB_SPAWN_CHILD", str(pid_file))
    tool = replace(stub_settings.tool, timeout_ms=1_500)
    source = stage_dirs.processing / "slow.txt"
    source.write_text("hello", "utf-8")

    started = time.monotonic()
    invocation = CliToolInvoker(tool, grace_seconds=1.0).invoke(_request(source, stage_dirs))
    elapsed = time.monotonic() - started

    assert invocation.timed_out
    assert invocation.exit_code is None
    assert not invocation.succeeded
    assert elapsed < 15

    grandchild = int(pid_file.read_text("utf-8"))
    deadline = time.monotonic() + 5
    while not _process_gone(grandchild) and time.monotonic() < deadline:
        time.sleep(0.1)
    assert _process_gone(grandchild)


def test_missing_resource_fails_before_spawning(stub_settings, stage_dirs, tmp_path) -> None:
    tool = replace(stub_settings.tool, resource_path=tmp_path / "missing.jar")
    source = stage_dirs.processing / "a.txt"
    source.write_text("hello", "utf-8")

    with pytest.raises(InvokerError) as caught:
        CliToolInvoker(tool).invoke(_request(source, stage_dirs))

    assert caught.value.failure_class is FailureClass.RESOURCE_MISSING
    assert stage_dirs.calls() == []


def test_missing_input_is_reported(stub_settings, stage_dirs) -> None:
    with pytest.raises(InvokerError) as caught:
        CliToolInvoker(stub_settings.tool).invoke(
            _request(stage_dirs.processing / "gone.txt", stage_dirs),
        )
    assert caught.value.failure_class is FailureClass.INPUT_MISSING


def test_missing_executable_is_tool_not_found(stub_settings, stage_dirs) -> None:
    tool = replace(stub_settings.tool, executable="definitely-not-a-real-tool-binary")
    source = stage_dirs.processing / "a.txt"
    source.write_text("hello", "utf-8")

    with pytest.raises(InvokerError) as caught:
        CliToolInvoker(tool).invoke(_request(source, stage_dirs))

    assert caught.value.failure_class is FailureClass.TOOL_NOT_FOUND


def test_exit_is_not_held_up_by_descendant_keeping_output_open(
    stub_settings,
    stage_dirs,
    monkeypatch,
    tmp_path: Path,
) -> None:
    pid_file = tmp_path / "grandchild.pid"
    monkeypatch.setenv("INBOX_RELAY_STUB_SLEEP_SECONDS", "0")
    monkeypatch.setenv("INBOX_RELAY_STUB_SPAWN_CHILD", str(pid_file))
    tool = replace(stub_settings.tool, timeout_ms=10_000)
    source = stage_dirs.processing / "a.txt"
    source.write_text("hello", "utf-8")

    started = time.monotonic()
    try:
        invocation = CliToolInvoker(tool, grace_seconds=0.5).invoke(_request(source, stage_dirs))
    finally:
        if pid_file.exists():
            try:
                psutil.Process(int(pid_file.read_text("utf-8"))).kill()
            except psutil.NoSuchProcess:
                pass
    elapsed = time.monotonic() - started

    assert not invocation.timed_out
    assert invocation.exit_code == 0
    assert invocation.succeeded
    assert elapsed < 8


def test_terminate_tree_escalates_to_kill_without_raising() -> None:
    process = subprocess.Popen(  # noqa: S603
        [
            sys.executable,
            "-c",
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(30)",
        ],
    )
    try:
        terminate_process_tree(process, grace_seconds=0.001)
    finally:
        process.kill()
    assert process.wait(timeout=5) is not None
