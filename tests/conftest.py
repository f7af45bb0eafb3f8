"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

from inbox_relay.config import KeystrokeSettings, Settings, ToolSettings, WatchSettings
from inbox_relay.pipeline.invoker import stub_tool

STUB_TOOL_PATH = Path(stub_tool.__file__).resolve()


@dataclass(slots=True)
class StageDirs:
    input: Path
    processing: Path
    output: Path
    error: Path
    ignored: Path
    tool_output: Path

    def calls(self) -> list[str]:
        log = self.tool_output / stub_tool.CALLS_LOG_NAME
        if not log.exists():
            return []
        return log.read_text("utf-8").splitlines()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Keep INBOX_RELAY_* variables from the developer shell out of tests."""

    for name in list(os.environ):
        if name.startswith("INBOX_RELAY_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def stage_dirs(tmp_path: Path) -> StageDirs:
    dirs = StageDirs(
        input=tmp_path / "input",
        processing=tmp_path / "processing",
        output=tmp_path / "output",
        error=tmp_path / "error",
        ignored=tmp_path / "ignored",
        tool_output=tmp_path / "tool-output",
    )
    for path in (dirs.input, dirs.processing, dirs.output, dirs.error, dirs.ignored):
        path.mkdir()
    return dirs


def _stub_settings(
    stage_dirs: StageDirs,
    *,
    journal_path: Path | None = None,
    **watch_overrides,
) -> Settings:
    watch = WatchSettings(
        input_dir=stage_dirs.input,
        processing_dir=stage_dirs.processing,
        output_dir=stage_dirs.output,
        error_dir=stage_dirs.error,
        ignored_dir=stage_dirs.ignored,
        retry_delay_seconds=0.0,
        stability_attempts=3,
        stability_delay_seconds=0.01,
        worker_count=2,
    )
    for key, value in watch_overrides.items():
        setattr(watch, key, value)
    return Settings(
        watch=watch,
        tool=ToolSettings(
            executable=sys.executable,
            launcher_args=(),
            resource_path=STUB_TOOL_PATH,
            output_dir=stage_dirs.tool_output,
            timeout_ms=20_000,
        ),
        keystroke=KeystrokeSettings(gui_wait_ms=0, key_wait_ms=0, run_wait_ms=0),
        journal_path=journal_path,
    )


@pytest.fixture()
def make_settings(stage_dirs: StageDirs):
    """Factory for stub-tool settings; keyword arguments override ``WatchSettings`` fields."""

    def _make(**overrides) -> Settings:
        return _stub_settings(stage_dirs, **overrides)

    return _make


@pytest.fixture()
def stub_settings(stage_dirs: StageDirs) -> Settings:
    return _stub_settings(stage_dirs)


@pytest.fixture()
def settings_file(stage_dirs: StageDirs, tmp_path: Path) -> Path:
    """appsettings.json wired to the stub tool and a temp journal."""

    path = tmp_path / "appsettings.json"
    path.write_text(
        json.dumps(
            {
                "WatchSettings": {
                    "InputDirectory": str(stage_dirs.input),
                    "ProcessingDirectory": str(stage_dirs.processing),
                    "OutputDirectory": str(stage_dirs.output),
                    "ErrorDirectory": str(stage_dirs.error),
                    "RetryCount": 2,
                    "RetryDelaySeconds": 0,
                    "StabilityAttempts": 3,
                    "StabilityDelayMs": 10,
                    "WorkerCount": 1,
                },
                "ToolSettings": {
                    "Executable": sys.executable,
                    "LauncherArgs": [],
                    "ResourcePath": str(STUB_TOOL_PATH),
                    "OutputDirectory": str(stage_dirs.tool_output),
                    "ProcessTimeoutMs": 20000,
                },
                "JournalPath": "journal.db",
            },
        ),
        "utf-8",
    )
    return path
