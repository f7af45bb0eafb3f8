"""Local stand-in for the conversion tool, used by tests and smoke runs.

Usage: ``python -m inbox_relay.pipeline.invoker.stub_tool INPUT SIDECAR OUTPUT_DIR``

Behaviour is controlled through environment variables:

- ``INBOX_RELAY_STUB_EXIT_CODE``: exit code once the run "fails" (default 1).
- ``INBOX_RELAY_STUB_FAIL_TIMES``: fail this many calls per input, then succeed
  (default 0; ``-1`` fails forever).
- ``INBOX_RELAY_STUB_SLEEP_SECONDS``: sleep before doing anything (default 0).
- ``INBOX_RELAY_STUB_SPAWN_CHILD``: path of a file; when set, spawn a long-lived child
  process and write its pid there before sleeping.

Every call is appended to ``OUTPUT_DIR/stub_calls.log`` so callers can count invocations.
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path

CALLS_LOG_NAME = "stub_calls.log"


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic stub conversion."""

    parser = argparse.ArgumentParser()
    parser.add_argument("input")
    parser.add_argument("sidecar")
    parser.add_argument("output_dir")
    args = parser.parse_args(argv)

    input_path = Path(args.input)
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    calls_log = output_dir / CALLS_LOG_NAME
    with calls_log.open("a", encoding="utf-8") as handle:
        handle.write(f"{input_path.name}\n")
    call_no = sum(
        1 for line in calls_log.read_text("utf-8").splitlines() if line == input_path.name
    )

    child_pid_file = os.getenv("INBOX_RELAY_STUB_SPAWN_CHILD")
    if child_pid_file:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(3600)"],
        )
        Path(child_pid_file).write_text(str(child.pid), "utf-8")

    time.sleep(float(os.getenv("INBOX_RELAY_STUB_SLEEP_SECONDS", "0")))

    fail_times = int(os.getenv("INBOX_RELAY_STUB_FAIL_TIMES", "0"))
    if fail_times < 0 or call_no <= fail_times:
        print(f"stub: conversion of {input_path.name} failed on call {call_no}", file=sys.stderr)
        return int(os.getenv("INBOX_RELAY_STUB_EXIT_CODE", "1"))

    artifact = output_dir / f"{input_path.stem}.converted"
    artifact.write_text(input_path.read_text("utf-8", errors="replace"), "utf-8")
    print(f"stub: wrote {artifact.name} (sidecar {Path(args.sidecar).name})")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
