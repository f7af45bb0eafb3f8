"""Bounded-attempt retry loop around one tool invoker."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from inbox_relay.pipeline.failure_classifier import (
    classify_invocation,
    classify_invoker_error,
    preview,
)
from inbox_relay.pipeline.invoker.base import InvocationRequest, InvokerError, ToolInvoker
from inbox_relay.pipeline.models import AttemptRecord, RetryResult

logger = logging.getLogger(__name__)


class RetryController:
    """Call the invoker up to ``max_attempts`` times, stopping at the first success.

    A failed attempt is followed by a fixed delay, except after the last one. The
    delay only blocks the calling worker. The controller keeps no state between
    ``run`` calls and never touches the task record: attempt results flow back
    through ``on_attempt`` and the returned ``RetryResult``.

    Once ``stop_event`` is set no further attempt is started and the result is
    marked ``interrupted``.
    """

    def __init__(
        self,
        invoker: ToolInvoker,
        *,
        delay_seconds: float = 2.0,
        sleep: Callable[[float], Any] = time.sleep,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.invoker = invoker
        self.delay_seconds = delay_seconds
        self._sleep = sleep
        self._stop_event = stop_event

    def run(
        self,
        request: InvocationRequest,
        *,
        max_attempts: int,
        first_attempt_no: int = 1,
        on_attempt: Callable[[AttemptRecord], None] | None = None,
    ) -> RetryResult:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        result = RetryResult(succeeded=False)
        for offset in range(max_attempts):
            if self._stopping():
                result.interrupted = True
                return result
            attempt_no = first_attempt_no + offset
            logger.info("Processing attempt %d for %s", attempt_no, request.input_path.name)
            record = self._attempt(request, attempt_no=attempt_no)
            result.attempts.append(record)
            if on_attempt is not None:
                on_attempt(record)

            if record.succeeded:
                result.succeeded = True
                return result

            logger.warning(
                "Attempt %d for %s failed (%s): %s",
                attempt_no,
                request.input_path.name,
                record.reason_code,
                record.error_summary,
            )
            if self._stopping():
                result.interrupted = True
                return result
            if offset < max_attempts - 1 and self.delay_seconds > 0:
                self._wait(self.delay_seconds)
        return result

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    def _wait(self, seconds: float) -> None:
        if self._stop_event is not None:
            self._stop_event.wait(seconds)
        else:
            self._sleep(seconds)

    def _attempt(self, request: InvocationRequest, *, attempt_no: int) -> AttemptRecord:
        try:
            invocation = self.invoker.invoke(request)
        except InvokerError as error:
            failure = classify_invoker_error(error)
            return AttemptRecord(
                attempt_no=attempt_no,
                succeeded=False,
                failure_class=failure.failure_class,
                reason_code=failure.reason_code,
                error_summary=failure.summary,
            )

        failure = classify_invocation(invocation)
        if failure is None:
            return AttemptRecord(
                attempt_no=attempt_no,
                succeeded=True,
                failure_class=None,
                reason_code="completed" if invocation.confirmed else "completed_unconfirmed",
                error_summary=None,
                exit_code=invocation.exit_code,
                elapsed_seconds=invocation.elapsed_seconds,
            )
        return AttemptRecord(
            attempt_no=attempt_no,
            succeeded=False,
            failure_class=failure.failure_class,
            reason_code=failure.reason_code,
            error_summary=failure.summary,
            exit_code=invocation.exit_code,
            timed_out=invocation.timed_out,
            elapsed_seconds=invocation.elapsed_seconds,
            stderr=preview(invocation.stderr),
        )
