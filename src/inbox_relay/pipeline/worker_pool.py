"""Bounded pool of worker threads consuming arrival notices."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable

from inbox_relay.pipeline.models import ArrivalNotice

logger = logging.getLogger(__name__)


class ArrivalWorkerPool:
    """Run ``handler`` for each submitted arrival on a fixed number of threads.

    ``submit`` blocks while the queue is full, so a burst of arrivals slows the
    watcher down instead of growing memory without bound.
    """

    def __init__(
        self,
        handler: Callable[[ArrivalNotice], object],
        *,
        workers: int = 4,
        queue_size: int = 256,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.handler = handler
        self.workers = workers
        self._queue: queue.Queue[ArrivalNotice | None] = queue.Queue(maxsize=queue_size)
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._closed = False

    def start(self) -> None:
        with self._lock:
            if self._threads:
                return
            for index in range(self.workers):
                thread = threading.Thread(
                    target=self._run,
                    name=f"inbox-relay-worker-{index + 1}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.debug("Started %d worker thread(s)", self.workers)

    def submit(self, arrival: ArrivalNotice) -> None:
        if self._closed:
            logger.warning("Worker pool is stopping; dropping arrival %s", arrival.name)
            return
        self._queue.put(arrival)

    def join(self) -> None:
        """Block until every submitted arrival has been handled."""

        self._queue.join()

    def stop(self, *, timeout: float | None = None) -> None:
        """Stop accepting work and let threads exit after their current item.

        Items still queued behind the sentinels are discarded.
        """

        with self._lock:
            if self._closed:
                return
            self._closed = True
            threads = list(self._threads)

        discarded = self._drain()
        if discarded:
            logger.info("Discarded %d queued arrival(s) on shutdown", discarded)
        for _ in threads:
            self._queue.put(None)
        for thread in threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Worker thread %s did not stop in time", thread.name)

    def _drain(self) -> int:
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return discarded
            self._queue.task_done()
            discarded += 1

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self.handler(item)
            except Exception:  # noqa: BLE001 - keep the worker alive
                logger.exception("Worker failed while handling an arrival")
            finally:
                self._queue.task_done()
