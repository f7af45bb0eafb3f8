"""Inbox watching: watchdog events in, arrival notices out."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

from watchdog.events import (
    DirCreatedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from inbox_relay.config import WatchSettings
from inbox_relay.pipeline.models import ArrivalNotice

logger = logging.getLogger(__name__)

ArrivalSink = Callable[[ArrivalNotice], None]


class FileStabilityProbe:
    """Wait until a freshly arrived file looks fully written.

    A probe passes when the file can be opened for reading, is non-empty, and
    its size matches the previous probe. After ``attempts`` failed probes the
    file is handed on anyway; downstream steps fail fast on a broken file.
    """

    def __init__(
        self,
        *,
        attempts: int = 10,
        delay_seconds: float = 0.5,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.attempts = attempts
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: WatchSettings) -> FileStabilityProbe:
        return cls(
            attempts=settings.stability_attempts,
            delay_seconds=settings.stability_delay_seconds,
        )

    def wait_until_stable(self, path: Path) -> bool:
        """Return ``True`` once stable, ``False`` if the budget ran out."""

        previous_size: int | None = None
        for attempt in range(1, self.attempts + 1):
            size = _readable_size(path)
            if size is not None and size > 0 and size == previous_size:
                return True
            previous_size = size
            if attempt < self.attempts:
                self._sleep(self.delay_seconds)

        logger.warning(
            "File %s did not settle after %d probes; dispatching anyway",
            path,
            self.attempts,
        )
        return False


def _readable_size(path: Path) -> int | None:
    try:
        with open(path, "rb") as handle:
            handle.read(1)
            return path.stat().st_size
    except OSError:
        return None


class InboxEventHandler(FileSystemEventHandler):
    """Turn watchdog create/move events in the inbox into arrival notices.

    Modified events are never dispatched: writers emit many of them per file and
    a creation or rename already marks the arrival.
    """

    def __init__(
        self,
        input_dir: Path,
        sink: ArrivalSink,
        *,
        ignore_patterns: Iterable[str] = (),
    ) -> None:
        super().__init__()
        self.input_dir = input_dir.resolve()
        self.sink = sink
        self.ignore_patterns = tuple(ignore_patterns)

    def on_created(self, event: FileCreatedEvent | DirCreatedEvent) -> None:
        if event.is_directory:
            return
        self.dispatch_path(_as_path(event.src_path))

    def on_moved(self, event: FileMovedEvent | DirMovedEvent) -> None:
        if event.is_directory:
            return
        destination = _as_path(event.dest_path)
        if destination.parent.resolve() != self.input_dir:
            return
        self.dispatch_path(destination)

    def dispatch_path(self, path: Path) -> bool:
        if self.is_ignored(path.name):
            logger.debug("Ignoring %s", path.name)
            return False
        logger.info("New file detected: %s", path.name)
        self.sink(ArrivalNotice(name=path.name, source_path=path))
        return True

    def is_ignored(self, name: str) -> bool:
        return any(fnmatch(name, pattern) for pattern in self.ignore_patterns)


def _as_path(raw: str | bytes) -> Path:
    if isinstance(raw, bytes):
        raw = raw.decode(errors="surrogateescape")
    return Path(raw)


class DirectoryWatcher:
    """Own the watchdog observer for the Input directory."""

    def __init__(self, settings: WatchSettings, sink: ArrivalSink) -> None:
        if settings.input_dir is None:
            raise ValueError("Input directory must be configured.")
        self.settings = settings
        self.input_dir = settings.input_dir
        self.handler = InboxEventHandler(
            settings.input_dir,
            sink,
            ignore_patterns=settings.ignore_patterns,
        )
        self._observer: BaseObserver | None = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if self._observer is not None:
            logger.warning("Watcher is already running")
            return
        observer = PollingObserver() if self.settings.use_polling else Observer()
        observer.schedule(self.handler, str(self.input_dir), recursive=False)
        observer.start()
        self._observer = observer
        logger.info(
            "Watching %s (%s observer)",
            self.input_dir,
            "polling" if self.settings.use_polling else "native",
        )

    def scan_existing(self) -> int:
        """Dispatch files already present in the inbox, oldest first."""

        entries = []
        for path in self.input_dir.iterdir():
            try:
                if path.is_file():
                    entries.append((path.stat().st_mtime, path))
            except OSError:
                continue
        dispatched = 0
        for _, path in sorted(entries):
            if self.handler.dispatch_path(path):
                dispatched += 1
        if dispatched:
            logger.info("Startup sweep dispatched %d file(s) from %s", dispatched, self.input_dir)
        return dispatched

    def stop(self, *, timeout: float = 5.0) -> None:
        observer = self._observer
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=timeout)
        self._observer = None
        logger.info("Watcher stopped")
