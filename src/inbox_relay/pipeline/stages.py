"""Filesystem transitions between the stage directories."""

from __future__ import annotations

import errno
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from uuid import uuid4

from inbox_relay.config import Settings

logger = logging.getLogger(__name__)

COPY_CHUNK_BYTES = 1024 * 1024


class StageMoveError(RuntimeError):
    """A stage transition failed and could not be recovered in place."""


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    SOURCE_MISSING = "source_missing"


@dataclass(slots=True)
class RouteResult:
    """Result of moving a processing copy to its terminal directory."""

    destination: Path
    moved: bool
    source_removed: bool


class StageMover:
    """Claim files into Processing and route them onward.

    The mover is stateless: it is handed paths and never keeps task data.
    """

    def __init__(self, *, chunk_bytes: int = COPY_CHUNK_BYTES) -> None:
        self.chunk_bytes = chunk_bytes

    def claim(self, source_path: Path, processing_path: Path) -> ClaimStatus:
        """Copy ``source_path`` into Processing as an exclusive claim.

        The Processing path is created with create-exclusive semantics, so the
        existence check and the claim are one atomic filesystem call. The source
        is left untouched.
        """

        try:
            target = open(processing_path, "xb")  # noqa: SIM115
        except FileExistsError:
            return ClaimStatus.DUPLICATE
        except OSError as error:
            raise StageMoveError(f"Cannot create claim {processing_path}: {error}") from error

        try:
            with target, open(source_path, "rb") as source:
                shutil.copyfileobj(source, target, self.chunk_bytes)
        except FileNotFoundError:
            _discard(processing_path)
            return ClaimStatus.SOURCE_MISSING
        except OSError as error:
            _discard(processing_path)
            raise StageMoveError(
                f"Cannot copy {source_path} into {processing_path}: {error}",
            ) from error

        try:
            shutil.copystat(source_path, processing_path)
        except OSError:
            logger.debug("Could not copy file metadata for %s", source_path, exc_info=True)
        return ClaimStatus.CLAIMED

    def route(
        self,
        processing_path: Path,
        destination_dir: Path,
        *,
        source_path: Path | None,
    ) -> RouteResult:
        """Move the processing copy to ``destination_dir``, then remove the source.

        A same-named file at the destination is replaced. The source is removed
        only once the destination holds the file.
        """

        destination = destination_dir / processing_path.name
        if processing_path.exists():
            self._move_overwrite(processing_path, destination)
            moved = True
        elif destination.exists():
            logger.warning(
                "Processing copy %s already gone; %s already holds it",
                processing_path,
                destination,
            )
            moved = True
        else:
            logger.error(
                "Processing copy %s is gone and was never routed; keeping source %s",
                processing_path,
                source_path,
            )
            moved = False

        source_removed = self.remove_source(source_path) if moved else False
        return RouteResult(destination=destination, moved=moved, source_removed=source_removed)

    def remove_source(self, source_path: Path | None) -> bool:
        if source_path is None:
            return False
        try:
            source_path.unlink()
        except FileNotFoundError:
            logger.debug("Source %s already removed", source_path)
            return False
        except OSError as error:
            logger.warning("Could not remove source %s: %s", source_path, error)
            return False
        return True

    def _move_overwrite(self, source: Path, destination: Path) -> None:
        if not destination.parent.is_dir():
            logger.warning("Destination directory %s is missing; recreating", destination.parent)
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                raise StageMoveError(
                    f"Cannot create destination directory {destination.parent}: {error}",
                ) from error

        try:
            os.replace(source, destination)
            return
        except OSError as error:
            if error.errno != errno.EXDEV:
                raise StageMoveError(
                    f"Cannot move {source} to {destination}: {error}",
                ) from error

        # Different filesystems: stage a full copy next to the destination first.
        staging = destination.with_name(f".{destination.name}.{uuid4().hex[:8]}.partial")
        try:
            shutil.copy2(source, staging)
            os.replace(staging, destination)
        except OSError as error:
            _discard(staging)
            raise StageMoveError(
                f"Cannot move {source} to {destination}: {error}",
            ) from error
        _discard(source)


def ensure_stage_directories(settings: Settings) -> list[Path]:
    """Create every configured stage directory that does not exist yet."""

    watch = settings.watch
    directories = [
        path
        for path in (
            watch.input_dir,
            watch.processing_dir,
            watch.output_dir,
            watch.error_dir,
            watch.ignored_dir,
            settings.tool_output_dir,
        )
        if path is not None
    ]
    for directory in directories:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StageMoveError(f"Cannot create stage directory {directory}: {error}") from error
    return directories


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as error:
        logger.warning("Could not remove %s: %s", path, error)
