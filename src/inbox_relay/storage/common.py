"""SQLite engine and timestamp helpers shared by the task journal."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on read; treat naive values as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def build_journal_engine(db_path: Path, *, busy_timeout_ms: int) -> Engine:
    """Engine for the journal file, shared by every worker thread.

    Each session gets its own connection (no pooling), and WAL lets the CLI read
    task records while a watcher is writing them.
    """

    busy_timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": busy_timeout_ms / 1000.0},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:
        for pragma in (
            "journal_mode = WAL",
            f"busy_timeout = {busy_timeout_ms}",
            # Attempt rows reference their task row.
            "foreign_keys = ON",
        ):
            dbapi_connection.execute(f"PRAGMA {pragma}")

    return engine
