"""Single-writer guard for a cache store.

On PostgreSQL the lock is a session-level advisory lock held on a dedicated
connection for the duration of the pass, so it also excludes passes running
in other processes or hosts. Other backends (SQLite in tests and local runs)
fall back to an in-process lock keyed by the database URL.

A pass that cannot take the lock raises :class:`~pos_sync.errors.PassAlreadyRunning`
immediately instead of waiting.
"""

from __future__ import annotations

import threading
import zlib
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .errors import PassAlreadyRunning
from .logging_setup import get_logger

_logger = get_logger("pos_sync.lock")

DEFAULT_LOCK_NAME = "pos_sync:pos_transactions"

_LOCAL_LOCKS: dict[str, threading.Lock] = {}
_LOCAL_LOCKS_GUARD = threading.Lock()


def advisory_key(name: str) -> int:
    """Stable signed 32-bit key for ``pg_try_advisory_lock``."""

    value = zlib.crc32(name.encode("utf-8"))
    return value - (1 << 32) if value >= (1 << 31) else value


def _local_lock(key: str) -> threading.Lock:
    with _LOCAL_LOCKS_GUARD:
        lock = _LOCAL_LOCKS.get(key)
        if lock is None:
            lock = _LOCAL_LOCKS[key] = threading.Lock()
        return lock


@contextmanager
def _pg_lock(engine: Engine, key: int) -> Iterator[None]:
    with engine.connect() as conn:
        acquired = conn.execute(text("SELECT pg_try_advisory_lock(:k)"), {"k": key}).scalar()
        # End the implicit transaction; the advisory lock is session-scoped.
        conn.commit()
        if not acquired:
            raise PassAlreadyRunning(f"advisory lock {key} is held by another pass")
        try:
            yield
        finally:
            conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": key})
            conn.commit()


@contextmanager
def pass_lock(engine: Engine, *, name: str = DEFAULT_LOCK_NAME) -> Iterator[None]:
    """Hold the pass lock for ``engine`` while the block runs."""

    if engine.dialect.name == "postgresql":
        with _pg_lock(engine, advisory_key(name)):
            _logger.debug("sync:lock_acquired kind=advisory name=%s", name)
            yield
        return

    local = _local_lock(f"{engine.url.render_as_string(hide_password=True)}|{name}")
    if not local.acquire(blocking=False):
        raise PassAlreadyRunning(f"pass lock {name!r} is held in this process")
    try:
        _logger.debug("sync:lock_acquired kind=local name=%s", name)
        yield
    finally:
        local.release()


__all__ = ["DEFAULT_LOCK_NAME", "advisory_key", "pass_lock"]
