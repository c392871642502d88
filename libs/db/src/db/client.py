"""Centralized SQLAlchemy engine/session helpers for the workspace.

Usage
-----
from db.client import get_engine, session_scope

with session_scope() as s:
    s.execute(...)

Callers that already hold an engine (the sync orchestrator receives one as an
explicit argument) pass it through ``bind=`` instead of relying on the shared
module-level engine.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

_ENGINE: Engine | None = None
_SESSION_MAKER: sessionmaker[Session] | None = None
_DB_URL: str | None = None


def _database_url(override: str | None = None) -> str:
    url = override or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; cannot initialize database client")
    return url


def create_store_engine(url: str, *, statement_timeout_ms: int | None = None) -> Engine:
    """Create an engine with the pool/timeout settings used by the sync job.

    On PostgreSQL every connection gets a server-side ``statement_timeout``
    (when ``statement_timeout_ms`` is given) so no single statement can
    outlive the scheduler's execution budget.
    """

    connect_args: dict[str, object] = {}
    if statement_timeout_ms and url.startswith(("postgresql", "postgres")):
        connect_args["options"] = f"-c statement_timeout={statement_timeout_ms}"
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def get_engine(
    *, database_url: str | None = None, statement_timeout_ms: int | None = None
) -> Engine:
    """Return a shared SQLAlchemy engine, creating it on first use."""

    global _ENGINE, _SESSION_MAKER, _DB_URL
    url = _database_url(database_url)
    if _ENGINE is None:
        engine = create_store_engine(url, statement_timeout_ms=statement_timeout_ms)
        _SESSION_MAKER = sessionmaker(bind=engine, expire_on_commit=False, class_=Session)
        _ENGINE = engine
        _DB_URL = url
        return engine
    # Engine already initialized; guard against cross-environment misuse.
    if _DB_URL is not None and url != _DB_URL:
        raise RuntimeError(
            "get_engine() already initialized with a different DATABASE_URL; "
            "call dispose_engine() first or avoid passing a different URL"
        )
    return _ENGINE


def dispose_engine() -> None:
    """Drop the shared engine so the next ``get_engine`` call starts fresh."""

    global _ENGINE, _SESSION_MAKER, _DB_URL
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _SESSION_MAKER = None
    _DB_URL = None


def get_session(*, database_url: str | None = None, bind: Engine | None = None) -> Session:
    """Return a new SQLAlchemy session bound to ``bind`` or the shared engine."""

    if bind is not None:
        return Session(bind=bind, expire_on_commit=False)
    get_engine(database_url=database_url)
    assert _SESSION_MAKER is not None  # bound by get_engine
    return _SESSION_MAKER()


@contextmanager
def session_scope(
    *, database_url: str | None = None, bind: Engine | None = None
) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = get_session(database_url=database_url, bind=bind)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "create_store_engine",
    "dispose_engine",
    "get_engine",
    "get_session",
    "session_scope",
]
