"""Runtime settings for the sync job, resolved from the environment.

The CLI loads a local ``.env`` (``python-dotenv``, never overriding variables
that are already set) before calling :meth:`SyncSettings.from_env`. Library
code never reads the environment on its own; it receives a settings object.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace

DEFAULT_POSTER_API_URL = "https://joinposter.com/api"


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(
    env: Mapping[str, str], name: str, default: float, *, minimum: float, maximum: float
) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if not (minimum <= value <= maximum):
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got {value}")
    return value


@dataclass(frozen=True, slots=True)
class SyncSettings:
    """Knobs for one sync pass and the scheduler loop.

    Attributes
    ----------
    poster_token:
        Static Poster API access token (the pass credential).
    database_url:
        SQLAlchemy URL of the cache store.
    poster_api_url:
        Base URL of the Poster web API.
    http_timeout:
        Per-request timeout in seconds.
    max_attempts:
        Attempts per upstream request before a transient failure is fatal.
    page_size:
        ``per_page`` requested from the upstream collection.
    chunk_days:
        Width of the date chunks the fetch window is split into.
    fetch_concurrency:
        Date chunks fetched at once.
    lookback_days:
        Incremental windows start this many days before the newest cached row.
    full_resync_days:
        A full-history pass runs when the stalest row was last confirmed
        longer ago than this.
    history_days:
        How far back a full-history pass reaches.
    delete_after_misses:
        Consecutive complete passes a row must be missing before deletion.
    max_delete_ratio:
        Above this share of absent covered rows the pass refuses to delete.
    batch_size:
        Rows per write transaction.
    statement_timeout_ms:
        Server-side statement timeout on PostgreSQL; ``None`` disables it
        (``POS_SYNC_STATEMENT_TIMEOUT_MS=0``).
    interval_seconds:
        Scheduler tick interval.
    """

    poster_token: str | None = None
    database_url: str | None = None
    poster_api_url: str = DEFAULT_POSTER_API_URL
    http_timeout: float = 30.0
    max_attempts: int = 5
    page_size: int = 100
    chunk_days: int = 30
    fetch_concurrency: int = 4
    lookback_days: int = 1
    full_resync_days: int = 30
    history_days: int = 3650
    delete_after_misses: int = 2
    max_delete_ratio: float = 0.5
    batch_size: int = 200
    statement_timeout_ms: int | None = 30_000
    interval_seconds: int = 300

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> SyncSettings:
        """Build settings from ``env`` (defaults to ``os.environ``)."""

        env = os.environ if env is None else env
        return cls(
            poster_token=(env.get("POSTER_TOKEN") or "").strip() or None,
            database_url=(env.get("DATABASE_URL") or "").strip() or None,
            poster_api_url=(env.get("POSTER_API_URL") or DEFAULT_POSTER_API_URL).rstrip("/"),
            http_timeout=_env_float(
                env, "POS_SYNC_HTTP_TIMEOUT", 30.0, minimum=0.1, maximum=600.0
            ),
            max_attempts=_env_int(env, "POS_SYNC_MAX_ATTEMPTS", 5),
            page_size=_env_int(env, "POS_SYNC_PAGE_SIZE", 100),
            chunk_days=_env_int(env, "POS_SYNC_CHUNK_DAYS", 30),
            fetch_concurrency=min(_env_int(env, "POS_SYNC_FETCH_CONCURRENCY", 4), 16),
            lookback_days=_env_int(env, "POS_SYNC_LOOKBACK_DAYS", 1, minimum=0),
            full_resync_days=_env_int(env, "POS_SYNC_FULL_RESYNC_DAYS", 30),
            history_days=_env_int(env, "POS_SYNC_HISTORY_DAYS", 3650),
            delete_after_misses=_env_int(env, "POS_SYNC_DELETE_AFTER_MISSES", 2),
            max_delete_ratio=_env_float(
                env, "POS_SYNC_MAX_DELETE_RATIO", 0.5, minimum=0.0, maximum=1.0
            ),
            batch_size=_env_int(env, "POS_SYNC_BATCH_SIZE", 200),
            statement_timeout_ms=_env_int(
                env, "POS_SYNC_STATEMENT_TIMEOUT_MS", 30_000, minimum=0
            )
            or None,
            interval_seconds=_env_int(env, "POS_SYNC_INTERVAL_SECONDS", 300),
        )

    def with_overrides(self, **changes: object) -> SyncSettings:
        """Return a copy with the non-``None`` values in ``changes`` applied."""

        return replace(self, **{k: v for k, v in changes.items() if v is not None})


__all__ = ["DEFAULT_POSTER_API_URL", "SyncSettings"]
