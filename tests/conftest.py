"""Pytest configuration: import paths and per-test isolation.

The workspace is not necessarily installed, so ``packages/`` (``pos_sync``),
``libs/db/src`` (``db``) and the repo root (``tests.helpers``) are put on
``sys.path`` here.

Each test also runs in its own working directory with the sync-related
environment cleared, so a developer's ``.env`` or exported ``POSTER_TOKEN``
never leaks into assertions.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
sys.path[:0] = [
    p
    for p in (str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT))
    if p not in sys.path
]

from pos_sync.settings import SyncSettings  # noqa: E402
from tests.helpers.db import bootstrap_sqlite_db  # noqa: E402
from tests.helpers.fake_poster import RecordingTelemetry  # noqa: E402

_ENV_VARS = (
    "DATABASE_URL",
    "POSTER_TOKEN",
    "POSTER_API_URL",
    "POS_SYNC_LOG_LEVEL",
    "POS_SYNC_HTTP_TIMEOUT",
    "POS_SYNC_MAX_ATTEMPTS",
    "POS_SYNC_PAGE_SIZE",
    "POS_SYNC_CHUNK_DAYS",
    "POS_SYNC_FETCH_CONCURRENCY",
    "POS_SYNC_LOOKBACK_DAYS",
    "POS_SYNC_FULL_RESYNC_DAYS",
    "POS_SYNC_HISTORY_DAYS",
    "POS_SYNC_DELETE_AFTER_MISSES",
    "POS_SYNC_MAX_DELETE_RATIO",
    "POS_SYNC_BATCH_SIZE",
    "POS_SYNC_STATEMENT_TIMEOUT_MS",
    "POS_SYNC_INTERVAL_SECONDS",
)


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        # setenv first so teardown also removes values a test loads from .env
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    workdir = tmp_path / "cwd"
    workdir.mkdir()
    monkeypatch.chdir(workdir)


@pytest.fixture
def engine(tmp_path: Path):
    eng = bootstrap_sqlite_db(tmp_path / "cache.sqlite3")
    yield eng
    eng.dispose()


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def settings() -> SyncSettings:
    # Short history keeps full-window passes to a handful of chunks.
    return SyncSettings(history_days=60, fetch_concurrency=2, page_size=4)
