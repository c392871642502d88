"""Watermark derived from the cache itself, and fetch-window planning.

There is no cursor table. Every pass stamps ``synced_at`` on the rows it
observed, so the cache already records how far it has been confirmed:

- newest ``date_created``: where incremental fetches resume;
- oldest open order (``date_close IS NULL``): orders that can still change
  upstream and must stay inside the window until they close;
- oldest ``synced_at``: how stale the least recently confirmed row is. When
  it exceeds ``full_resync_days`` the next pass reads the full history, which
  also gives rows outside recent windows a chance to be confirmed or deleted.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from db.client import session_scope
from db.models.pos import PosTransaction

from .errors import StoreError
from .logging_setup import get_logger
from .models import FetchWindow, LocalTransactionRecord
from .settings import SyncSettings

_logger = get_logger("pos_sync.watermark")

# Bound on ids per IN (...) clause when loading rows by id.
_ID_CHUNK = 500


@dataclass(frozen=True, slots=True)
class Watermark:
    row_count: int = 0
    newest_created: datetime | None = None
    oldest_open_created: datetime | None = None
    oldest_synced_at: datetime | None = None
    last_synced_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        def _iso(v: datetime | None) -> str | None:
            return v.isoformat() if v else None

        return {
            "row_count": self.row_count,
            "newest_created": _iso(self.newest_created),
            "oldest_open_created": _iso(self.oldest_open_created),
            "oldest_synced_at": _iso(self.oldest_synced_at),
            "last_synced_at": _iso(self.last_synced_at),
        }


def _as_utc(value: Any) -> datetime | None:
    # Drivers differ in what aggregates hand back.
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def read_watermark(engine: Engine) -> Watermark:
    """Aggregate the derived watermark from ``pos_transactions``."""

    try:
        with session_scope(bind=engine) as session:
            count, newest, oldest_synced, last_synced = session.execute(
                select(
                    func.count(PosTransaction.transaction_id),
                    func.max(PosTransaction.date_created),
                    func.min(PosTransaction.synced_at),
                    func.max(PosTransaction.synced_at),
                )
            ).one()
            oldest_open = session.execute(
                select(func.min(PosTransaction.date_created)).where(
                    PosTransaction.date_close.is_(None)
                )
            ).scalar_one()
    except SQLAlchemyError as e:
        raise StoreError(f"could not read watermark: {e}") from e

    return Watermark(
        row_count=int(count or 0),
        newest_created=_as_utc(newest),
        oldest_open_created=_as_utc(oldest_open),
        oldest_synced_at=_as_utc(oldest_synced),
        last_synced_at=_as_utc(last_synced),
    )


def plan_fetch_window(
    watermark: Watermark, *, now: datetime, settings: SyncSettings
) -> FetchWindow:
    """Choose the creation-date range the pass will read upstream.

    - empty cache: full history (``history_days`` back);
    - stalest row confirmed more than ``full_resync_days`` ago: full history;
    - otherwise incremental, from the newest cached row minus
      ``lookback_days`` or the oldest still-open order, whichever is earlier.
    """

    today = now.astimezone(UTC).date()
    history_start = today - timedelta(days=settings.history_days)

    if watermark.row_count == 0 or watermark.newest_created is None:
        return FetchWindow(date_from=history_start, date_to=today, full=True)

    stale_before = now - timedelta(days=settings.full_resync_days)
    if watermark.oldest_synced_at is None or watermark.oldest_synced_at < stale_before:
        return FetchWindow(date_from=history_start, date_to=today, full=True)

    start = watermark.newest_created.date() - timedelta(days=settings.lookback_days)
    if watermark.oldest_open_created is not None:
        start = min(start, watermark.oldest_open_created.date())
    start = max(start, history_start)
    # Clock skew can put the newest row "after" today.
    start = min(start, today)
    return FetchWindow(date_from=start, date_to=today, full=False)


def _chunks(items: list[str], size: int) -> Iterable[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def load_snapshot(
    engine: Engine, window: FetchWindow, ids: Iterable[str] = ()
) -> dict[str, LocalTransactionRecord]:
    """Load the local rows a diff needs: those the window covers plus fetched ids.

    Rows outside the window that were not fetched are irrelevant to this
    pass (they can be neither updated nor deleted) and are not loaded.
    """

    lo = datetime.combine(window.date_from, datetime.min.time(), tzinfo=UTC)
    hi = datetime.combine(window.date_to + timedelta(days=1), datetime.min.time(), tzinfo=UTC)
    wanted = sorted(set(ids))
    snapshot: dict[str, LocalTransactionRecord] = {}
    try:
        with session_scope(bind=engine) as session:
            in_window = select(PosTransaction).where(
                PosTransaction.date_created >= lo, PosTransaction.date_created < hi
            )
            for row in session.scalars(in_window):
                snapshot[row.transaction_id] = LocalTransactionRecord.from_row(row)

            missing = [i for i in wanted if i not in snapshot]
            for chunk in _chunks(missing, _ID_CHUNK):
                stmt = select(PosTransaction).where(PosTransaction.transaction_id.in_(chunk))
                for row in session.scalars(stmt):
                    snapshot[row.transaction_id] = LocalTransactionRecord.from_row(row)
    except SQLAlchemyError as e:
        raise StoreError(f"could not load cache snapshot: {e}") from e

    _logger.info(
        "sync:snapshot_loaded rows=%d date_from=%s date_to=%s",
        len(snapshot),
        window.date_from.isoformat(),
        window.date_to.isoformat(),
    )
    return snapshot


__all__ = ["Watermark", "load_snapshot", "plan_fetch_window", "read_watermark"]
