"""Apply a :class:`~pos_sync.models.SyncDiff` to the cache.

Writes are idempotent upserts keyed by ``transaction_id`` using the dialect's
native ``INSERT ... ON CONFLICT DO UPDATE``, so replaying a pass (or racing a
row that appeared since the snapshot) converges on the same state.

Each batch runs in its own transaction. When a batch fails it is rolled back
and replayed one record per transaction; records that still fail are
reported as :class:`~pos_sync.models.RecordError` and the rest of the pass
continues. One bad row never blocks its neighbours.

Order matters: creates, updates and touches stamp ``synced_at`` with the pass
start time first. Rows upstream returned but that could not be written (a
rejected record, a failed update) are held: stamped without their content
changing, so one bad record cannot keep the cache looking stale. Miss marks and deletes then only apply to rows whose
``synced_at`` is older than that, so a row confirmed by this pass can never
be deleted by it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from itertools import islice
from typing import Any, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.client import session_scope
from db.models.pos import VENDOR_COLUMNS, PosTransaction

from .errors import StoreError
from .logging_setup import get_logger
from .models import RecordError, RemoteTransaction, SyncDiff, WriteResult

_logger = get_logger("pos_sync.writer")

T = TypeVar("T")

# Failures that are attributable to a single record and must not abort the pass.
_RECORD_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, ValueError, TypeError)
_MAX_REASON = 300

# Columns an upsert rewrites on conflict. ``date_created`` is immutable.
_UPDATABLE = tuple(c for c in VENDOR_COLUMNS if c not in ("transaction_id", "date_created"))


def _batched(items: Sequence[T], size: int) -> Iterable[list[T]]:
    it = iter(items)
    while batch := list(islice(it, size)):
        yield batch


def _reason(exc: Exception) -> str:
    detail = getattr(exc, "orig", None) or exc
    text = f"{exc.__class__.__name__}: {detail}".replace("\n", " ")
    return text[:_MAX_REASON]


def _row_values(tx: RemoteTransaction, *, stamp: datetime) -> dict[str, Any]:
    values = {col: getattr(tx, col) for col in VENDOR_COLUMNS}
    values.update(date_updated=stamp, synced_at=stamp, missed_passes=0)
    return values


def _insert_for(session: Session) -> Callable[..., Any]:
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    raise StoreError(f"upsert is not supported on dialect {name!r}")


def upsert_transactions(
    session: Session, transactions: Sequence[RemoteTransaction], *, stamp: datetime
) -> list[str]:
    """Insert or update ``transactions`` and stamp them as confirmed at ``stamp``."""

    if not transactions:
        return []
    insert = _insert_for(session)
    stmt = insert(PosTransaction).values([_row_values(tx, stamp=stamp) for tx in transactions])
    set_ = {col: stmt.excluded[col] for col in _UPDATABLE}
    set_.update(
        date_updated=stmt.excluded.date_updated,
        synced_at=stmt.excluded.synced_at,
        missed_passes=0,
    )
    stmt = stmt.on_conflict_do_update(index_elements=[PosTransaction.transaction_id], set_=set_)
    session.execute(stmt)
    return [tx.transaction_id for tx in transactions]


def touch_transactions(session: Session, ids: Sequence[str], *, stamp: datetime) -> list[str]:
    """Mark unchanged rows as confirmed without touching vendor columns."""

    present = list(
        session.scalars(
            select(PosTransaction.transaction_id).where(PosTransaction.transaction_id.in_(ids))
        )
    )
    if present:
        session.execute(
            update(PosTransaction)
            .where(PosTransaction.transaction_id.in_(present))
            .values(synced_at=stamp, missed_passes=0)
        )
    return present


def mark_missed(session: Session, ids: Sequence[str], *, started_at: datetime) -> list[str]:
    """Increment ``missed_passes`` on rows this pass has not confirmed."""

    stale = list(
        session.scalars(
            select(PosTransaction.transaction_id).where(
                PosTransaction.transaction_id.in_(ids),
                PosTransaction.synced_at < started_at,
            )
        )
    )
    if stale:
        session.execute(
            update(PosTransaction)
            .where(PosTransaction.transaction_id.in_(stale))
            .values(missed_passes=PosTransaction.missed_passes + 1)
        )
    return stale


def delete_transactions(session: Session, ids: Sequence[str], *, started_at: datetime) -> list[str]:
    """Delete rows that this pass has not confirmed."""

    stale = list(
        session.scalars(
            select(PosTransaction.transaction_id).where(
                PosTransaction.transaction_id.in_(ids),
                PosTransaction.synced_at < started_at,
            )
        )
    )
    if stale:
        session.execute(delete(PosTransaction).where(PosTransaction.transaction_id.in_(stale)))
    return stale


def _apply_isolated(
    engine: Engine,
    items: Sequence[T],
    op: Callable[[Session, list[T]], list[str]],
    *,
    key: Callable[[T], str],
    kind: str,
    batch_size: int,
    done: list[str],
    errors: list[RecordError],
) -> None:
    for batch in _batched(items, batch_size):
        try:
            with session_scope(bind=engine) as session:
                done.extend(op(session, batch))
            continue
        except _RECORD_ERRORS as e:
            _logger.warning(
                "sync:write_batch_failed kind=%s size=%d error=%s; retrying per record",
                kind,
                len(batch),
                e.__class__.__name__,
            )
        for item in batch:
            try:
                with session_scope(bind=engine) as session:
                    done.extend(op(session, [item]))
            except _RECORD_ERRORS as e:
                errors.append(RecordError(key(item), _reason(e)))
                _logger.warning(
                    "sync:record_failed kind=%s id=%s error=%s", kind, key(item), e.__class__.__name__
                )


def apply_diff(
    diff: SyncDiff,
    *,
    engine: Engine,
    started_at: datetime,
    batch_size: int = 200,
) -> WriteResult:
    """Write ``diff`` to the cache and report per-category outcomes."""

    if batch_size < 1:
        raise ValueError("batch_size must be a positive integer")

    def _tx_id(tx: RemoteTransaction) -> str:
        return tx.transaction_id

    def _same(i: str) -> str:
        return i

    result = WriteResult()
    _apply_isolated(
        engine,
        diff.to_create,
        lambda s, b: upsert_transactions(s, b, stamp=started_at),
        key=_tx_id,
        kind="create",
        batch_size=batch_size,
        done=result.created,
        errors=result.errors,
    )
    before_update = len(result.errors)
    _apply_isolated(
        engine,
        diff.to_update,
        lambda s, b: upsert_transactions(s, b, stamp=started_at),
        key=_tx_id,
        kind="update",
        batch_size=batch_size,
        done=result.updated,
        errors=result.errors,
    )
    failed_updates = [
        e.transaction_id for e in result.errors[before_update:] if e.transaction_id is not None
    ]
    _apply_isolated(
        engine,
        diff.unchanged,
        lambda s, b: touch_transactions(s, b, stamp=started_at),
        key=_same,
        kind="touch",
        batch_size=batch_size,
        done=result.touched,
        errors=result.errors,
    )
    # Seen upstream but not writable: stamp only, so the row is not stale.
    _apply_isolated(
        engine,
        [*diff.held, *failed_updates],
        lambda s, b: touch_transactions(s, b, stamp=started_at),
        key=_same,
        kind="hold",
        batch_size=batch_size,
        done=result.held,
        errors=result.errors,
    )
    _apply_isolated(
        engine,
        diff.to_mark_missed,
        lambda s, b: mark_missed(s, b, started_at=started_at),
        key=_same,
        kind="mark_missed",
        batch_size=batch_size,
        done=result.missed,
        errors=result.errors,
    )
    _apply_isolated(
        engine,
        diff.to_delete,
        lambda s, b: delete_transactions(s, b, started_at=started_at),
        key=_same,
        kind="delete",
        batch_size=batch_size,
        done=result.deleted,
        errors=result.errors,
    )

    _logger.info(
        "sync:write_done created=%d updated=%d touched=%d held=%d missed=%d deleted=%d errors=%d",
        len(result.created),
        len(result.updated),
        len(result.touched),
        len(result.held),
        len(result.missed),
        len(result.deleted),
        len(result.errors),
    )
    return result


__all__ = [
    "apply_diff",
    "delete_transactions",
    "mark_missed",
    "touch_transactions",
    "upsert_transactions",
]
