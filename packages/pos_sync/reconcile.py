"""Classify fetched records against the local snapshot.

Pure function, no I/O. Every valid fetched id ends up in exactly one of
create/update/unchanged. A cached row whose latest upstream record failed
validation is held: it keeps its content but counts as seen. Every covered
local row that upstream did not
return is either marked as missed, scheduled for deletion, or left alone
with an anomaly explaining why.

Deletion is deliberately hard to trigger. A cached row is only deleted when

- the fetch was complete (every page drained, counts consistent),
- the fetch returned at least one record,
- the share of covered rows that went missing is at most ``max_delete_ratio``,
- and the row has now been missing for ``delete_after_misses`` consecutive
  passes whose window covered it.

An upstream hiccup that returns an empty or truncated list therefore never
empties the cache.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation

from .logging_setup import get_logger
from .models import (
    Anomaly,
    FetchResult,
    LocalTransactionRecord,
    RemoteTransaction,
    SyncDiff,
)

_logger = get_logger("pos_sync.reconcile")

# Vendor fields compared to decide whether a row changed. ``date_created`` is
# the identity timestamp and never rewritten once cached.
COMPARED_FIELDS: tuple[str, ...] = (
    "client_ref",
    "paid_amount",
    "products",
    "date_close",
    "table_id",
    "pay_type",
)

_SAMPLE = 10


def _same_amount(a: str, b: str) -> bool:
    try:
        return Decimal(a) == Decimal(b)
    except InvalidOperation:
        return a == b


def changed_fields(local: LocalTransactionRecord, remote: RemoteTransaction) -> list[str]:
    """Names of compared fields whose values differ between cache and upstream."""

    out: list[str] = []
    for name in COMPARED_FIELDS:
        old = getattr(local, name)
        new = getattr(remote, name)
        if name == "paid_amount":
            if not _same_amount(old, new):
                out.append(name)
        elif old != new:
            out.append(name)
    return out


def _dedupe(fetched: FetchResult) -> tuple[dict[str, RemoteTransaction], list[str]]:
    # Last occurrence in fetch order wins, including a rejected one: a valid
    # record followed by an invalid copy of the same id is stale.
    latest: dict[str, RemoteTransaction] = {}
    seen: set[str] = set()
    dupes: list[str] = []

    def _note(tx_id: str) -> None:
        if tx_id in seen and tx_id not in dupes:
            dupes.append(tx_id)
        seen.add(tx_id)

    for tx in fetched.transactions:
        _note(tx.transaction_id)
        latest[tx.transaction_id] = tx
    for err in fetched.rejected:
        if err.transaction_id is not None:
            _note(err.transaction_id)
    for tx_id in fetched.rejected_last_ids:
        latest.pop(tx_id, None)
    return latest, dupes


def diff(
    local: Mapping[str, LocalTransactionRecord],
    fetched: FetchResult,
    *,
    delete_after_misses: int = 2,
    max_delete_ratio: float = 0.5,
) -> SyncDiff:
    """Compute the :class:`~pos_sync.models.SyncDiff` for one pass."""

    if delete_after_misses < 1:
        raise ValueError("delete_after_misses must be a positive integer")
    if not 0.0 <= max_delete_ratio <= 1.0:
        raise ValueError("max_delete_ratio must be within [0, 1]")

    out = SyncDiff()
    remote, dupes = _dedupe(fetched)
    if dupes:
        out.anomalies.append(
            Anomaly("duplicate_ids", {"count": len(dupes), "ids": dupes[:_SAMPLE]})
        )

    for tx_id, tx in remote.items():
        current = local.get(tx_id)
        if current is None:
            out.to_create.append(tx)
        elif changed_fields(current, tx):
            out.to_update.append(tx)
        else:
            out.unchanged.append(tx_id)
    out.held = sorted(i for i in fetched.observed_ids if i not in remote and i in local)

    window = fetched.window
    covered = [row for row in local.values() if window.covers(row.date_created)]
    absent = sorted(
        row.transaction_id for row in covered if row.transaction_id not in fetched.observed_ids
    )
    if not absent:
        return out

    if not fetched.complete:
        out.anomalies.append(
            Anomaly("incomplete_fetch", {"absent": len(absent), "covered": len(covered)})
        )
        return out
    if not fetched.observed_ids:
        out.anomalies.append(Anomaly("empty_fetch", {"covered": len(covered)}))
        return out

    ratio = len(absent) / len(covered)
    if ratio > max_delete_ratio:
        out.anomalies.append(
            Anomaly(
                "mass_absence",
                {
                    "absent": len(absent),
                    "covered": len(covered),
                    "ratio": round(ratio, 4),
                    "max_ratio": max_delete_ratio,
                },
            )
        )
        return out

    for tx_id in absent:
        if local[tx_id].missed_passes + 1 >= delete_after_misses:
            out.to_delete.append(tx_id)
        else:
            out.to_mark_missed.append(tx_id)

    _logger.debug(
        "sync:absence_classified absent=%d covered=%d delete=%d mark=%d",
        len(absent),
        len(covered),
        len(out.to_delete),
        len(out.to_mark_missed),
    )
    return out


__all__ = ["COMPARED_FIELDS", "changed_fields", "diff"]
