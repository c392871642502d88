"""Drain every upstream page for a fetch window.

The window's request range is split into date chunks of ``chunk_days``; each
chunk is paged to exhaustion on a worker thread. Results are stitched back
in chunk order, so the output does not depend on which request finished
first. The first chunk to fail aborts the whole read: a partial fetch must
never reach reconciliation as if it were complete.

Rows are validated into :class:`~pos_sync.models.RemoteTransaction` here.
A row that fails validation becomes a :class:`~pos_sync.models.RecordError`
and the pass goes on; when the bad row still carries an id, that id is
recorded as observed so the cached copy is not treated as deleted.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Protocol

from pydantic import ValidationError

from .errors import UpstreamPayloadError
from .logging_setup import get_logger
from .models import FetchResult, FetchWindow, RecordError, RemoteTransaction

_logger = get_logger("pos_sync.fetch")

DEFAULT_MAX_PAGES = 1000


class TransactionSource(Protocol):
    """Anything that can serve one page of raw transactions for a date range."""

    def get_transactions_page(
        self, *, date_from: date, date_to: date, page: int, per_page: int
    ) -> Any: ...


@dataclass(slots=True)
class _ChunkResult:
    date_from: date
    date_to: date
    transactions: list[RemoteTransaction] = field(default_factory=list)
    rejected: list[RecordError] = field(default_factory=list)
    observed: set[str] = field(default_factory=set)
    # id -> whether its latest row in this chunk was rejected
    last_rejected: dict[str, bool] = field(default_factory=dict)
    pages: int = 0
    rows: int = 0
    reported_total: int | None = None
    complete: bool = True


def iter_date_chunks(date_from: date, date_to: date, chunk_days: int) -> Iterator[tuple[date, date]]:
    """Yield inclusive ``(start, end)`` ranges of at most ``chunk_days`` days."""

    if chunk_days < 1:
        raise ValueError("chunk_days must be a positive integer")
    start = date_from
    while start <= date_to:
        end = min(start + timedelta(days=chunk_days - 1), date_to)
        yield start, end
        start = end + timedelta(days=1)


def _raw_id(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    for key in ("transaction_id", "id"):
        value = raw.get(key)
        if value is not None and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return None


def _describe(err: ValidationError) -> str:
    parts = []
    for item in err.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "record"
        parts.append(f"{loc}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


def validate_row(raw: Any) -> RemoteTransaction | RecordError:
    """Validate one raw upstream row, returning the record or why it was rejected."""

    if not isinstance(raw, dict):
        return RecordError(None, f"expected an object, got {type(raw).__name__}")
    try:
        return RemoteTransaction.model_validate(raw)
    except ValidationError as e:
        return RecordError(_raw_id(raw), _describe(e))


def _drain_chunk(
    client: TransactionSource,
    date_from: date,
    date_to: date,
    *,
    per_page: int,
    max_pages: int,
) -> _ChunkResult:
    out = _ChunkResult(date_from=date_from, date_to=date_to)
    t0 = time.perf_counter()
    previous_ids: list[str | None] | None = None
    page = 1
    while True:
        if page > max_pages:
            raise UpstreamPayloadError(
                f"pagination did not terminate within {max_pages} pages "
                f"for {date_from.isoformat()}..{date_to.isoformat()}"
            )
        result = client.get_transactions_page(
            date_from=date_from, date_to=date_to, page=page, per_page=per_page
        )
        rows = list(result.rows)
        if result.total is not None:
            out.reported_total = result.total

        page_ids = [_raw_id(r) for r in rows]
        if rows and previous_ids is not None and page_ids == previous_ids:
            # Upstream ignored the page parameter; nothing new will come.
            _logger.warning(
                "sync:fetch_repeated_page date_from=%s date_to=%s page=%d",
                date_from.isoformat(),
                date_to.isoformat(),
                page,
            )
            out.complete = False
            break
        previous_ids = page_ids

        out.pages += 1
        out.rows += len(rows)
        for raw in rows:
            item = validate_row(raw)
            if isinstance(item, RecordError):
                out.rejected.append(item)
                if item.transaction_id is not None:
                    out.observed.add(item.transaction_id)
                    out.last_rejected[item.transaction_id] = True
                continue
            out.transactions.append(item)
            out.observed.add(item.transaction_id)
            out.last_rejected[item.transaction_id] = False

        if len(rows) < per_page:
            break
        if out.reported_total is not None and out.rows >= out.reported_total:
            break
        page += 1

    if out.reported_total is not None and out.rows != out.reported_total:
        _logger.warning(
            "sync:fetch_count_mismatch date_from=%s date_to=%s reported=%d received=%d",
            date_from.isoformat(),
            date_to.isoformat(),
            out.reported_total,
            out.rows,
        )
        out.complete = False

    _logger.info(
        "sync:fetch_chunk_done date_from=%s date_to=%s pages=%d rows=%d rejected=%d complete=%s latency_ms=%.2f",
        date_from.isoformat(),
        date_to.isoformat(),
        out.pages,
        out.rows,
        len(out.rejected),
        out.complete,
        (time.perf_counter() - t0) * 1000.0,
    )
    return out


def fetch_all(
    client: TransactionSource,
    window: FetchWindow,
    *,
    per_page: int = 100,
    chunk_days: int = 30,
    concurrency: int = 4,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> FetchResult:
    """Read every upstream transaction created inside ``window``.

    Any upstream error propagates unchanged; nothing is returned for a
    partially read window.
    """

    if per_page < 1:
        raise ValueError("per_page must be a positive integer")
    req_from, req_to = window.request_range()
    chunks = list(iter_date_chunks(req_from, req_to, chunk_days))
    workers = max(1, min(concurrency, len(chunks)))

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="poster-fetch")
    try:
        futures = [
            executor.submit(
                _drain_chunk, client, lo, hi, per_page=per_page, max_pages=max_pages
            )
            for lo, hi in chunks
        ]
        results = [f.result() for f in futures]
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    transactions: list[RemoteTransaction] = []
    rejected: list[RecordError] = []
    observed: set[str] = set()
    last_rejected: dict[str, bool] = {}
    for r in results:
        transactions.extend(r.transactions)
        rejected.extend(r.rejected)
        observed.update(r.observed)
        # Chunks are in fetch order, so later chunks win.
        last_rejected.update(r.last_rejected)

    totals = [r.reported_total for r in results]
    reported_total = sum(t for t in totals if t is not None) if all(t is not None for t in totals) else None

    fetched = FetchResult(
        window=window,
        transactions=tuple(transactions),
        rejected=tuple(rejected),
        observed_ids=frozenset(observed),
        rejected_last_ids=frozenset(i for i, bad in last_rejected.items() if bad),
        complete=all(r.complete for r in results),
        pages=sum(r.pages for r in results),
        reported_total=reported_total,
    )
    _logger.info(
        "sync:fetch_done chunks=%d pages=%d records=%d rejected=%d complete=%s",
        len(chunks),
        fetched.pages,
        len(fetched.transactions),
        len(fetched.rejected),
        fetched.complete,
    )
    return fetched


__all__ = ["DEFAULT_MAX_PAGES", "TransactionSource", "fetch_all", "iter_date_chunks", "validate_row"]
