"""Data models for ``pos_sync``.

Two record shapes flow through a pass:

- :class:`RemoteTransaction`: an upstream row validated at the boundary. The
  Poster payload is loosely typed JSON (ids as numbers or strings, timestamps
  as epoch-millisecond strings or ``"Y-m-d H:i:s"``, ``"0"`` meaning "none");
  validators coerce it into one strict shape or reject the row.
- :class:`LocalTransactionRecord`: an immutable snapshot of a cache row,
  carrying the engine-owned bookkeeping columns as well.

The remaining types are the values exchanged between stages (window, fetch
result, diff, write result, pass summary).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Literal, TypeAlias

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Plausible epoch range (2000-01-01 .. 2100-01-01) in milliseconds and seconds.
_EPOCH_MS_RANGE = (946_684_800_000, 4_102_444_800_000)
_EPOCH_S_RANGE = (946_684_800, 4_102_444_800)


def parse_poster_datetime(value: Any) -> datetime | None:
    """Parse a Poster timestamp into an aware UTC ``datetime``.

    Accepts ``datetime`` objects, Unix epochs (milliseconds or seconds, as
    numbers or digit strings) and ISO-like strings such as
    ``"2023-12-25 14:30:00"``. Naive values are taken as UTC. ``None``, ``""``
    and ``"0"`` mean "not set" and return ``None``; anything else that cannot
    be parsed raises ``ValueError``.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    if isinstance(value, bool):
        raise ValueError(f"invalid timestamp: {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"invalid timestamp: {value!r}")
        value = int(value)

    s = str(value).strip()
    if s in ("", "0"):
        return None
    if s.isdigit():
        n = int(s)
        if _EPOCH_MS_RANGE[0] < n < _EPOCH_MS_RANGE[1]:
            base = datetime.fromtimestamp(n // 1000, tz=UTC)
            return base.replace(microsecond=(n % 1000) * 1000)
        if _EPOCH_S_RANGE[0] < n < _EPOCH_S_RANGE[1]:
            return datetime.fromtimestamp(n, tz=UTC)
        raise ValueError(f"timestamp out of range: {s}")
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValueError(f"invalid timestamp: {s!r}") from e
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)


def canonical_payload(value: Any) -> str | None:
    """Serialize a product payload deterministically.

    JSON structures (or strings containing JSON) are dumped with sorted keys
    and compact separators so equal payloads always compare equal. Strings
    that are not JSON are kept verbatim.
    """

    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError(f"expected an integer, got {value!r}")
    s = str(value).strip()
    if s == "":
        return None
    try:
        return int(s)
    except ValueError as e:
        raise ValueError(f"expected an integer, got {value!r}") from e


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class RemoteTransaction(BaseModel):
    """One upstream transaction, validated and coerced at the fetch boundary.

    Field names follow the cache columns; Poster's wire names are accepted as
    aliases (``client_id``, ``payed_sum``, ``date_create``).
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    transaction_id: str = Field(validation_alias=AliasChoices("transaction_id", "id"))
    client_ref: str | None = Field(
        default=None, validation_alias=AliasChoices("client_ref", "client_id")
    )
    paid_amount: str = Field(validation_alias=AliasChoices("paid_amount", "payed_sum"))
    products: str | None = None
    date_created: datetime = Field(validation_alias=AliasChoices("date_created", "date_create"))
    date_close: datetime | None = None
    table_id: int | None = None
    pay_type: int | None = None

    @field_validator("transaction_id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        if v is None or isinstance(v, bool):
            raise ValueError("transaction_id is required")
        s = str(v).strip()
        if not s:
            raise ValueError("transaction_id must be non-empty")
        return s

    @field_validator("client_ref", mode="before")
    @classmethod
    def _coerce_client_ref(cls, v: Any) -> str | None:
        if v is None or isinstance(v, bool):
            return None
        s = str(v).strip()
        # Poster reports "no client" as client_id 0.
        return None if s in ("", "0") else s

    @field_validator("paid_amount", mode="before")
    @classmethod
    def _coerce_amount(cls, v: Any) -> str:
        if v is None or isinstance(v, bool):
            raise ValueError("paid_amount is required")
        s = str(v).strip().replace(",", ".")
        try:
            d = Decimal(s)
        except InvalidOperation as e:
            raise ValueError(f"paid_amount is not a decimal: {v!r}") from e
        if not d.is_finite():
            raise ValueError(f"paid_amount must be finite: {v!r}")
        return s

    @field_validator("products", mode="before")
    @classmethod
    def _coerce_products(cls, v: Any) -> str | None:
        return canonical_payload(v)

    @field_validator("date_created", mode="before")
    @classmethod
    def _coerce_created(cls, v: Any) -> datetime:
        parsed = parse_poster_datetime(v)
        if parsed is None:
            raise ValueError("date_created is required")
        return parsed

    @field_validator("date_close", mode="before")
    @classmethod
    def _coerce_close(cls, v: Any) -> datetime | None:
        return parse_poster_datetime(v)

    @field_validator("table_id", "pay_type", mode="before")
    @classmethod
    def _coerce_optional_int(cls, v: Any) -> int | None:
        return _optional_int(v)


@dataclass(frozen=True, slots=True)
class LocalTransactionRecord:
    """Snapshot of one cache row as it was before the current pass."""

    transaction_id: str
    client_ref: str | None
    paid_amount: str
    products: str | None
    date_created: datetime
    date_close: datetime | None
    table_id: int | None
    pay_type: int | None
    date_updated: datetime
    synced_at: datetime
    missed_passes: int = 0

    @classmethod
    def from_row(cls, row: Any) -> LocalTransactionRecord:
        return cls(
            transaction_id=row.transaction_id,
            client_ref=row.client_ref,
            paid_amount=row.paid_amount,
            products=row.products,
            date_created=row.date_created,
            date_close=row.date_close,
            table_id=row.table_id,
            pay_type=row.pay_type,
            date_updated=row.date_updated,
            synced_at=row.synced_at,
            missed_passes=row.missed_passes or 0,
        )


@dataclass(frozen=True, slots=True)
class RecordError:
    """A single record that could not be validated or written."""

    transaction_id: str | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.transaction_id, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class Anomaly:
    """Something suspicious the pass noticed and deliberately did not act on."""

    kind: str
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **self.detail}


# ---------------------------------------------------------------------------
# Stage values
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FetchWindow:
    """Calendar-date range of transaction creation dates a pass reads.

    ``covers`` uses the window as planned. The upstream request itself is
    padded by a day on each side (:meth:`request_range`) because Poster
    filters by its own local date, not UTC.
    """

    date_from: date
    date_to: date
    full: bool = False

    def __post_init__(self) -> None:
        if self.date_from > self.date_to:
            raise ValueError("FetchWindow.date_from must not be after date_to")

    def covers(self, moment: datetime) -> bool:
        day = moment.astimezone(UTC).date() if moment.tzinfo else moment.date()
        return self.date_from <= day <= self.date_to

    def request_range(self) -> tuple[date, date]:
        return self.date_from - timedelta(days=1), self.date_to + timedelta(days=1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_from": self.date_from.isoformat(),
            "date_to": self.date_to.isoformat(),
            "full": self.full,
        }


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Fully drained upstream read for one window.

    ``transactions`` keeps fetch order, duplicates included; consumers that
    need one record per id let the last one win. ``observed_ids`` also holds
    ids of rows rejected by validation so they are never mistaken for
    deletions. ``rejected_last_ids`` holds the ids whose last occurrence in
    fetch order was rejected; any earlier valid copy of those is stale.
    """

    window: FetchWindow
    transactions: tuple[RemoteTransaction, ...] = ()
    rejected: tuple[RecordError, ...] = ()
    observed_ids: frozenset[str] = frozenset()
    rejected_last_ids: frozenset[str] = frozenset()
    complete: bool = True
    pages: int = 0
    reported_total: int | None = None

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(tx.transaction_id for tx in self.transactions)


@dataclass(slots=True)
class SyncDiff:
    """Classification of fetched records against the local snapshot."""

    to_create: list[RemoteTransaction] = field(default_factory=list)
    to_update: list[RemoteTransaction] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    to_mark_missed: list[str] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)
    # Cached ids seen upstream whose latest record failed validation.
    held: list[str] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)


@dataclass(slots=True)
class WriteResult:
    """Outcome of applying a :class:`SyncDiff` to the cache."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    touched: list[str] = field(default_factory=list)
    missed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)


PassStatus: TypeAlias = Literal["ok", "partial", "failed", "skipped"]


@dataclass(slots=True)
class SyncSummary:
    """Result of one pass, handed to telemetry and returned to the scheduler.

    ``synced`` counts every row this pass confirmed upstream: created,
    updated and unchanged-but-touched.
    """

    status: PassStatus
    started_at: datetime
    finished_at: datetime | None = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    synced: int = 0
    fetched: int = 0
    errors: list[RecordError] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)
    window: FetchWindow | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "synced": self.synced,
            "fetched": self.fetched,
            "errors": [e.to_dict() for e in self.errors],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "window": self.window.to_dict() if self.window else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


__all__ = [
    "Anomaly",
    "FetchResult",
    "FetchWindow",
    "LocalTransactionRecord",
    "PassStatus",
    "RecordError",
    "RemoteTransaction",
    "SyncDiff",
    "SyncSummary",
    "WriteResult",
    "canonical_payload",
    "parse_poster_datetime",
]
