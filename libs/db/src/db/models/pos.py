from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always round-trips as aware UTC.

    PostgreSQL returns ``timestamptz`` values in the session time zone and
    SQLite drops ``tzinfo`` entirely; both are normalized to UTC on the way out
    so values read back compare equal to what upstream sent.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if not isinstance(value, datetime):
            raise TypeError(f"expected datetime, got {type(value).__name__}")
        if value.tzinfo is None:
            raise ValueError("naive datetime is not allowed; attach a time zone")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------
# Cache: pos_transactions
# ---------------------------


class PosTransaction(Base):
    """Local replica of one upstream POS transaction.

    Vendor columns mirror the upstream record exactly. ``date_updated``,
    ``synced_at`` and ``missed_passes`` are owned by the sync engine and are
    never compared against upstream content.
    """

    __tablename__ = "pos_transactions"

    transaction_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Decimal kept as text so the cached value is byte-for-byte what upstream sent.
    paid_amount: Mapped[str] = mapped_column(String(32), nullable=False)
    products: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_created: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    date_close: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    table_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pay_type: Mapped[int | None] = mapped_column(Integer, nullable=True)

    date_updated: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    # Consecutive complete passes that covered this row's time range without
    # observing it. Reset to 0 whenever the row is seen again.
    missed_passes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )

    __table_args__ = (
        # Vendor columns are unconstrained: upstream owns their value ranges.
        CheckConstraint("missed_passes >= 0", name="ck_pos_tx_missed_passes"),
        Index("ix_pos_transactions_client_ref", "client_ref"),
        Index("ix_pos_transactions_date_created", "date_created"),
        Index("ix_pos_transactions_synced_at", "synced_at"),
    )


VENDOR_COLUMNS: tuple[str, ...] = (
    "transaction_id",
    "client_ref",
    "paid_amount",
    "products",
    "date_created",
    "date_close",
    "table_id",
    "pay_type",
)
"""Columns copied verbatim from upstream, in declaration order."""


__all__ = [
    "Base",
    "PosTransaction",
    "UTCDateTime",
    "VENDOR_COLUMNS",
]
