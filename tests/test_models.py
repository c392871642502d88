from __future__ import annotations

import json
from datetime import UTC, date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from pos_sync.models import (
    Anomaly,
    FetchWindow,
    RecordError,
    RemoteTransaction,
    SyncSummary,
    canonical_payload,
    parse_poster_datetime,
)


# ---- Timestamps ----------------------------------------------------------------


def test_parse_epoch_milliseconds_string() -> None:
    got = parse_poster_datetime("1710504000123")
    assert got == datetime(2024, 3, 15, 12, 0, 0, 123000, tzinfo=UTC)


def test_parse_epoch_seconds_int() -> None:
    assert parse_poster_datetime(1710504000) == datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


def test_parse_poster_wall_clock_string_is_utc() -> None:
    got = parse_poster_datetime("2023-12-25 14:30:00")
    assert got == datetime(2023, 12, 25, 14, 30, tzinfo=UTC)
    assert got is not None and got.utcoffset() == timedelta(0)


def test_parse_offset_string_converts_to_utc() -> None:
    got = parse_poster_datetime("2024-03-15T14:00:00+02:00")
    assert got == datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
    assert got is not None and got.tzinfo == UTC


@pytest.mark.parametrize("value", [None, "", "0", 0, "  "])
def test_parse_unset_values_are_none(value) -> None:
    assert parse_poster_datetime(value) is None


@pytest.mark.parametrize("value", ["yesterday", "12345", True, 1.5])
def test_parse_rejects_garbage(value) -> None:
    with pytest.raises(ValueError):
        parse_poster_datetime(value)


def test_parse_aware_datetime_is_normalized() -> None:
    kyiv = timezone(timedelta(hours=2))
    got = parse_poster_datetime(datetime(2024, 1, 1, 2, 0, tzinfo=kyiv))
    assert got == datetime(2024, 1, 1, 0, 0, tzinfo=UTC)


# ---- Payload canonicalization ------------------------------------------------


def test_canonical_payload_sorts_keys_and_compacts() -> None:
    a = canonical_payload([{"b": 1, "a": "x"}])
    b = canonical_payload('[ {"a": "x", "b": 1} ]')
    assert a == b == '[{"a":"x","b":1}]'


def test_canonical_payload_keeps_non_json_string() -> None:
    assert canonical_payload("not json") == "not json"
    assert canonical_payload(None) is None


# ---- RemoteTransaction ----------------------------------------------------------


def _wire(**overrides):
    row = {
        "transaction_id": 101,
        "date_create": "1710504000000",
        "date_close": "0",
        "payed_sum": "250",
        "client_id": "0",
        "table_id": "3",
        "pay_type": "1",
        "products": [{"product_id": "7", "num": "2"}],
    }
    row.update(overrides)
    return row


def test_remote_transaction_from_poster_wire_names() -> None:
    tx = RemoteTransaction.model_validate(_wire())
    assert tx.transaction_id == "101"
    assert tx.client_ref is None
    assert tx.paid_amount == "250"
    assert tx.date_created == datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
    assert tx.date_close is None
    assert tx.table_id == 3
    assert tx.pay_type == 1
    assert json.loads(tx.products or "") == [{"num": "2", "product_id": "7"}]


def test_remote_transaction_accepts_field_names() -> None:
    tx = RemoteTransaction(
        transaction_id="9",
        paid_amount="1.50",
        date_created=datetime(2024, 1, 1, tzinfo=UTC),
        client_ref="42",
    )
    assert tx.client_ref == "42"
    assert tx.products is None


def test_remote_transaction_normalizes_comma_decimal() -> None:
    tx = RemoteTransaction.model_validate(_wire(payed_sum="12,50"))
    assert tx.paid_amount == "12.50"


def test_remote_transaction_keeps_client_and_close() -> None:
    tx = RemoteTransaction.model_validate(_wire(client_id=77, date_close="2024-03-15 13:00:00"))
    assert tx.client_ref == "77"
    assert tx.date_close == datetime(2024, 3, 15, 13, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "overrides",
    [
        {"transaction_id": None},
        {"transaction_id": "  "},
        {"payed_sum": "abc"},
        {"payed_sum": "NaN"},
        {"date_create": "0"},
        {"date_create": "soon"},
        {"table_id": "two"},
    ],
)
def test_remote_transaction_rejects_invalid(overrides) -> None:
    with pytest.raises(ValidationError):
        RemoteTransaction.model_validate(_wire(**overrides))


def test_remote_transaction_is_frozen() -> None:
    tx = RemoteTransaction.model_validate(_wire())
    with pytest.raises(ValidationError):
        tx.paid_amount = "1"  # type: ignore[misc]


# ---- Stage values ------------------------------------------------------------------


def test_fetch_window_covers_unpadded_dates_only() -> None:
    w = FetchWindow(date(2024, 3, 10), date(2024, 3, 15))
    assert w.covers(datetime(2024, 3, 10, 0, 0, tzinfo=UTC))
    assert w.covers(datetime(2024, 3, 15, 23, 59, tzinfo=UTC))
    assert not w.covers(datetime(2024, 3, 9, 23, 59, tzinfo=UTC))
    assert not w.covers(datetime(2024, 3, 16, 0, 0, tzinfo=UTC))
    assert w.request_range() == (date(2024, 3, 9), date(2024, 3, 16))


def test_fetch_window_rejects_inverted_range() -> None:
    with pytest.raises(ValueError):
        FetchWindow(date(2024, 3, 16), date(2024, 3, 15))


def test_summary_to_dict_shape() -> None:
    started = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
    summary = SyncSummary(
        status="partial",
        started_at=started,
        finished_at=started + timedelta(seconds=3),
        created=2,
        updated=1,
        synced=5,
        errors=[RecordError("7", "bad pay_type")],
        anomalies=[Anomaly("duplicate_ids", {"count": 1})],
        window=FetchWindow(date(2024, 3, 14), date(2024, 3, 15)),
    )
    d = summary.to_dict()
    assert d["created"] == 2 and d["updated"] == 1 and d["deleted"] == 0 and d["synced"] == 5
    assert d["errors"] == [{"id": "7", "reason": "bad pay_type"}]
    assert d["anomalies"] == [{"kind": "duplicate_ids", "count": 1}]
    assert d["window"] == {"date_from": "2024-03-14", "date_to": "2024-03-15", "full": False}
    json.dumps(d)
