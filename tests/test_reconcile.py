from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from pos_sync.models import (
    FetchResult,
    FetchWindow,
    LocalTransactionRecord,
    RecordError,
    RemoteTransaction,
)
from pos_sync.reconcile import changed_fields, diff

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
WINDOW = FetchWindow(date(2024, 3, 14), date(2024, 3, 15))


def _remote(tx_id: str, *, paid: str = "100", created: datetime = NOW, **kw) -> RemoteTransaction:
    return RemoteTransaction(
        transaction_id=tx_id, paid_amount=paid, date_created=created, table_id=1, pay_type=1, **kw
    )


def _local(
    tx_id: str, *, paid: str = "100", created: datetime = NOW, missed: int = 0, **kw
) -> LocalTransactionRecord:
    values = {
        "client_ref": None,
        "products": None,
        "date_close": None,
        "table_id": 1,
        "pay_type": 1,
    }
    values.update(kw)
    return LocalTransactionRecord(
        transaction_id=tx_id,
        paid_amount=paid,
        date_created=created,
        date_updated=NOW - timedelta(days=1),
        synced_at=NOW - timedelta(days=1),
        missed_passes=missed,
        **values,
    )


def _fetched(*txs: RemoteTransaction, complete: bool = True, extra_observed=()) -> FetchResult:
    ids = {t.transaction_id for t in txs} | set(extra_observed)
    return FetchResult(
        window=WINDOW, transactions=tuple(txs), observed_ids=frozenset(ids), complete=complete
    )


def _local_map(*rows: LocalTransactionRecord) -> dict[str, LocalTransactionRecord]:
    return {r.transaction_id: r for r in rows}


def test_classifies_create_update_unchanged() -> None:
    local = _local_map(_local("a"), _local("b", paid="250"))
    fetched = _fetched(_remote("a"), _remote("b", paid="300"), _remote("c"))
    d = diff(local, fetched)
    assert [t.transaction_id for t in d.to_create] == ["c"]
    assert [t.transaction_id for t in d.to_update] == ["b"]
    assert d.unchanged == ["a"]
    assert d.to_delete == [] and d.to_mark_missed == [] and d.anomalies == []


def test_equal_amounts_in_different_notation_are_unchanged() -> None:
    d = diff(_local_map(_local("a", paid="250.00")), _fetched(_remote("a", paid="250")))
    assert d.unchanged == ["a"]


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("client_ref", "42"),
        ("products", '[{"id":1}]'),
        ("date_close", NOW),
        ("table_id", 9),
        ("pay_type", 2),
    ],
)
def test_each_compared_field_triggers_update(field: str, value) -> None:
    local = _local("a")
    remote = _remote("a").model_copy(update={field: value})
    assert changed_fields(local, remote) == [field]


def test_engine_owned_fields_are_not_compared() -> None:
    local = _local("a", missed=1)
    assert changed_fields(local, _remote("a")) == []


def test_duplicate_ids_last_wins_with_anomaly() -> None:
    fetched = _fetched(_remote("a", paid="1"), _remote("a", paid="2"))
    d = diff({}, fetched)
    assert [t.paid_amount for t in d.to_create] == ["2"]
    assert [a.kind for a in d.anomalies] == ["duplicate_ids"]
    assert d.anomalies[0].detail["ids"] == ["a"]


def test_empty_fetch_never_deletes() -> None:
    local = _local_map(*(_local(str(i), missed=5) for i in range(5)))
    d = diff(local, _fetched())
    assert d.to_delete == [] and d.to_mark_missed == []
    assert [a.kind for a in d.anomalies] == ["empty_fetch"]


def test_incomplete_fetch_never_deletes() -> None:
    local = _local_map(_local("a"), _local("b", missed=3))
    d = diff(local, _fetched(_remote("a"), complete=False), delete_after_misses=1)
    assert d.to_delete == [] and d.to_mark_missed == []
    assert [a.kind for a in d.anomalies] == ["incomplete_fetch"]


def test_mass_absence_is_refused() -> None:
    local = _local_map(*(_local(str(i)) for i in range(10)))
    d = diff(local, _fetched(_remote("0"), _remote("1")), delete_after_misses=1)
    assert d.to_delete == [] and d.to_mark_missed == []
    assert d.anomalies[0].kind == "mass_absence"
    assert d.anomalies[0].detail["absent"] == 8


def test_first_miss_only_marks_second_deletes() -> None:
    rows = [_local(str(i)) for i in range(4)]
    fetched = _fetched(*(_remote(str(i)) for i in range(3)))
    d1 = diff(_local_map(*rows), fetched)
    assert d1.to_mark_missed == ["3"] and d1.to_delete == []

    rows[3] = _local("3", missed=1)
    d2 = diff(_local_map(*rows), fetched)
    assert d2.to_delete == ["3"] and d2.to_mark_missed == []


def test_single_confirmation_deletes_immediately() -> None:
    local = _local_map(*(_local(str(i)) for i in range(5)))
    fetched = _fetched(*(_remote(str(i)) for i in range(4)))
    d = diff(local, fetched, delete_after_misses=1)
    assert d.to_delete == ["4"]


def test_rows_outside_window_are_never_candidates() -> None:
    old = _local("old", created=datetime(2024, 3, 1, tzinfo=UTC))
    edge = _local("edge", created=datetime(2024, 3, 13, 23, 0, tzinfo=UTC))
    d = diff(_local_map(old, edge, _local("a")), _fetched(_remote("a")), delete_after_misses=1)
    assert d.to_delete == [] and d.to_mark_missed == [] and d.anomalies == []


def test_rejected_but_observed_rows_are_not_absent() -> None:
    local = _local_map(_local("a"), _local("bad"))
    d = diff(local, _fetched(_remote("a"), extra_observed={"bad"}), delete_after_misses=1)
    assert d.to_delete == []
    assert d.unchanged == ["a"]
    assert d.held == ["bad"]


def test_later_rejected_copy_supersedes_earlier_valid_record() -> None:
    fetched = FetchResult(
        window=WINDOW,
        transactions=(_remote("7", paid="100"),),
        rejected=(RecordError("7", "pay_type: invalid"),),
        observed_ids=frozenset({"7"}),
        rejected_last_ids=frozenset({"7"}),
    )
    d = diff({}, fetched)
    assert d.to_create == [] and d.to_update == [] and d.held == []
    assert [a.kind for a in d.anomalies] == ["duplicate_ids"]
    assert d.anomalies[0].detail["ids"] == ["7"]

    d = diff(_local_map(_local("7", paid="50")), fetched)
    assert d.to_update == []
    assert d.held == ["7"]


def test_later_valid_copy_wins_over_earlier_rejected_one() -> None:
    fetched = FetchResult(
        window=WINDOW,
        transactions=(_remote("7", paid="200"),),
        rejected=(RecordError("7", "pay_type: invalid"),),
        observed_ids=frozenset({"7"}),
    )
    d = diff({}, fetched)
    assert [t.paid_amount for t in d.to_create] == ["200"]
    assert [a.kind for a in d.anomalies] == ["duplicate_ids"]


def test_invalid_policy_arguments() -> None:
    with pytest.raises(ValueError):
        diff({}, _fetched(), delete_after_misses=0)
    with pytest.raises(ValueError):
        diff({}, _fetched(), max_delete_ratio=1.5)
