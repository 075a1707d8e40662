from datetime import datetime, timezone

import pytest

from medsync.core.db import SQLiteStorage
from medsync.core.errors import ConflictError, NotFoundError
from medsync.core.storage import MemoryStorage, WriteOp


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStorage()
    return SQLiteStorage(str(tmp_path / "medsync.db"))


def test_commit_applies_all_operations(store):
    store.commit(
        [
            WriteOp("things", "a", "create", {"id": "a", "n": 1}),
            WriteOp("things", "b", "set", {"id": "b", "n": 2}),
        ]
    )
    assert store.get("things", "a") == {"id": "a", "n": 1}
    assert store.get("things", "b") == {"id": "b", "n": 2}


def test_failed_commit_writes_nothing(store):
    store.commit([WriteOp("things", "a", "create", {"id": "a"})])

    with pytest.raises(ConflictError):
        store.commit(
            [
                WriteOp("things", "b", "create", {"id": "b"}),
                WriteOp("things", "a", "create", {"id": "a", "again": True}),
            ]
        )

    assert store.get("things", "b") is None
    assert store.get("things", "a") == {"id": "a"}


def test_update_of_missing_document_fails(store):
    with pytest.raises(NotFoundError):
        store.commit([WriteOp("things", "ghost", "update", {"n": 1})])


def test_update_merges_dotted_keys(store):
    store.commit([WriteOp("things", "a", "create", {"id": "a", "nested": {"x": 1, "y": 2}})])
    store.commit([WriteOp("things", "a", "update", {"nested.x": 10})])
    assert store.get("things", "a")["nested"] == {"x": 10, "y": 2}


def test_transaction_reads_its_own_writes(store):
    def _fn(txn):
        txn.create("things", "a", {"id": "a", "n": 1})
        txn.update("things", "a", {"n": 2})
        return txn.get("things", "a")["n"]

    assert store.run_transaction(_fn) == 2
    assert store.get("things", "a")["n"] == 2


def test_exception_inside_transaction_rolls_back(store):
    def _fn(txn):
        txn.create("things", "a", {"id": "a"})
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.run_transaction(_fn)
    assert store.get("things", "a") is None


def test_query_filters_then_sorts(store):
    store.commit(
        [
            WriteOp("things", "1", "create", {"id": "1", "kind": "x", "at": "2024-03-02T00:00:00+00:00"}),
            WriteOp("things", "2", "create", {"id": "2", "kind": "y", "at": "2024-03-01T00:00:00+00:00"}),
            WriteOp("things", "3", "create", {"id": "3", "kind": "x", "at": "2024-03-01T00:00:00+00:00"}),
        ]
    )
    docs = store.query("things", [("kind", "==", "x")], order_by="at")
    assert [d["id"] for d in docs] == ["3", "1"]

    docs = store.query("things", [("kind", "==", "x")], order_by="at", descending=True, limit=1)
    assert [d["id"] for d in docs] == ["1"]


def test_datetime_strings_are_compared_as_instants(store):
    # Same instant written with different offsets
    store.commit(
        [
            WriteOp("things", "a", "create", {"id": "a", "at": "2024-03-01T12:00:00+00:00"}),
            WriteOp("things", "b", "create", {"id": "b", "at": "2024-03-01T07:00:00-05:00"}),
        ]
    )
    cutoff = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert {d["id"] for d in store.query("things", [("at", "==", cutoff)])} == {"a", "b"}
    assert store.query("things", [("at", ">", cutoff)]) == []


def test_not_equal_matches_missing_fields(store):
    store.commit(
        [
            WriteOp("things", "a", "create", {"id": "a", "archive": {"on": True}}),
            WriteOp("things", "b", "create", {"id": "b"}),
        ]
    )
    docs = store.query("things", [("archive.on", "!=", True)])
    assert [d["id"] for d in docs] == ["b"]


def test_unknown_filter_operator_is_rejected(store):
    with pytest.raises(ValueError):
        store.query("things", [("n", "~", 1)])
