"""Unit tests for the SQLite document store."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from errand_ledger_service.services.ledger_store import (
    DuplicateDocumentError,
    LedgerStore,
    VersionConflictError,
)
from errand_ledger_service.services.locks import KeyedLocks

pytestmark = pytest.mark.unit


@pytest.fixture
def store(tmp_path):
    ledger_store = LedgerStore(db_path=str(tmp_path / "nested" / "store.db"))
    yield ledger_store
    ledger_store.close()


class TestInsertAndGet:
    def test_insert_stamps_metadata(self, store):
        record = store.insert("wallets", "wal-a", {"user_id": "a", "balance": 0})
        assert record["version"] == 1
        assert record["created_at"] == record["updated_at"]
        assert record["created_at"].endswith("Z")
        assert store.get("wallets", "wal-a") == record

    def test_get_missing_returns_none(self, store):
        assert store.get("wallets", "nope") is None

    def test_insert_duplicate_raises(self, store):
        store.insert("wallets", "wal-a", {"balance": 0})
        with pytest.raises(DuplicateDocumentError):
            store.insert("wallets", "wal-a", {"balance": 5})
        assert store.get("wallets", "wal-a")["balance"] == 0

    def test_same_id_in_different_collections(self, store):
        store.insert("wallets", "x", {"kind": "wallet"})
        store.insert("tasks", "x", {"kind": "task"})
        assert store.get("wallets", "x")["kind"] == "wallet"
        assert store.get("tasks", "x")["kind"] == "task"

    def test_metadata_fields_in_record_are_ignored(self, store):
        record = store.insert("wallets", "wal-a", {"balance": 1, "version": 99, "created_at": "x"})
        assert record["version"] == 1
        assert record["created_at"] != "x"


class TestPut:
    def test_put_creates_then_replaces(self, store):
        store.put("tasks", "t1", {"status": "open", "title": "A"})
        updated = store.put("tasks", "t1", {"status": "accepted"})
        assert updated["version"] == 2
        assert "title" not in store.get("tasks", "t1")

    def test_put_merge_keeps_other_fields(self, store):
        created = store.insert("tasks", "t1", {"status": "open", "title": "A"})
        updated = store.put("tasks", "t1", {"status": "accepted"}, merge=True)
        assert updated["title"] == "A"
        assert updated["status"] == "accepted"
        assert updated["created_at"] == created["created_at"]
        assert store.get("tasks", "t1") == updated

    def test_expected_version_matches(self, store):
        store.insert("tasks", "t1", {"status": "open"})
        updated = store.put("tasks", "t1", {"status": "accepted"}, merge=True, expected_version=1)
        assert updated["version"] == 2

    def test_expected_version_conflict_leaves_document_untouched(self, store):
        store.insert("tasks", "t1", {"status": "open"})
        store.put("tasks", "t1", {"status": "accepted"}, merge=True)
        with pytest.raises(VersionConflictError):
            store.put("tasks", "t1", {"status": "cancelled"}, merge=True, expected_version=1)
        stored = store.get("tasks", "t1")
        assert stored["status"] == "accepted"
        assert stored["version"] == 2

    def test_expected_version_zero_requires_absence(self, store):
        store.put("tasks", "t1", {"status": "open"}, expected_version=0)
        with pytest.raises(VersionConflictError):
            store.put("tasks", "t1", {"status": "open"}, expected_version=0)

    def test_compare_and_swap_admits_one_writer(self, store):
        store.insert("escrows", "e1", {"status": "active"})
        barrier = threading.Barrier(8)

        def close(outcome: str) -> bool:
            barrier.wait()
            try:
                store.put("escrows", "e1", {"status": outcome}, merge=True, expected_version=1)
            except VersionConflictError:
                return False
            return True

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(close, ["released", "refunded"] * 4))

        assert results.count(True) == 1
        assert store.get("escrows", "e1")["version"] == 2


class TestQuery:
    @pytest.fixture
    def seeded(self, store):
        for i, (status, amount, runner) in enumerate(
            [
                ("open", 500, None),
                ("accepted", 1500, "r1"),
                ("open", 2500, None),
                ("completed", 3500, "r2"),
            ]
        ):
            store.insert(
                "tasks",
                f"t{i}",
                {"task_id": f"t{i}", "status": status, "reward_amount": amount, "runner_id": runner},
            )
        return store

    def test_equality_filter(self, seeded):
        ids = [t["task_id"] for t in seeded.query("tasks", [("status", "==", "open")])]
        assert ids == ["t0", "t2"]

    def test_range_and_in_filters(self, seeded):
        results = seeded.query(
            "tasks",
            [("reward_amount", ">=", 1500), ("status", "in", ["accepted", "completed"])],
        )
        assert [t["task_id"] for t in results] == ["t1", "t3"]

    def test_empty_in_filter_matches_nothing(self, seeded):
        assert seeded.query("tasks", [("status", "in", [])]) == []
        assert seeded.count("tasks", [("status", "in", [])]) == 0

    def test_null_filters(self, seeded):
        assert seeded.count("tasks", [("runner_id", "==", None)]) == 2
        assert seeded.count("tasks", [("runner_id", "!=", None)]) == 2

    def test_order_limit_offset(self, seeded):
        results = seeded.query("tasks", order_by="reward_amount", descending=True, limit=2, offset=1)
        assert [t["task_id"] for t in results] == ["t2", "t1"]
        tail = seeded.query("tasks", order_by="reward_amount", offset=3)
        assert [t["task_id"] for t in tail] == ["t3"]

    def test_count_and_sum(self, seeded):
        assert seeded.count("tasks") == 4
        assert seeded.sum("tasks", "reward_amount") == 8000
        assert seeded.sum("tasks", "reward_amount", [("status", "==", "open")]) == 3000
        assert seeded.sum("wallets", "balance") == 0

    def test_rejects_unsafe_field_names(self, seeded):
        with pytest.raises(ValueError, match="Invalid field name"):
            seeded.query("tasks", [("status') OR 1=1 --", "==", "x")])

    def test_rejects_unknown_operator(self, seeded):
        with pytest.raises(ValueError, match="Unsupported filter operator"):
            seeded.query("tasks", [("status", "LIKE", "o%")])


def test_data_survives_reopen(tmp_path):
    db_path = str(tmp_path / "store.db")
    first = LedgerStore(db_path=db_path)
    first.insert("wallets", "wal-a", {"balance": 42})
    first.close()

    second = LedgerStore(db_path=db_path)
    try:
        assert second.get("wallets", "wal-a")["balance"] == 42
    finally:
        second.close()


def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    counter = {"value": 0}

    def bump(_: int) -> None:
        with locks.hold("wal-a"):
            current = counter["value"]
            threading.Event().wait(0.001)
            counter["value"] = current + 1

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bump, range(40)))

    assert counter["value"] == 40
    assert len(locks) == 0


def test_keyed_locks_drop_idle_keys():
    locks = KeyedLocks()

    for i in range(100):
        with locks.hold(f"t-{i}"):
            assert len(locks) == 1

    assert len(locks) == 0


def test_keyed_locks_keep_lock_while_waiting():
    locks = KeyedLocks()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def holder() -> None:
        with locks.hold("t-1"):
            entered.set()
            release.wait(5)
            order.append("holder")

    def waiter() -> None:
        entered.wait(5)
        with locks.hold("t-1"):
            order.append("waiter")

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(holder)
        second = pool.submit(waiter)
        entered.wait(5)
        threading.Event().wait(0.05)
        assert len(locks) == 1
        release.set()
        first.result()
        second.result()

    assert order == ["holder", "waiter"]
    assert len(locks) == 0


def test_keyed_locks_release_on_error():
    locks = KeyedLocks()

    with pytest.raises(RuntimeError), locks.hold("wal-a"):
        raise RuntimeError("boom")

    assert len(locks) == 0
    with locks.hold("wal-a"):
        pass
