"""
Integration tests for the SQLite document store.
"""
import pytest

from procurement.errors import NotFound, UpstreamWriteFailure, ValidationFailure
from procurement.store import LEDGER, ORDERS, DocumentStore, WriteOp, where
from procurement.workflow import OrderStateMachine


@pytest.mark.integration
class TestDocumentCrud:
    """Single-document operations."""

    def test_add_and_get(self, store):
        doc_id = store.add(ORDERS, {"order_number": "OC-1", "status": "Approved"})
        record = store.get(ORDERS, doc_id)
        assert record == {"id": doc_id, "order_number": "OC-1", "status": "Approved"}

    def test_missing_document_is_none(self, store):
        assert store.get(ORDERS, "nope") is None

    def test_set_replaces_and_update_merges(self, store):
        store.set(ORDERS, "A", {"status": "Approved", "total": 5})
        store.set(ORDERS, "A", {"status": "Rejected"})
        assert store.get(ORDERS, "A") == {"id": "A", "status": "Rejected"}

        store.update(ORDERS, "A", {"total": 9})
        assert store.get(ORDERS, "A") == {"id": "A", "status": "Rejected", "total": 9}

    def test_update_missing_raises(self, store):
        with pytest.raises(NotFound):
            store.update(ORDERS, "missing", {"total": 1})

    def test_delete(self, store):
        store.set(ORDERS, "A", {"status": "Approved"})
        assert store.delete(ORDERS, "A") is True
        assert store.delete(ORDERS, "A") is False
        assert store.count(ORDERS) == 0

    def test_collections_are_separate(self, store):
        store.set(ORDERS, "A", {"x": 1})
        store.set(LEDGER, "A", {"x": 2})
        assert store.get(ORDERS, "A")["x"] == 1
        assert store.get(LEDGER, "A")["x"] == 2


@pytest.mark.integration
class TestQueries:
    """Filters and ordering."""

    def test_equality_and_insertion_order(self, store):
        for n, status in enumerate(["Approved", "Rejected", "Approved"]):
            store.set(ORDERS, f"O{n}", {"status": status, "n": n})
        rows = store.query(ORDERS, where("status", "==", "Approved"))
        assert [r["id"] for r in rows] == ["O0", "O2"]

    def test_in_filter_on_id(self, store):
        for n in range(4):
            store.set(ORDERS, f"O{n}", {"n": n})
        rows = store.query(ORDERS, where("id", "in", ["O1", "O3"]))
        assert [r["n"] for r in rows] == [1, 3]

    def test_in_filter_limit(self, store):
        with pytest.raises(ValidationFailure, match="max 10"):
            store.query(ORDERS, where("id", "in", [str(n) for n in range(11)]))

    def test_empty_in_filter_matches_nothing(self, store):
        store.set(ORDERS, "A", {"n": 1})
        assert store.query(ORDERS, where("id", "in", [])) == []

    def test_query_in_chunks_large_sets(self, store):
        ids = [f"O{n:02d}" for n in range(25)]
        for doc_id in ids:
            store.set(ORDERS, doc_id, {"status": "Received"})
        store.set(ORDERS, "O03", {"status": "Approved"})

        rows = store.query_in(ORDERS, "id", ids + ids[:3], where("status", "==", "Received"))
        assert len(rows) == 24
        assert "O03" not in {r["id"] for r in rows}

    def test_unsupported_operator(self):
        with pytest.raises(ValidationFailure):
            where("status", "!=", "x")

    def test_date_range_across_stored_shapes(self, store):
        store.add(LEDGER, {"tag": "iso", "date": "2024-03-10T00:00:00Z"})
        store.add(LEDGER, {"tag": "map", "date": {"_seconds": 1710460800, "_nanoseconds": 0}})  # 2024-03-15
        store.add(LEDGER, {"tag": "old", "date": "2024-01-01T00:00:00Z"})
        store.add(LEDGER, {"tag": "none"})

        rows = store.query(
            LEDGER,
            where("date", ">=", "2024-03-01T00:00:00Z"),
            where("date", "<", "2024-04-01T00:00:00Z"),
        )
        assert [r["tag"] for r in rows] == ["iso", "map"]

    def test_range_bounds_are_inclusive_or_strict(self, store):
        store.add(LEDGER, {"date": "2024-03-10T00:00:00Z"})
        assert len(store.query(LEDGER, where("date", "<=", "2024-03-10T00:00:00Z"))) == 1
        assert len(store.query(LEDGER, where("date", "<", "2024-03-10T00:00:00Z"))) == 0


@pytest.mark.integration
class TestBatchWrite:
    """batch_write ceiling and atomicity."""

    def test_batch_returns_ids(self, store):
        ids = store.batch_write([
            WriteOp("add", LEDGER, data={"n": 1}),
            WriteOp("set", LEDGER, "fixed", {"n": 2}),
        ])
        assert ids[1] == "fixed"
        assert store.count(LEDGER) == 2

    def test_ceiling(self, store):
        ops = [WriteOp("add", LEDGER, data={"n": n}) for n in range(501)]
        with pytest.raises(ValidationFailure, match="exceeds"):
            store.batch_write(ops)
        assert store.count(LEDGER) == 0

    def test_exactly_at_ceiling(self, store):
        store.batch_write([WriteOp("add", LEDGER, data={"n": n}) for n in range(500)])
        assert store.count(LEDGER) == 500

    def test_failed_batch_writes_nothing(self, store):
        ops = [
            WriteOp("add", LEDGER, data={"n": 1}),
            WriteOp("update", LEDGER, "missing", {"n": 2}),
        ]
        with pytest.raises(NotFound):
            store.batch_write(ops)
        assert store.count(LEDGER) == 0


@pytest.mark.integration
class TestTransactions:
    """run_transaction commit and rollback."""

    def test_commit(self, store):
        store.set(ORDERS, "A", {"count": 1})

        def bump(txn):
            current = txn.get(ORDERS, "A")["count"]
            txn.update(ORDERS, "A", {"count": current + 1})
            return current + 1

        assert store.run_transaction(bump) == 2
        assert store.get(ORDERS, "A")["count"] == 2

    def test_exception_rolls_back_every_write(self, store):
        store.set(ORDERS, "A", {"count": 1})

        def failing(txn):
            txn.update(ORDERS, "A", {"count": 99})
            txn.add(LEDGER, {"n": 1})
            raise ValidationFailure("stop")

        with pytest.raises(ValidationFailure):
            store.run_transaction(failing)
        assert store.get(ORDERS, "A")["count"] == 1
        assert store.count(LEDGER) == 0

    def test_reads_inside_transaction_see_own_writes(self, store):
        def fn(txn):
            doc_id = txn.add(ORDERS, {"status": "Approved"})
            return [r["id"] for r in txn.query(ORDERS, where("status", "==", "Approved"))], doc_id

        ids, doc_id = store.run_transaction(fn)
        assert ids == [doc_id]


@pytest.mark.integration
class TestStoreFailures:
    """SQLite errors surface as UpstreamWriteFailure."""

    def test_unreadable_database_file(self, temp_dir):
        path = temp_dir / "garbage.db"
        path.write_bytes(b"definitely not sqlite " * 200)
        with pytest.raises(UpstreamWriteFailure, match="not a database"):
            DocumentStore(path)

    def test_operations_report_upstream_failure(self, store, test_config):
        store.set(ORDERS, "ORD-1", {"status": "Pending Approval", "items": []})
        for suffix in ("-wal", "-shm"):
            sidecar = store.db_path.with_name(store.db_path.name + suffix)
            if sidecar.exists():
                sidecar.unlink()
        store.db_path.write_bytes(b"definitely not sqlite " * 200)

        result = OrderStateMachine(store, test_config).request_transition(
            "ORD-1", "Approved", approval_token="123456",
        )

        assert not result.success
        assert result.error == "upstream_write_failure"
