"""
SQLite-backed document store.

Every record lives as a JSON document in a single ``documents`` table, keyed
by (collection, id). The store offers the small surface the core needs:

  get / query / add / set / update / delete   single-document operations
  batch_write                                 all-or-nothing group of writes
  run_transaction                             serialised read-modify-write

Query filters
-------------
  ==, in       evaluated in SQL via json_extract ("in" takes at most
               max_in_filter_values values; use ``query_in`` to chunk)
  >=, <=, >, <  date range filters, evaluated after the field has been
               normalised to a UTC instant, so ISO strings and
               {seconds, nanos} maps compare correctly

Documents come back in insertion order (rowid), which is the only ordering
the store guarantees.
"""
import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence, TypeVar

from pydantic import BaseModel

from models.timestamps import to_instant
from .errors import NotFound, UpstreamWriteFailure, ValidationFailure

logger = logging.getLogger(__name__)

ORDERS              = "purchase_orders"
LEDGER              = "ledger_entries"
PROJECTS            = "projects"
SUPPLIERS           = "suppliers"
INVENTORY           = "inventory"
INVENTORY_LOCATIONS = "inventory_locations"
TRAVEL_REPORTS      = "travel_reports"
SPEND_ADJUSTMENTS   = "spend_adjustments"
COUNTERS            = "counters"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection  TEXT    NOT NULL,
    id          TEXT    NOT NULL,
    data        TEXT    NOT NULL,   -- JSON object, without the id
    created_at  TEXT    NOT NULL,   -- ISO-8601 UTC
    updated_at  TEXT    NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents (collection);
"""

_EQUALITY_OPS = {"==", "in"}
_RANGE_OPS = {">=", "<=", ">", "<"}

T = TypeVar("T")


@dataclass(frozen=True)
class Filter:
    """A single query predicate. ``field == "id"`` targets the document id."""
    field: str
    op: str
    value: Any


def where(field: str, op: str, value: Any) -> Filter:
    if op not in _EQUALITY_OPS | _RANGE_OPS:
        raise ValidationFailure(f"Unsupported filter operator: {op!r}")
    return Filter(field, op, value)


@dataclass
class WriteOp:
    """One write inside a batch. ``kind`` is add, set, update or delete."""
    kind: str
    collection: str
    id: Optional[str] = None
    data: dict = field(default_factory=dict)


def dump(model: BaseModel) -> dict:
    """Serialise a model for storage (JSON-safe, id kept out of the payload)."""
    return model.model_dump(mode="json", exclude={"id"})


def chunked(values: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield successive slices of at most *size* values."""
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


def new_id() -> str:
    return uuid.uuid4().hex


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_path(field_name: str) -> str:
    return "$." + field_name


# ----------------------------------------------------------------------
# Connection-level helpers shared by the store and its transactions
# ----------------------------------------------------------------------

def _row_to_record(row: sqlite3.Row) -> dict:
    record = json.loads(row["data"])
    record["id"] = row["id"]
    return record


def _get(conn: sqlite3.Connection, collection: str, doc_id: str) -> Optional[dict]:
    row = conn.execute(
        "SELECT id, data FROM documents WHERE collection=? AND id=?",
        (collection, doc_id),
    ).fetchone()
    return _row_to_record(row) if row else None


def _query(
    conn: sqlite3.Connection,
    collection: str,
    filters: Iterable[Filter],
    max_in_values: int,
) -> list[dict]:
    clauses = ["collection = ?"]
    params: list = [collection]
    range_filters: list[Filter] = []

    for f in filters:
        column = "id" if f.field == "id" else f"json_extract(data, '{_json_path(f.field)}')"
        if f.op == "==":
            if f.value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(f.value)
        elif f.op == "in":
            values = list(f.value)
            if len(values) > max_in_values:
                raise ValidationFailure(
                    f"'in' filter on {f.field!r} has {len(values)} values "
                    f"(max {max_in_values}); split the id set"
                )
            if not values:
                return []
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        else:
            range_filters.append(f)

    rows = conn.execute(
        f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)} ORDER BY rowid",
        params,
    ).fetchall()
    records = [_row_to_record(r) for r in rows]

    for f in range_filters:
        bound = to_instant(f.value)
        records = [r for r in records if _in_range(r.get(f.field), f.op, bound)]
    return records


def _in_range(raw: Any, op: str, bound: datetime) -> bool:
    try:
        instant = to_instant(raw)
    except (TypeError, ValueError):
        return False
    if instant is None:
        return False
    if op == ">=":
        return instant >= bound
    if op == "<=":
        return instant <= bound
    if op == ">":
        return instant > bound
    return instant < bound


def _insert(conn: sqlite3.Connection, collection: str, doc_id: str, data: dict) -> None:
    now = _now_iso()
    payload = {k: v for k, v in data.items() if k != "id"}
    conn.execute(
        """
        INSERT INTO documents (collection, id, data, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(collection, id) DO UPDATE SET
            data       = excluded.data,
            updated_at = excluded.updated_at
        """,
        (collection, doc_id, json.dumps(payload), now, now),
    )


def _update(conn: sqlite3.Connection, collection: str, doc_id: str, partial: dict) -> None:
    current = _get(conn, collection, doc_id)
    if current is None:
        raise NotFound(f"Document in {collection}", doc_id)
    current.update({k: v for k, v in partial.items() if k != "id"})
    current.pop("id", None)
    conn.execute(
        "UPDATE documents SET data=?, updated_at=? WHERE collection=? AND id=?",
        (json.dumps(current), _now_iso(), collection, doc_id),
    )


def _delete(conn: sqlite3.Connection, collection: str, doc_id: str) -> bool:
    conn.execute("DELETE FROM documents WHERE collection=? AND id=?", (collection, doc_id))
    return conn.execute("SELECT changes()").fetchone()[0] > 0


class Transaction:
    """
    Read/write handle passed to ``run_transaction`` callbacks.

    All reads and writes go through the same connection, which holds the
    database write lock for the whole callback.
    """

    def __init__(self, conn: sqlite3.Connection, max_in_values: int) -> None:
        self._conn = conn
        self._max_in_values = max_in_values

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return _get(self._conn, collection, doc_id)

    def query(self, collection: str, *filters: Filter) -> list[dict]:
        return _query(self._conn, collection, filters, self._max_in_values)

    def add(self, collection: str, data: dict) -> str:
        doc_id = new_id()
        _insert(self._conn, collection, doc_id, data)
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        _insert(self._conn, collection, doc_id, data)

    def update(self, collection: str, doc_id: str, partial: dict) -> None:
        _update(self._conn, collection, doc_id, partial)

    def delete(self, collection: str, doc_id: str) -> bool:
        return _delete(self._conn, collection, doc_id)


class DocumentStore:
    """Thin wrapper around an SQLite database file holding JSON documents."""

    def __init__(
        self,
        db_path: Path,
        max_batch_operations: int = 500,
        max_in_filter_values: int = 10,
        transaction_max_attempts: int = 5,
        transaction_retry_delay: float = 0.05,
    ) -> None:
        self.db_path = Path(db_path)
        self.max_batch_operations = max_batch_operations
        self.max_in_filter_values = max_in_filter_values
        self.transaction_max_attempts = transaction_max_attempts
        self.transaction_retry_delay = transaction_retry_delay
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @classmethod
    def from_config(cls, config) -> "DocumentStore":
        return cls(
            config.db_path,
            max_batch_operations=config.max_batch_operations,
            max_in_filter_values=config.max_in_filter_values,
            transaction_max_attempts=config.transaction_max_attempts,
            transaction_retry_delay=config.transaction_retry_delay,
        )

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as exc:
            raise UpstreamWriteFailure(f"Cannot open store {self.db_path}: {exc}") from exc
        return conn

    @contextmanager
    def _conn(self):
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise UpstreamWriteFailure(f"Store operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Document store ready: %s", self.db_path)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        """Return the document (with its id under "id") or None."""
        with self._conn() as conn:
            return _get(conn, collection, doc_id)

    def query(self, collection: str, *filters: Filter) -> list[dict]:
        """Return every document in *collection* matching all *filters*."""
        with self._conn() as conn:
            return _query(conn, collection, filters, self.max_in_filter_values)

    def query_in(
        self,
        collection: str,
        field_name: str,
        values: Iterable[Any],
        *filters: Filter,
    ) -> list[dict]:
        """Run an "in" query over any number of values, chunked to the store limit."""
        unique = list(dict.fromkeys(values))
        records: list[dict] = []
        for chunk in chunked(unique, self.max_in_filter_values):
            records.extend(self.query(collection, where(field_name, "in", chunk), *filters))
        return records

    def count(self, collection: str) -> int:
        with self._conn() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM documents WHERE collection=?", (collection,)
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def add(self, collection: str, data: dict) -> str:
        """Insert a new document under a generated id. Returns the id."""
        doc_id = new_id()
        with self._conn() as conn:
            _insert(conn, collection, doc_id, data)
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        """Create or fully replace the document at *doc_id*."""
        with self._conn() as conn:
            _insert(conn, collection, doc_id, data)

    def update(self, collection: str, doc_id: str, partial: dict) -> None:
        """Merge *partial* into an existing document. Raises NotFound if absent."""
        with self._conn() as conn:
            _update(conn, collection, doc_id, partial)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._conn() as conn:
            return _delete(conn, collection, doc_id)

    def batch_write(self, ops: Sequence[WriteOp]) -> list[str]:
        """
        Apply *ops* atomically. Returns the ids written, in order.

        Raises ValidationFailure when the batch exceeds the per-batch ceiling;
        callers must chunk larger writes themselves.
        """
        if len(ops) > self.max_batch_operations:
            raise ValidationFailure(
                f"Batch of {len(ops)} operations exceeds the limit of {self.max_batch_operations}"
            )
        ids: list[str] = []
        with self._conn() as conn:
            for op in ops:
                doc_id = op.id or new_id()
                if op.kind in ("add", "set"):
                    _insert(conn, op.collection, doc_id, op.data)
                elif op.kind == "update":
                    _update(conn, op.collection, doc_id, op.data)
                elif op.kind == "delete":
                    _delete(conn, op.collection, doc_id)
                else:
                    raise ValidationFailure(f"Unknown batch operation: {op.kind!r}")
                ids.append(doc_id)
        logger.debug("Batch committed: %d operations", len(ops))
        return ids

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """
        Run *fn* inside a write-locked transaction and commit its writes.

        The write lock is taken up front (BEGIN IMMEDIATE), so concurrent
        read-modify-write callbacks are serialised and none can overwrite
        another's update. Lock contention is retried with a linear backoff;
        *fn* may therefore run more than once and must only touch the store
        through the Transaction it is given.
        """
        attempt = 0
        while True:
            attempt += 1
            conn = self._connect()
            conn.isolation_level = None
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(Transaction(conn, self.max_in_filter_values))
                conn.execute("COMMIT")
                return result
            except sqlite3.OperationalError as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                retryable = "locked" in str(exc) or "busy" in str(exc)
                if not retryable or attempt >= self.transaction_max_attempts:
                    raise UpstreamWriteFailure(f"Store operation failed: {exc}") from exc
                logger.warning(
                    "Transaction conflict (attempt %d/%d): %s",
                    attempt, self.transaction_max_attempts, exc,
                )
                time.sleep(self.transaction_retry_delay * attempt)
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise UpstreamWriteFailure(f"Store operation failed: {exc}") from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
