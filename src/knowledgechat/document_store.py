# /knowledgechat/document_store.py
"""
Hierarchical document database backed by SQLite.

Collections are addressed by slash paths (`users/{uid}/documents`), documents
by collection path + id. Supports create, get, merge-set, update, delete,
ordered/filtered queries, live queries that deliver full result snapshots on
every committed change, and multi-write transactions.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from .config import DB_PATH
from .errors import PersistenceError
from .observability import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    amount: int | float = 1


def _split_path(path: str) -> list[str]:
    parts = [part for part in str(path or "").strip("/").split("/") if part]
    if not parts:
        raise ValueError("empty document path")
    return parts


def collection_of(doc_path: str) -> tuple[str, str]:
    """Splits a document path into (collection path, document id)."""
    parts = _split_path(doc_path)
    if len(parts) % 2 != 0:
        raise ValueError(f"not a document path: {doc_path}")
    return "/".join(parts[:-1]), parts[-1]


def _check_collection(collection: str) -> str:
    parts = _split_path(collection)
    if len(parts) % 2 != 1:
        raise ValueError(f"not a collection path: {collection}")
    return "/".join(parts)


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    path: str
    data: dict[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass(frozen=True)
class Query:
    collection: str
    filters: tuple[tuple[str, str, Any], ...] = ()
    order_field: str | None = None
    descending: bool = False
    limit_count: int | None = None

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        if op not in {"==", "array-contains"}:
            raise ValueError(f"unsupported filter operator: {op}")
        return replace(self, filters=self.filters + ((field_name, op, value),))

    def order_by(self, field_name: str, direction: str = "asc") -> "Query":
        return replace(self, order_field=field_name, descending=str(direction).lower() == "desc")

    def limit(self, count: int) -> "Query":
        return replace(self, limit_count=max(1, int(count)))

    def matches(self, data: dict[str, Any]) -> bool:
        for field_name, op, value in self.filters:
            current = data.get(field_name)
            if op == "==" and current != value:
                return False
            if op == "array-contains" and (not isinstance(current, list) or value not in current):
                return False
        return True


@dataclass
class Subscription:
    query: Query
    on_snapshot: Callable[[list[DocumentSnapshot]], None]
    on_error: Callable[[Exception], None] | None = None
    _owner: "DocumentDatabase | None" = field(default=None, repr=False)
    active: bool = True

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        if self._owner is not None:
            self._owner._remove_subscription(self)


class Transaction:
    """Write batch sharing one SQLite transaction; subscribers are notified after commit."""

    def __init__(self, db: "DocumentDatabase", conn: sqlite3.Connection):
        self._db = db
        self._conn = conn
        self.touched: set[str] = set()

    def get(self, doc_path: str) -> DocumentSnapshot | None:
        return self._db._read(self._conn, doc_path)

    def query(self, query: Query) -> list[DocumentSnapshot]:
        return self._db._run(self._conn, query)

    def create(self, collection: str, data: dict[str, Any], doc_id: str | None = None) -> str:
        collection = _check_collection(collection)
        new_id = doc_id or self._db.new_id()
        path = f"{collection}/{new_id}"
        self._db._write(self._conn, path, data, merge=False, must_exist=False, must_not_exist=True)
        self.touched.add(collection)
        return new_id

    def set(self, doc_path: str, data: dict[str, Any], merge: bool = False):
        self._db._write(self._conn, doc_path, data, merge=merge, must_exist=False, must_not_exist=False)
        self.touched.add(collection_of(doc_path)[0])

    def update(self, doc_path: str, data: dict[str, Any]):
        self._db._write(self._conn, doc_path, data, merge=True, must_exist=True, must_not_exist=False)
        self.touched.add(collection_of(doc_path)[0])

    def delete(self, doc_path: str):
        collection, doc_id = collection_of(doc_path)
        self._conn.execute("DELETE FROM documents WHERE path = ?", (f"{collection}/{doc_id}",))
        self.touched.add(collection)


class DocumentDatabase:
    """Thread-safe SQLite document store with live queries."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            pass
        self._last_timestamp: datetime | None = None
        self._subscriptions: list[Subscription] = []
        self._pending: deque[tuple[Subscription, list[DocumentSnapshot]]] = deque()
        self._delivery_lock = threading.Lock()
        self._delivering = False
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._conn is None:
                raise PersistenceError("document database connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"document database error: {exc}") from exc
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            for sub in list(self._subscriptions):
                sub.active = False
            self._subscriptions.clear()
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def _ensure_schema(self):
        with self._connection() as conn:
            version = int(conn.execute("PRAGMA user_version").fetchone()[0])
            if version >= SCHEMA_VERSION:
                return
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    seq INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)")
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.info("document_schema_ready", version=SCHEMA_VERSION, db_path=str(self.db_path))

    # ------------------------------------------------------------------
    # Value resolution
    # ------------------------------------------------------------------

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex[:20]

    def server_timestamp(self) -> str:
        """Strictly increasing UTC timestamp so creation order is total."""
        with self._lock:
            now = datetime.now(timezone.utc)
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return now.isoformat(timespec="microseconds")

    def _resolve(self, data: dict[str, Any], existing: dict[str, Any]) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        for key, value in (data or {}).items():
            if value is SERVER_TIMESTAMP:
                resolved[key] = self.server_timestamp()
            elif isinstance(value, Increment):
                base = existing.get(key)
                base = base if isinstance(base, (int, float)) and not isinstance(base, bool) else 0
                resolved[key] = base + value.amount
            else:
                resolved[key] = value
        return resolved

    # ------------------------------------------------------------------
    # Row-level helpers (caller holds the connection)
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> DocumentSnapshot:
        try:
            data = json.loads(row["data"]) or {}
        except (TypeError, json.JSONDecodeError):
            data = {}
        return DocumentSnapshot(id=str(row["doc_id"]), path=str(row["path"]), data=dict(data))

    def _read(self, conn: sqlite3.Connection, doc_path: str) -> DocumentSnapshot | None:
        collection, doc_id = collection_of(doc_path)
        row = conn.execute(
            "SELECT path, doc_id, data FROM documents WHERE path = ?",
            (f"{collection}/{doc_id}",),
        ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def _write(
        self,
        conn: sqlite3.Connection,
        doc_path: str,
        data: dict[str, Any],
        *,
        merge: bool,
        must_exist: bool,
        must_not_exist: bool,
    ):
        collection, doc_id = collection_of(doc_path)
        path = f"{collection}/{doc_id}"
        current = self._read(conn, path)
        if must_exist and current is None:
            raise PersistenceError(f"document not found: {path}")
        if must_not_exist and current is not None:
            raise PersistenceError(f"document already exists: {path}")
        existing = dict(current.data) if current else {}
        resolved = self._resolve(data, existing)
        payload = {**existing, **resolved} if merge else resolved
        encoded = json.dumps(payload, ensure_ascii=False, default=str)
        if current is None:
            seq_row = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM documents").fetchone()
            conn.execute(
                "INSERT INTO documents (path, collection, doc_id, data, seq) VALUES (?, ?, ?, ?, ?)",
                (path, collection, doc_id, encoded, int(seq_row[0])),
            )
        else:
            conn.execute("UPDATE documents SET data = ? WHERE path = ?", (encoded, path))

    def _run(self, conn: sqlite3.Connection, query: Query) -> list[DocumentSnapshot]:
        rows = conn.execute(
            "SELECT path, doc_id, data, seq FROM documents WHERE collection = ? ORDER BY seq ASC",
            (_check_collection(query.collection),),
        ).fetchall()
        docs = [snap for snap in (self._row_to_snapshot(row) for row in rows) if query.matches(snap.data)]
        if query.order_field:
            field_name = query.order_field
            present = [doc for doc in docs if doc.data.get(field_name) is not None]
            missing = [doc for doc in docs if doc.data.get(field_name) is None]
            # sorted() is stable, so equal keys keep insertion order.
            present = sorted(present, key=lambda doc: doc.data[field_name], reverse=query.descending)
            docs = present + missing
        if query.limit_count is not None:
            docs = docs[: query.limit_count]
        return docs

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add(self, collection: str, data: dict[str, Any]) -> DocumentSnapshot:
        with self.transaction() as tx:
            new_id = tx.create(collection, data)
        snapshot = self.get(f"{_check_collection(collection)}/{new_id}")
        if snapshot is None:
            raise PersistenceError(f"document vanished after create: {collection}/{new_id}")
        return snapshot

    def get(self, doc_path: str) -> DocumentSnapshot | None:
        with self._connection() as conn:
            return self._read(conn, doc_path)

    def set(self, doc_path: str, data: dict[str, Any], merge: bool = False):
        with self.transaction() as tx:
            tx.set(doc_path, data, merge=merge)

    def update(self, doc_path: str, data: dict[str, Any]):
        with self.transaction() as tx:
            tx.update(doc_path, data)

    def delete(self, doc_path: str):
        with self.transaction() as tx:
            tx.delete(doc_path)

    def run_query(self, query: Query) -> list[DocumentSnapshot]:
        with self._connection() as conn:
            return self._run(conn, query)

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        with self._connection() as conn:
            tx = Transaction(self, conn)
            yield tx
        self._notify(tx.touched)

    # ------------------------------------------------------------------
    # Live queries
    # ------------------------------------------------------------------

    def subscribe(
        self,
        query: Query,
        on_snapshot: Callable[[list[DocumentSnapshot]], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        """
        Registers a live query. The current result set is delivered right away,
        then again after every committed write to the queried collection,
        until `unsubscribe()` is called.
        """
        sub = Subscription(query=query, on_snapshot=on_snapshot, on_error=on_error, _owner=self)
        with self._lock:
            self._subscriptions.append(sub)
            self._enqueue(sub)
        self._drain()
        return sub

    def _remove_subscription(self, sub: Subscription):
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def _enqueue(self, sub: Subscription):
        try:
            with self._connection() as conn:
                docs = self._run(conn, sub.query)
        except PersistenceError as exc:
            self._report(sub, exc)
            return
        self._pending.append((sub, docs))

    def _notify(self, touched: set[str]):
        if not touched:
            return
        with self._lock:
            for sub in list(self._subscriptions):
                if sub.active and sub.query.collection in touched:
                    self._enqueue(sub)
        self._drain()

    def _drain(self):
        with self._delivery_lock:
            if self._delivering:
                return
            self._delivering = True
        while True:
            with self._delivery_lock:
                if not self._pending:
                    self._delivering = False
                    return
                sub, docs = self._pending.popleft()
            if not sub.active:
                continue
            try:
                sub.on_snapshot(docs)
            except Exception as exc:
                self._report(sub, exc)

    @staticmethod
    def _report(sub: Subscription, exc: Exception):
        logger.error("live_query_failed", collection=sub.query.collection, error=str(exc))
        if sub.on_error is not None:
            try:
                sub.on_error(exc)
            except Exception as handler_exc:
                logger.error("live_query_error_handler_failed", error=str(handler_exc))
