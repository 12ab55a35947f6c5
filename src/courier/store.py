"""Document store for courier - JSON documents in SQLite.

Collections:
    - conversations: direct conversations and their summary pointer
    - messages: the durable message log
    - device_endpoints: push tokens owned by identities
    - presence: last-seen timestamp per identity

The Store interface is plain document CRUD with no cross-collection
transactions. Each call is individually atomic; callers compose them.

Usage:
    store = SqliteStore(":memory:")
    conv = store.create("conversations", {"participants": ["a", "b"]})
    store.update_by_id("conversations", conv["id"], {"active": False})
    store.find_many("messages", {"conversation_id": conv["id"]}, sort=[("created_at", 1)])

Filters:
    {"field": value}                    equality (None matches missing/null)
    {"field": {"$in": [...]}}           membership in a list of values
    {"field": {"$ne": value}}           inequality
    {"field": {"$contains": value}}     array field contains value
    {"field": {"$icontains": "text"}}   case-insensitive substring
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, TypeVar

from uuid_extensions import uuid7 as make_uuid7

from .errors import TransientError
from .metrics import timed_store_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")

COLLECTIONS = ("conversations", "messages", "device_endpoints", "presence")

_FIELD_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


class StoreError(Exception):
    """Storage engine failure. Transient from the caller's point of view."""

    pass


class DocumentExists(StoreError):
    """A document with the given id already exists in the collection."""

    pass


class Store(ABC):
    """Abstract document store."""

    @abstractmethod
    def create(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        """Insert a document. Assigns a UUIDv7 ``id`` when the doc has none."""

    @abstractmethod
    def find_by_id(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Fetch one document, or None."""

    @abstractmethod
    def find_many(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        sort: list[tuple[str, int]] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Query documents.

        Args:
            collection: Collection name
            filter: Filter document (see module docstring)
            sort: List of (field, direction) with direction 1 or -1.
                  Ties, and the default order, follow insertion order.
            limit: Maximum number of documents
            offset: Number of documents to skip
        """

    @abstractmethod
    def count(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        """Count documents matching a filter."""

    @abstractmethod
    def update_by_id(
        self, collection: str, doc_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Shallow-merge ``changes`` into a document. Returns the new doc, or None."""

    @abstractmethod
    def delete_by_id(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns True if it existed."""

    def close(self) -> None:
        """Release resources."""


# --- SQLite implementation ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS documents (
        collection TEXT NOT NULL,
        id TEXT NOT NULL,
        doc JSON NOT NULL,
        PRIMARY KEY (collection, id)
    );

    CREATE INDEX IF NOT EXISTS idx_documents_conversation
        ON documents(collection, json_extract(doc, '$.conversation_id'));
    CREATE INDEX IF NOT EXISTS idx_documents_identity
        ON documents(collection, json_extract(doc, '$.identity'));
    CREATE INDEX IF NOT EXISTS idx_documents_pair
        ON documents(collection, json_extract(doc, '$.pair_key'));
"""


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    """Open a SQLite connection usable from executor threads."""
    if str(db_path) == ":memory:":
        conn = sqlite3.connect(":memory:", check_same_thread=False)
    else:
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        # Enable WAL mode for better concurrent read/write performance
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection!r}")


def _field_expr(field: str) -> str:
    # Field names are inlined so expression indexes can match
    if not _FIELD_RE.match(field):
        raise ValueError(f"Invalid field name: {field!r}")
    return f"json_extract(doc, '$.{field}')"


def _compile_filter(filter: dict[str, Any] | None) -> tuple[str, list[Any]]:
    """Translate a filter document into a WHERE fragment and parameters."""
    clauses: list[str] = []
    params: list[Any] = []

    for field, condition in (filter or {}).items():
        if field == "id":
            expr = "id"
        else:
            expr = _field_expr(field)

        if not isinstance(condition, dict):
            clauses.append(f"{expr} IS ?")
            params.append(condition)
            continue

        for op, value in condition.items():
            if op == "$in":
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{expr} IN ({','.join('?' * len(values))})")
                params.extend(values)
            elif op == "$ne":
                clauses.append(f"{expr} IS NOT ?")
                params.append(value)
            elif op == "$contains":
                clauses.append(
                    f"EXISTS (SELECT 1 FROM json_each(doc, '$.{field}') WHERE value = ?)"
                )
                params.append(value)
            elif op == "$icontains":
                clauses.append(f"instr(lower({expr}), lower(?)) > 0")
                params.append(value)
            else:
                raise ValueError(f"Unsupported filter operator: {op!r}")

    return " AND ".join(clauses), params


def _compile_sort(sort: list[tuple[str, int]] | None) -> str:
    if not sort:
        return "rowid ASC"
    parts = []
    for field, direction in sort:
        expr = "id" if field == "id" else _field_expr(field)
        parts.append(f"{expr} {'DESC' if direction < 0 else 'ASC'}")
    last_direction = sort[-1][1]
    parts.append(f"rowid {'DESC' if last_direction < 0 else 'ASC'}")
    return ", ".join(parts)


class SqliteStore(Store):
    """Store backed by a single SQLite connection.

    The connection is shared by executor threads and guarded by a lock,
    which also makes read-modify-write updates atomic.

    Args:
        db_path: Database file path, or ":memory:" for an ephemeral store.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = get_connection(db_path)
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def _execute(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            if self._conn is None:
                raise StoreError("Store is closed")
            try:
                with timed_store_operation(operation):
                    return fn(self._conn)
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise DocumentExists(str(e)) from e
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(f"{operation} failed: {e}") from e

    def create(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        _check_collection(collection)
        document = dict(doc)
        document.setdefault("id", str(make_uuid7()))

        def op(conn: sqlite3.Connection) -> dict[str, Any]:
            conn.execute(
                "INSERT INTO documents (collection, id, doc) VALUES (?, ?, ?)",
                (collection, document["id"], json.dumps(document)),
            )
            conn.commit()
            return document

        return self._execute(f"{collection}.create", op)

    def find_by_id(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        _check_collection(collection)

        def op(conn: sqlite3.Connection) -> dict[str, Any] | None:
            row = conn.execute(
                "SELECT doc FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            return json.loads(row["doc"]) if row else None

        return self._execute(f"{collection}.find_by_id", op)

    def find_many(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        sort: list[tuple[str, int]] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        _check_collection(collection)
        where, params = _compile_filter(filter)
        query = "SELECT doc FROM documents WHERE collection = ?"
        if where:
            query += f" AND {where}"
        query += f" ORDER BY {_compile_sort(sort)}"
        if limit is not None or offset:
            query += " LIMIT ? OFFSET ?"
            params += [limit if limit is not None else -1, offset]

        def op(conn: sqlite3.Connection) -> list[dict[str, Any]]:
            rows = conn.execute(query, (collection, *params)).fetchall()
            return [json.loads(row["doc"]) for row in rows]

        return self._execute(f"{collection}.find_many", op)

    def count(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        _check_collection(collection)
        where, params = _compile_filter(filter)
        query = "SELECT COUNT(*) FROM documents WHERE collection = ?"
        if where:
            query += f" AND {where}"

        def op(conn: sqlite3.Connection) -> int:
            return conn.execute(query, (collection, *params)).fetchone()[0]

        return self._execute(f"{collection}.count", op)

    def update_by_id(
        self, collection: str, doc_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        _check_collection(collection)

        def op(conn: sqlite3.Connection) -> dict[str, Any] | None:
            row = conn.execute(
                "SELECT doc FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            if not row:
                return None
            document = json.loads(row["doc"])
            document.update(changes)
            document["id"] = doc_id
            conn.execute(
                "UPDATE documents SET doc = ? WHERE collection = ? AND id = ?",
                (json.dumps(document), collection, doc_id),
            )
            conn.commit()
            return document

        return self._execute(f"{collection}.update_by_id", op)

    def delete_by_id(self, collection: str, doc_id: str) -> bool:
        _check_collection(collection)

        def op(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
            conn.commit()
            return cursor.rowcount > 0

        return self._execute(f"{collection}.delete_by_id", op)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# --- Async helper ---


async def run_sync(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous store call off the event loop.

    StoreError (other than DocumentExists) is re-raised as TransientError
    so callers see the retryable INTERNAL code.
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
    except DocumentExists:
        raise
    except StoreError as e:
        raise TransientError(str(e)) from e
