"""
SQLite-backed generic document store shared by every engine instance.

Stores JSON documents in named resources, each optionally partitioned by one
field, and notifies registered hooks after inserts, updates and deletes. Every
instance opens the same database file; WAL journal mode lets readers proceed
during writes. All methods are synchronous — callers use asyncio.to_thread()
from async code.

The engine assumes nothing beyond single-document reads and writes from this
store: no transactions spanning documents, no compare-and-swap and no
read-after-write guarantee across instances.

Usage:
    store = DocumentStore("data/ttl_store.db")
    store.define_resource("sessions")
    doc = store.insert("sessions", {"user": "u-1"})
    page = store.list_partition("plg_ttl_expiration_index", "2026-02-16T06", limit=100)
"""

import json
import sqlite3
import threading
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal
from uuid import uuid4

from loguru import logger

HookEvent = Literal["insert", "update", "delete"]
Hook = Callable[[str, dict[str, Any]], None]

# ── SQL Statements ──────────────────────────────────────────────────────────

CREATE_DOCUMENTS_TABLE = """
CREATE TABLE IF NOT EXISTS documents (
    resource            TEXT NOT NULL,
    id                  TEXT NOT NULL,
    partition_value     TEXT,
    body                TEXT NOT NULL,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL,
    PRIMARY KEY (resource, id)
)
"""

CREATE_RESOURCES_TABLE = """
CREATE TABLE IF NOT EXISTS resources (
    name                TEXT PRIMARY KEY,
    partition_field     TEXT,
    created_at          TEXT NOT NULL
)
"""

CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_documents_partition
    ON documents(resource, partition_value, id);
"""

INSERT_DOCUMENT_SQL = """
INSERT INTO documents (resource, id, partition_value, body, created_at, updated_at)
VALUES (:resource, :id, :partition_value, :body, :created_at, :updated_at)
"""

UPSERT_DOCUMENT_SQL = """
INSERT INTO documents (resource, id, partition_value, body, created_at, updated_at)
VALUES (:resource, :id, :partition_value, :body, :created_at, :updated_at)
ON CONFLICT(resource, id) DO UPDATE
SET partition_value = excluded.partition_value,
    body = excluded.body,
    updated_at = excluded.updated_at
"""


# ── Helper Functions ────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime) -> str:
    """Convert datetime to ISO 8601 string."""
    return dt.isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _as_text(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _encode(doc: dict[str, Any]) -> str:
    return json.dumps(doc, default=_json_default, sort_keys=True)


# ── Errors ──────────────────────────────────────────────────────────────────


class DocumentStoreError(Exception):
    """Base exception for DocumentStore operations."""


class DuplicateDocumentError(DocumentStoreError):
    """Raised when inserting a document whose id already exists."""


class DocumentNotFoundError(DocumentStoreError):
    """Raised when updating a document that does not exist."""


class StorageUnavailableError(DocumentStoreError):
    """Raised when the backing database cannot be read or written."""


# ── DocumentStore ───────────────────────────────────────────────────────────


class DocumentStore:
    """SQLite-backed store of JSON documents grouped into resources.

    Thread-safe: one connection guarded by a lock, so concurrent
    asyncio.to_thread() calls from different loops are serialized.

    Usage:
        store = DocumentStore("data/ttl_store.db")
        store.define_resource("orders")
        store.add_hook("orders", "insert", on_order_written)
        store.insert("orders", {"id": "o-1", "total": 12.5})
    """

    def __init__(
        self,
        db_path: str = "data/ttl_store.db",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db_path = db_path
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._hooks: dict[tuple[str, str], list[Hook]] = defaultdict(list)
        self._conn = self._create_connection()
        self._ensure_tables()

    def _create_connection(self) -> sqlite3.Connection:
        """Create a SQLite connection with WAL mode and row factory."""
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def _ensure_tables(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._lock:
            self._conn.executescript(CREATE_DOCUMENTS_TABLE)
            self._conn.executescript(CREATE_RESOURCES_TABLE)
            self._conn.executescript(CREATE_INDEXES)
            self._conn.commit()
        logger.debug("Document store tables ensured at {}", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
        logger.debug("Document store connection closed")

    # ── Schema ──────────────────────────────────────────────────────

    def define_resource(self, name: str, partition_field: str | None = None) -> None:
        """Declare a resource and the field its documents are partitioned by.

        Re-declaring an existing resource updates its partition field.
        """
        self._execute(
            """INSERT INTO resources (name, partition_field, created_at)
               VALUES (:name, :partition_field, :created_at)
               ON CONFLICT(name) DO UPDATE SET partition_field = excluded.partition_field""",
            {
                "name": name,
                "partition_field": partition_field,
                "created_at": _dt_to_str(self._clock()),
            },
            commit=True,
        )
        logger.debug("Resource {} defined (partition field: {})", name, partition_field)

    def has_resource(self, name: str) -> bool:
        rows = self._query(
            "SELECT 1 FROM resources WHERE name = :name", {"name": name}
        )
        return bool(rows)

    def _partition_field(self, resource: str) -> str | None:
        rows = self._query(
            "SELECT partition_field FROM resources WHERE name = :name", {"name": resource}
        )
        return rows[0]["partition_field"] if rows else None

    # ── Hooks ───────────────────────────────────────────────────────

    def add_hook(self, resource: str, event: HookEvent, hook: Hook) -> None:
        """Register a callable run after a committed write to ``resource``.

        Hooks receive ``(resource, document)``. For deletes the document is the
        last stored version, or ``{"id": id}`` when it was already gone.
        """
        self._hooks[(resource, event)].append(hook)

    def remove_hook(self, resource: str, event: HookEvent, hook: Hook) -> None:
        hooks = self._hooks.get((resource, event), [])
        if hook in hooks:
            hooks.remove(hook)

    def _fire(self, resource: str, event: HookEvent, doc: dict[str, Any]) -> None:
        for hook in list(self._hooks.get((resource, event), [])):
            hook(resource, doc)

    # ── Writes ──────────────────────────────────────────────────────

    def insert(self, resource: str, doc: dict[str, Any]) -> dict[str, Any]:
        """Insert a new document, generating an id when none is given.

        Stamps ``created_at`` (unless provided) and ``updated_at``.

        Raises:
            DuplicateDocumentError: If a document with the same id exists.
        """
        now = _dt_to_str(self._clock())
        stored = dict(doc)
        stored.setdefault("id", uuid4().hex)
        stored.setdefault("created_at", now)
        stored["updated_at"] = now
        params = self._params(resource, stored)
        try:
            self._execute(INSERT_DOCUMENT_SQL, params, commit=True)
        except sqlite3.IntegrityError as e:
            self._rollback()
            raise DuplicateDocumentError(
                f"Duplicate document {resource}/{stored['id']}: {e}"
            ) from e
        logger.debug("Inserted {}/{}", resource, stored["id"])
        self._fire(resource, "insert", stored)
        return stored

    def put(self, resource: str, doc: dict[str, Any]) -> dict[str, Any]:
        """Insert or fully replace a document by id (upsert).

        Does not fire hooks; used for engine bookkeeping documents.
        """
        if "id" not in doc:
            raise DocumentStoreError(f"put() on {resource} requires an id")
        now = _dt_to_str(self._clock())
        stored = dict(doc)
        stored.setdefault("created_at", now)
        stored["updated_at"] = now
        self._execute(UPSERT_DOCUMENT_SQL, self._params(resource, stored), commit=True)
        return stored

    def update(self, resource: str, doc_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge ``changes`` into an existing document.

        Raises:
            DocumentNotFoundError: If the document does not exist.
        """
        current = self.get(resource, doc_id)
        if current is None:
            raise DocumentNotFoundError(f"Document {resource}/{doc_id} not found")
        merged = {**current, **changes, "id": doc_id}
        merged["updated_at"] = _dt_to_str(self._clock())
        updated = self._execute(
            """UPDATE documents
               SET partition_value = :partition_value,
                   body = :body,
                   updated_at = :updated_at
               WHERE resource = :resource AND id = :id""",
            self._params(resource, merged),
            commit=True,
        )
        if not updated:
            raise DocumentNotFoundError(f"Document {resource}/{doc_id} vanished during update")
        logger.debug("Updated {}/{} ({})", resource, doc_id, ", ".join(sorted(changes)))
        self._fire(resource, "update", merged)
        return merged

    def delete(self, resource: str, doc_id: str) -> bool:
        """Delete a document by id.

        Returns:
            True if a document was deleted, False if it did not exist.
        """
        previous = self.get(resource, doc_id)
        deleted = self._execute(
            "DELETE FROM documents WHERE resource = :resource AND id = :id",
            {"resource": resource, "id": doc_id},
            commit=True,
        )
        if deleted:
            logger.debug("Deleted {}/{}", resource, doc_id)
            self._fire(resource, "delete", previous or {"id": doc_id})
        return bool(deleted)

    # ── Queries ─────────────────────────────────────────────────────

    def get(self, resource: str, doc_id: str) -> dict[str, Any] | None:
        """Get a single document by id, or None."""
        rows = self._query(
            "SELECT body FROM documents WHERE resource = :resource AND id = :id",
            {"resource": resource, "id": doc_id},
        )
        if not rows:
            return None
        return json.loads(rows[0]["body"])

    def list_partition(
        self,
        resource: str,
        partition_value: str,
        limit: int = 100,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """List documents with an exact partition value, ordered by id.

        Keyset pagination: pass the last id of the previous page as
        ``after_id``. Deleting already-returned documents never shifts later
        pages.
        """
        rows = self._query(
            """SELECT body FROM documents
               WHERE resource = :resource
                 AND partition_value = :partition_value
                 AND id > :after_id
               ORDER BY id ASC
               LIMIT :limit""",
            {
                "resource": resource,
                "partition_value": partition_value,
                "after_id": after_id or "",
                "limit": limit,
            },
        )
        return [json.loads(r["body"]) for r in rows]

    def list_all(self, resource: str, limit: int = 1000) -> list[dict[str, Any]]:
        """List documents of a resource ordered by id."""
        rows = self._query(
            "SELECT body FROM documents WHERE resource = :resource ORDER BY id ASC LIMIT :limit",
            {"resource": resource, "limit": limit},
        )
        return [json.loads(r["body"]) for r in rows]

    def count(self, resource: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS cnt FROM documents WHERE resource = :resource",
            {"resource": resource},
        )
        return rows[0]["cnt"]

    # ── Internal Helpers ────────────────────────────────────────────

    def _params(self, resource: str, doc: dict[str, Any]) -> dict[str, Any]:
        partition_field = self._partition_field(resource)
        partition_value = None
        if partition_field is not None and doc.get(partition_field) is not None:
            partition_value = str(doc[partition_field])
        return {
            "resource": resource,
            "id": str(doc["id"]),
            "partition_value": partition_value,
            "body": _encode(doc),
            "created_at": _as_text(doc.get("created_at", doc["updated_at"])),
            "updated_at": doc["updated_at"],
        }

    def _execute(
        self, sql: str, params: dict[str, Any] | None = None, commit: bool = False
    ) -> int:
        """Run one write statement under the connection lock.

        Returns:
            Number of rows affected.

        Raises:
            StorageUnavailableError: On operational/database failures.
        """
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params or {})
                if commit:
                    self._conn.commit()
                return cursor.rowcount
            except sqlite3.IntegrityError:
                raise
            except (sqlite3.DatabaseError, sqlite3.ProgrammingError) as e:
                raise StorageUnavailableError(f"Document store unavailable: {e}") from e

    def _query(self, sql: str, params: dict[str, Any] | None = None) -> list[sqlite3.Row]:
        """Run one read statement and fetch all rows under the connection lock."""
        with self._lock:
            try:
                return self._conn.execute(sql, params or {}).fetchall()
            except (sqlite3.DatabaseError, sqlite3.ProgrammingError) as e:
                raise StorageUnavailableError(f"Document store unavailable: {e}") from e

    def _rollback(self) -> None:
        with self._lock:
            self._conn.rollback()
