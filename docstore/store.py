"""
docstore/store.py -- SQLAlchemy-backed collection/document store.

Uses SQLAlchemy Core (not ORM) over a single "documents" table keyed by
(collection path, document id) with a JSON body. Sub-collections are just
longer collection paths ("parliamentSubjects/s1/notes"), so deleting a
document never removes its sub-collections -- that is the cascade engine's job
(docstore/cascade.py).

Pattern: Repository + Data Mapper. DocumentStore is the repository;
_row_to_document is the mapper. Callers never touch SQL directly.

Supported operations (the whole surface the rest of the system relies on):
  get(collection, id)                     -- point lookup
  where(collection, field, value, limit)  -- equality filter with result cap
  list_collection(collection, order_by)   -- ordered query
  set / add / update / delete             -- single-document writes
  batch()                                 -- atomic multi-document writes

Every write stamps created_at/updated_at with the commit time, and any
top-level field whose value is SERVER_TIMESTAMP is replaced with it.

Security: all queries use bound parameters. JSON field names are passed as
bound JSON-path parameters, never interpolated.

Usage:
    store = DocumentStore()                                # SQLite default
    store.set("appUsers", "u1", {"role": "teacher", "usernameLower": "ana"})
    docs = store.where("appUsers", "usernameLower", "ana", limit=1)
    batch = store.batch()
    batch.delete("parliamentSubjects", "s1")
    batch.commit()
    store.close()
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, MetaData, String, Table, and_, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from docstore.models import SERVER_TIMESTAMP, Document

logger = logging.getLogger("schoolgate.docstore")

# Hard ceiling on writes per atomic batch, mirroring hosted document stores.
MAX_BATCH_WRITES = 500

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_documents = Table(
    "documents",
    metadata,
    Column("collection", String(512), primary_key=True),
    Column("doc_id", String(255), primary_key=True),
    Column("data", JSON, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_META_ORDER_COLUMNS = {
    "id": _documents.c.doc_id,
    "created_at": _documents.c.created_at,
    "updated_at": _documents.c.updated_at,
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DocumentStoreError(Exception):
    """Base class for store failures callers are expected to handle."""


class DocumentNotFoundError(DocumentStoreError):
    pass


class BatchCommitError(DocumentStoreError):
    """A batch failed to commit. Nothing in that batch was applied."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Switch each new SQLite connection to WAL so readers do not block the writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _stamp(data: dict[str, Any], now: str) -> dict[str, Any]:
    return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


def _json_field(name: str, value: Any):
    """Typed JSON-path accessor so equality compares like with like."""
    element = _documents.c.data[name]
    if isinstance(value, bool):
        return element.as_boolean()
    if isinstance(value, int):
        return element.as_integer()
    if isinstance(value, float):
        return element.as_float()
    if isinstance(value, str):
        return element.as_string()
    raise TypeError(f"Unsupported equality filter value type: {type(value).__name__}")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class DocumentStore:
    """Repository for JSON documents grouped into (possibly nested) collections."""

    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().docstore_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _fetch(self, stmt, what: str) -> list:
        """Run a read and return all rows. Driver errors surface as DocumentStoreError."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(stmt).fetchall()
        except SQLAlchemyError as e:
            raise DocumentStoreError(f"{what} failed: {e}") from e

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Point lookup. Returns None if the document does not exist."""
        rows = self._fetch(
            _documents.select().where(
                and_(_documents.c.collection == collection, _documents.c.doc_id == doc_id)
            ),
            f"get {collection}/{doc_id}",
        )
        return _row_to_document(rows[0]) if rows else None

    def where(self, collection: str, field: str, value: Any, limit: Optional[int] = None) -> list[Document]:
        """Documents in collection whose top-level field equals value.

        limit=None means no cap. Results are ordered by document id so a
        limit of 1 is deterministic.
        """
        stmt = (
            _documents.select()
            .where(and_(_documents.c.collection == collection, _json_field(field, value) == value))
            .order_by(_documents.c.doc_id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = self._fetch(stmt, f"query {collection} where {field}")
        return [_row_to_document(r) for r in rows]

    def list_collection(
        self,
        collection: str,
        order_by: str = "id",
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Document]:
        """All documents in collection, ordered.

        order_by accepts "id", "created_at", "updated_at" or any top-level data
        field; data fields are compared as text.
        """
        column = _META_ORDER_COLUMNS.get(order_by)
        if column is None:
            column = _documents.c.data[order_by].as_string()
        stmt = _documents.select().where(_documents.c.collection == collection)
        stmt = stmt.order_by(column.desc() if descending else column.asc(), _documents.c.doc_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = self._fetch(stmt, f"list {collection}")
        return [_row_to_document(r) for r in rows]

    def count(self, collection: str) -> int:
        rows = self._fetch(
            select(func.count()).select_from(_documents).where(_documents.c.collection == collection),
            f"count {collection}",
        )
        return rows[0][0] if rows else 0

    # ------------------------------------------------------------------
    # Single-document writes
    # ------------------------------------------------------------------

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        """Create or overwrite a document. merge=True keeps fields not named in data."""
        batch = self.batch()
        batch.set(collection, doc_id, data, merge=merge)
        batch.commit()

    def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document under a generated id and return the id."""
        doc_id = uuid.uuid4().hex
        self.set(collection, doc_id, data)
        return doc_id

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Merge fields into an existing document. Raises DocumentNotFoundError if absent."""
        batch = self.batch()
        batch.update(collection, doc_id, fields)
        batch.commit()

    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete one document. Deleting a missing document is not an error.

        Returns True if a document was removed. Sub-collections are untouched.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _documents.delete().where(
                        and_(_documents.c.collection == collection, _documents.c.doc_id == doc_id)
                    )
                )
        except SQLAlchemyError as e:
            raise DocumentStoreError(f"delete {collection}/{doc_id} failed: {e}") from e
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def batch(self) -> "WriteBatch":
        return WriteBatch(self)

    def _apply(self, ops: list[tuple]) -> None:
        """Apply queued batch operations inside a single transaction."""
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                for kind, collection, doc_id, data, merge in ops:
                    if kind == "delete":
                        conn.execute(
                            _documents.delete().where(
                                and_(_documents.c.collection == collection, _documents.c.doc_id == doc_id)
                            )
                        )
                    else:
                        self._write(conn, kind, collection, doc_id, _stamp(data, now), merge, now)
        except DocumentNotFoundError:
            raise
        except SQLAlchemyError as e:
            raise BatchCommitError(f"batch of {len(ops)} write(s) failed: {e}") from e

    def _write(
        self,
        conn: Connection,
        kind: str,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool,
        now: str,
    ) -> None:
        key = and_(_documents.c.collection == collection, _documents.c.doc_id == doc_id)
        existing = conn.execute(select(_documents.c.data).where(key)).fetchone()
        if existing is None:
            if kind == "update":
                raise DocumentNotFoundError(f"{collection}/{doc_id} does not exist")
            conn.execute(
                _documents.insert().values(
                    collection=collection, doc_id=doc_id, data=data, created_at=now, updated_at=now
                )
            )
            return
        body = {**existing.data, **data} if (merge or kind == "update") else data
        conn.execute(_documents.update().where(key).values(data=body, updated_at=now))

    def close(self) -> None:
        self.engine.dispose()


class WriteBatch:
    """Queue of writes committed atomically: all apply or none do.

    A batch is single-use. At most MAX_BATCH_WRITES operations may be queued.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._ops: list[tuple] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def _queue(self, op: tuple) -> None:
        if self._committed:
            raise DocumentStoreError("batch already committed")
        if len(self._ops) >= MAX_BATCH_WRITES:
            raise ValueError(f"a batch may hold at most {MAX_BATCH_WRITES} writes")
        self._ops.append(op)

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> "WriteBatch":
        self._queue(("set", collection, doc_id, dict(data), merge))
        return self

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> "WriteBatch":
        self._queue(("update", collection, doc_id, dict(fields), True))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._queue(("delete", collection, doc_id, None, False))
        return self

    def commit(self) -> None:
        if self._committed:
            raise DocumentStoreError("batch already committed")
        self._committed = True
        if self._ops:
            self._store._apply(self._ops)
            logger.debug("Committed batch of %d write(s)", len(self._ops))


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_document(row) -> Document:
    return Document(
        collection=row.collection,
        id=row.doc_id,
        data=dict(row.data or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
