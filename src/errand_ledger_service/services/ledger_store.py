"""SQLite-backed document store for wallets, transactions, escrows and tasks."""

from __future__ import annotations

import json
import re
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

Filter = tuple[str, str, Any]

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPERATORS: dict[str, str] = {
    "==": "=",
    "!=": "!=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
}

# Columns maintained by the store itself rather than kept in the JSON body
_META_COLUMNS = frozenset({"created_at", "updated_at", "version"})


class DuplicateDocumentError(Exception):
    """Raised when inserting a document whose id already exists."""


class VersionConflictError(Exception):
    """Raised when a conditional write finds a different stored version."""


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class LedgerStore:
    """
    Document store with server-stamped timestamps and per-document versions.

    Every document lives in one ``documents`` table keyed by
    ``(collection, doc_id)``. Single-document writes are atomic; there are
    no multi-document transactions, so callers layer their own locking
    and use ``expected_version`` for compare-and-swap updates.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL CHECK (version >= 1),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                );

                CREATE INDEX IF NOT EXISTS ix_documents_collection_created
                    ON documents(collection, created_at, doc_id);
                """
            )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> dict[str, Any]:
        record: dict[str, Any] = json.loads(row["data"])
        record["created_at"] = row["created_at"]
        record["updated_at"] = row["updated_at"]
        record["version"] = row["version"]
        return record

    @staticmethod
    def _strip_meta(record: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in record.items() if key not in _META_COLUMNS}

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Look up a document. Returns None if not found."""
        with self._lock:
            row = self._db.execute(
                "SELECT data, version, created_at, updated_at FROM documents "
                "WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def insert(self, collection: str, doc_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """
        Create a document that must not exist yet.

        Raises:
            DuplicateDocumentError: If ``doc_id`` is already taken.
        """
        data = self._strip_meta(record)
        now = _now_iso()
        with self._lock:
            try:
                self._db.execute(
                    "INSERT INTO documents (collection, doc_id, data, version, created_at, updated_at) "
                    "VALUES (?, ?, ?, 1, ?, ?)",
                    (collection, doc_id, json.dumps(data), now, now),
                )
            except sqlite3.IntegrityError as exc:
                msg = f"{collection}/{doc_id} already exists"
                raise DuplicateDocumentError(msg) from exc
        return {**data, "created_at": now, "updated_at": now, "version": 1}

    def put(
        self,
        collection: str,
        doc_id: str,
        record: dict[str, Any],
        *,
        merge: bool = False,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        """
        Write a document, creating it if needed.

        Args:
            collection: Collection name.
            doc_id: Document id.
            record: Fields to write.
            merge: Merge ``record`` over the stored fields instead of replacing them.
            expected_version: Only write if the stored version matches.
                ``0`` means the document must not exist yet.

        Returns:
            The stored document including ``created_at``, ``updated_at`` and ``version``.

        Raises:
            VersionConflictError: The stored version differs from ``expected_version``.
        """
        fields = self._strip_meta(record)
        now = _now_iso()
        with self._lock:
            self._db.execute("BEGIN IMMEDIATE")
            try:
                row = self._db.execute(
                    "SELECT data, version, created_at FROM documents "
                    "WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                ).fetchone()
                current_version = 0 if row is None else int(row["version"])
                if expected_version is not None and expected_version != current_version:
                    msg = (
                        f"{collection}/{doc_id} is at version {current_version}, "
                        f"expected {expected_version}"
                    )
                    raise VersionConflictError(msg)

                if row is None:
                    data = fields
                    created_at = now
                    self._db.execute(
                        "INSERT INTO documents "
                        "(collection, doc_id, data, version, created_at, updated_at) "
                        "VALUES (?, ?, ?, 1, ?, ?)",
                        (collection, doc_id, json.dumps(data), now, now),
                    )
                else:
                    data = {**json.loads(row["data"]), **fields} if merge else fields
                    created_at = row["created_at"]
                    self._db.execute(
                        "UPDATE documents SET data = ?, version = version + 1, updated_at = ? "
                        "WHERE collection = ? AND doc_id = ?",
                        (json.dumps(data), now, collection, doc_id),
                    )
                self._db.execute("COMMIT")
            except Exception:
                self._db.execute("ROLLBACK")
                raise
        return {
            **data,
            "created_at": created_at,
            "updated_at": now,
            "version": current_version + 1,
        }

    @staticmethod
    def _column(field: str) -> str:
        if not _FIELD_RE.match(field):
            msg = f"Invalid field name: {field!r}"
            raise ValueError(msg)
        if field in _META_COLUMNS:
            return field
        return f"json_extract(data, '$.{field}')"

    def _where(self, collection: str, filters: Iterable[Filter]) -> tuple[str, list[Any]] | None:
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for field, op, value in filters:
            column = self._column(field)
            if op == "in":
                values = list(value)
                if not values:
                    return None
                placeholders = ", ".join("?" for _ in values)
                clauses.append(f"{column} IN ({placeholders})")
                params.extend(values)
            elif op not in _OPERATORS:
                msg = f"Unsupported filter operator: {op!r}"
                raise ValueError(msg)
            elif value is None and op in ("==", "!="):
                clauses.append(f"{column} IS {'NOT ' if op == '!=' else ''}NULL")
            else:
                clauses.append(f"{column} {_OPERATORS[op]} ?")
                params.append(value)
        return " AND ".join(clauses), params

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List documents matching all filters (AND logic)."""
        where = self._where(collection, filters)
        if where is None:
            return []
        clause, params = where

        direction = "DESC" if descending else "ASC"
        order_column = self._column(order_by) if order_by is not None else "created_at"
        sql = (
            "SELECT data, version, created_at, updated_at FROM documents "
            f"WHERE {clause} ORDER BY {order_column} {direction}, doc_id {direction}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                sql += " OFFSET ?"
                params.append(offset)
        elif offset is not None:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)

        with self._lock:
            rows = self._db.execute(sql, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self, collection: str, filters: Iterable[Filter] = ()) -> int:
        """Count documents matching all filters."""
        where = self._where(collection, filters)
        if where is None:
            return 0
        clause, params = where
        with self._lock:
            row = self._db.execute(
                f"SELECT COUNT(*) AS n FROM documents WHERE {clause}",
                params,
            ).fetchone()
        return int(row["n"])

    def sum(self, collection: str, field: str, filters: Iterable[Filter] = ()) -> int:
        """Sum an integer field across matching documents."""
        where = self._where(collection, filters)
        if where is None:
            return 0
        clause, params = where
        column = self._column(field)
        with self._lock:
            row = self._db.execute(
                f"SELECT COALESCE(SUM({column}), 0) AS total FROM documents WHERE {clause}",
                params,
            ).fetchone()
        return int(row["total"])

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
