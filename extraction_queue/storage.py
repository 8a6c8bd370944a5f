"""SQLite-backed durable store for queue items, settings and retry entries."""

import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from .errors import StorageError

STATUSES = ("pending", "processing", "completed", "failed")


class QueueItem:
    """Represents one submitted document and its extraction lifecycle."""

    def __init__(
        self,
        id: Optional[str] = None,
        file_name: str = "",
        mime_type: str = "application/octet-stream",
        payload: bytes = b"",
        status: str = "pending",
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        enqueued_at: Optional[float] = None,
        started_at: Optional[float] = None,
        completed_at: Optional[float] = None,
    ):
        self.id = id or uuid.uuid4().hex
        self.file_name = file_name
        self.mime_type = mime_type
        self.payload = payload
        self.status = status
        self.result = result
        self.error = error
        self.error_kind = error_kind
        self.enqueued_at = enqueued_at or time.time()
        self.started_at = started_at
        self.completed_at = completed_at

    def replace(self, **changes: Any) -> "QueueItem":
        """Return a copy of this item with the given fields changed."""
        data = self.to_dict(include_payload=True)
        data.update(changes)
        return QueueItem.from_dict(data)

    def to_dict(self, include_payload: bool = False) -> dict[str, Any]:
        """Convert to dictionary.

        Args:
            include_payload: Include the raw payload bytes

        Returns:
            Dictionary with the item's fields
        """
        data = {
            "id": self.id,
            "file_name": self.file_name,
            "mime_type": self.mime_type,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "error_kind": self.error_kind,
            "enqueued_at": self.enqueued_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "size": len(self.payload),
        }
        if include_payload:
            data["payload"] = self.payload
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueItem":
        """Create from dictionary."""
        return cls(
            id=data.get("id"),
            file_name=data.get("file_name", ""),
            mime_type=data.get("mime_type", "application/octet-stream"),
            payload=data.get("payload", b""),
            status=data.get("status", "pending"),
            result=data.get("result"),
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            enqueued_at=data.get("enqueued_at"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )

    def __repr__(self) -> str:
        return f"QueueItem(id={self.id!r}, file_name={self.file_name!r}, status={self.status!r})"


class RetryEntry:
    """A backup write waiting to be retried.

    ``failed_at`` is set once the entry has been given up on.
    """

    def __init__(
        self,
        record: dict[str, Any],
        next_attempt_at: float,
        attempts: int = 0,
        last_error: str = "",
        id: Optional[int] = None,
        created_at: Optional[float] = None,
        failed_at: Optional[float] = None,
    ):
        self.id = id
        self.record = record
        self.attempts = attempts
        self.next_attempt_at = next_attempt_at
        self.last_error = last_error
        self.created_at = created_at or time.time()
        self.failed_at = failed_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "record": self.record,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "failed_at": self.failed_at,
        }


class DurableStore:
    """SQLite store that survives process restarts.

    Every write is a single transaction, so an item is either fully
    written or not at all. Any sqlite failure surfaces as StorageError.
    """

    def __init__(self, db_path: str = "extraction_queue.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        """Initialize the database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS queue_items (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    file_name TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    payload BLOB NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    result TEXT,
                    error TEXT,
                    error_kind TEXT,
                    enqueued_at REAL NOT NULL,
                    started_at REAL,
                    completed_at REAL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_items_order
                ON queue_items(enqueued_at, seq)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS retry_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at REAL NOT NULL,
                    last_error TEXT NOT NULL DEFAULT '',
                    created_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_failures (
                    id INTEGER PRIMARY KEY,
                    record TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    last_error TEXT NOT NULL DEFAULT '',
                    created_at REAL NOT NULL,
                    failed_at REAL NOT NULL
                )
            """)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Database error: {e}") from e
        finally:
            conn.close()

    # Queue items

    def put(self, item: QueueItem):
        """Insert or update a queue item.

        Descriptive fields and the payload are written on insert only.

        Args:
            item: QueueItem to store
        """
        if item.status not in STATUSES:
            raise StorageError(f"Refusing to store unknown status '{item.status}'")

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO queue_items
                (id, file_name, mime_type, payload, status, result, error,
                 error_kind, enqueued_at, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    result = excluded.result,
                    error = excluded.error,
                    error_kind = excluded.error_kind,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at
                """,
                (
                    item.id,
                    item.file_name,
                    item.mime_type,
                    sqlite3.Binary(item.payload),
                    item.status,
                    json.dumps(item.result) if item.result is not None else None,
                    item.error,
                    item.error_kind,
                    item.enqueued_at,
                    item.started_at,
                    item.completed_at,
                ),
            )

    def get(self, item_id: str) -> Optional[QueueItem]:
        """Get a queue item by id.

        Args:
            item_id: ID of the item

        Returns:
            QueueItem if stored, None otherwise
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM queue_items WHERE id = ?", (item_id,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def delete(self, item_id: str) -> bool:
        """Delete a queue item.

        Returns:
            True if a row was removed
        """
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM queue_items WHERE id = ?", (item_id,))
            return cursor.rowcount > 0

    def list_items(self) -> list[QueueItem]:
        """All queue items, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM queue_items ORDER BY enqueued_at, seq"
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def list_ids(self) -> list[str]:
        """IDs of all queue items, oldest first, without loading payloads."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM queue_items ORDER BY enqueued_at, seq"
            ).fetchall()
        return [row["id"] for row in rows]

    def clear(self):
        """Delete every queue item."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM queue_items")

    def _row_to_item(self, row: sqlite3.Row) -> QueueItem:
        if row["status"] not in STATUSES:
            raise StorageError(f"Item {row['id']} has corrupt status '{row['status']}'")
        try:
            result = json.loads(row["result"]) if row["result"] is not None else None
        except ValueError as e:
            raise StorageError(f"Item {row['id']} has a corrupt result: {e}") from e

        return QueueItem(
            id=row["id"],
            file_name=row["file_name"],
            mime_type=row["mime_type"],
            payload=bytes(row["payload"]),
            status=row["status"],
            result=result,
            error=row["error"],
            error_kind=row["error_kind"],
            enqueued_at=row["enqueued_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # Settings

    def get_setting(self, key: str, default: Any = None) -> Any:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except ValueError as e:
            raise StorageError(f"Setting '{key}' is corrupt: {e}") from e

    def put_setting(self, key: str, value: Any):
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, json.dumps(value)),
            )

    def delete_setting(self, key: str):
        with self._transaction() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    # Retry entries

    def add_retry_entry(self, entry: RetryEntry) -> int:
        """Persist a new retry entry.

        Args:
            entry: RetryEntry to store; its id is assigned here

        Returns:
            The ID of the inserted entry
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO retry_entries
                (record, attempts, next_attempt_at, last_error, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    json.dumps(entry.record),
                    entry.attempts,
                    entry.next_attempt_at,
                    entry.last_error,
                    entry.created_at,
                ),
            )
            entry.id = cursor.lastrowid
        return entry.id

    def update_retry_entry(self, entry: RetryEntry):
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE retry_entries
                SET attempts = ?,
                    next_attempt_at = ?,
                    last_error = ?
                WHERE id = ?
                """,
                (entry.attempts, entry.next_attempt_at, entry.last_error, entry.id),
            )

    def delete_retry_entry(self, entry_id: int):
        with self._transaction() as conn:
            conn.execute("DELETE FROM retry_entries WHERE id = ?", (entry_id,))

    def list_retry_entries(self) -> list[RetryEntry]:
        """All retry entries, earliest due first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM retry_entries ORDER BY next_attempt_at, id"
            ).fetchall()

        return [
            RetryEntry(
                id=row["id"],
                record=self._decode_record(row, "Retry entry"),
                attempts=row["attempts"],
                next_attempt_at=row["next_attempt_at"],
                last_error=row["last_error"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def clear_retry_entries(self) -> int:
        """Drop every pending retry; returns how many were dropped."""
        with self._transaction() as conn:
            return conn.execute("DELETE FROM retry_entries").rowcount

    # Permanent sync failures

    def fail_retry_entry(self, entry: RetryEntry):
        """Move a retry entry to the permanent failures in one transaction.

        The failure keeps the entry's id; ``entry.failed_at`` defaults to now.
        """
        if entry.failed_at is None:
            entry.failed_at = time.time()
        with self._transaction() as conn:
            conn.execute("DELETE FROM retry_entries WHERE id = ?", (entry.id,))
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_failures
                (id, record, attempts, last_error, created_at, failed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    json.dumps(entry.record),
                    entry.attempts,
                    entry.last_error,
                    entry.created_at,
                    entry.failed_at,
                ),
            )

    def list_sync_failures(self) -> list[RetryEntry]:
        """Permanent failures not yet acknowledged, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_failures ORDER BY failed_at, id"
            ).fetchall()

        return [
            RetryEntry(
                id=row["id"],
                record=self._decode_record(row, "Sync failure"),
                attempts=row["attempts"],
                next_attempt_at=row["failed_at"],
                last_error=row["last_error"],
                created_at=row["created_at"],
                failed_at=row["failed_at"],
            )
            for row in rows
        ]

    def delete_sync_failure(self, failure_id: int) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_failures WHERE id = ?", (failure_id,))
            return cursor.rowcount > 0

    def clear_sync_failures(self) -> int:
        with self._transaction() as conn:
            return conn.execute("DELETE FROM sync_failures").rowcount

    def _decode_record(self, row: sqlite3.Row, label: str) -> dict[str, Any]:
        try:
            return json.loads(row["record"])
        except ValueError as e:
            raise StorageError(f"{label} {row['id']} is corrupt: {e}") from e
