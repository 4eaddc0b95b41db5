"""SQLite-backed call record store.

Example:
    >>> from voxanalyze.store import SQLiteRecordStore
    >>> with SQLiteRecordStore.open("records.db") as store:
    ...     store.insert(record)
    ...     store.update(record.id, status=RecordStatus.TRANSCRIBING)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..models import CallRecord, RecordStatus, utc_now_iso
from .schema import CHECK_SCHEMA_VERSION_SQL, SCHEMA_V1, SCHEMA_VERSION
from .types import DuplicateRecordError, SchemaVersionError, StoreError

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "audio_id",
    "file_name",
    "file_format",
    "file_size",
    "status",
    "transcription_json",
    "analysis_json",
    "error_message",
    "storage_path",
    "masking_method",
    "content_hash",
    "user_id",
    "created_at",
    "updated_at",
)

# CallRecord attribute -> column for fields that may change after insert
_UPDATABLE = {
    "status": "status",
    "transcription": "transcription_json",
    "analysis": "analysis_json",
    "error_message": "error_message",
    "storage_path": "storage_path",
    "masking_method": "masking_method",
    "file_format": "file_format",
}


def _dump_json(value: dict[str, Any] | None) -> str | None:
    return None if value is None else json.dumps(value, ensure_ascii=False)


def _load_json(value: str | None) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise StoreError(f"Corrupt JSON payload in record store: {e.msg}") from e
    return data if isinstance(data, dict) else None


def _row_to_record(row: sqlite3.Row) -> CallRecord:
    return CallRecord(
        id=row["id"],
        audio_id=row["audio_id"],
        file_name=row["file_name"],
        file_format=row["file_format"] or "",
        file_size=row["file_size"] or 0,
        status=RecordStatus(row["status"]),
        transcription=_load_json(row["transcription_json"]),
        analysis=_load_json(row["analysis_json"]),
        error_message=row["error_message"],
        storage_path=row["storage_path"],
        masking_method=row["masking_method"],
        content_hash=row["content_hash"],
        user_id=row["user_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SQLiteRecordStore:
    """SQLite-backed store for call records.

    The connection is shared across worker threads (the pipeline runs store
    calls through ``asyncio.to_thread``), so every statement runs under a
    lock.

    Attributes:
        path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._connect()
        self._init_schema()

    @classmethod
    def open(cls, path: str | Path, create: bool = True) -> SQLiteRecordStore:
        """Open or create a record store database.

        Raises:
            FileNotFoundError: If database doesn't exist and create=False.
            SchemaVersionError: If database has incompatible schema version.
        """
        path = Path(path)
        if not create and not path.exists():
            raise FileNotFoundError(f"Database not found: {path}")
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        return cls(path)

    def _connect(self) -> None:
        self._conn = sqlite3.connect(
            str(self._path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode, we manage transactions
        )
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.row_factory = sqlite3.Row

    def _init_schema(self) -> None:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='store_meta'"
        )
        if cursor.fetchone() is None:
            logger.info("Creating record store schema v%d in %s", SCHEMA_VERSION, self._path)
            conn.executescript(SCHEMA_V1)
            return

        row = conn.execute(CHECK_SCHEMA_VERSION_SQL).fetchone()
        if row:
            found_version = int(row["value"])
            if found_version != SCHEMA_VERSION:
                raise SchemaVersionError(found_version, SCHEMA_VERSION)

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Store not connected")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run statements in a transaction, rolling back on error."""
        with self._lock:
            cursor = self._get_conn().cursor()
            try:
                cursor.execute("BEGIN")
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise
            finally:
                cursor.close()

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> SQLiteRecordStore:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Records
    # =========================================================================

    def insert(self, record: CallRecord) -> CallRecord:
        """Insert a new record.

        Raises:
            DuplicateRecordError: If a record with the same id exists.
        """
        values = (
            record.id,
            record.audio_id,
            record.file_name,
            record.file_format,
            record.file_size,
            record.status.value,
            _dump_json(record.transcription),
            _dump_json(record.analysis),
            record.error_message,
            record.storage_path,
            record.masking_method,
            record.content_hash,
            record.user_id,
            record.created_at,
            record.updated_at,
        )
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"INSERT INTO call_records ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(record.id) from e
        return record

    def get(self, record_id: str) -> CallRecord | None:
        with self._lock:
            row = (
                self._get_conn()
                .execute("SELECT * FROM call_records WHERE id = ?", (record_id,))
                .fetchone()
            )
        return _row_to_record(row) if row else None

    def update(self, record_id: str, **changes: Any) -> CallRecord | None:
        """Update mutable fields of a record and bump ``updated_at``.

        Accepted keys: status, transcription, analysis, error_message,
        storage_path, masking_method, file_format.

        Returns:
            The updated record, or None if it does not exist.
        """
        unknown = set(changes) - set(_UPDATABLE)
        if unknown:
            raise StoreError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        assignments = ["updated_at = ?"]
        params: list[Any] = [utc_now_iso()]
        for name, value in changes.items():
            if name in ("transcription", "analysis"):
                value = _dump_json(value)
            elif name == "status":
                value = RecordStatus(value).value
            assignments.append(f"{_UPDATABLE[name]} = ?")
            params.append(value)
        params.append(record_id)

        with self._transaction() as cursor:
            cursor.execute(
                f"UPDATE call_records SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            if cursor.rowcount == 0:
                return None
        return self.get(record_id)

    def delete(self, record_id: str) -> bool:
        """Delete a record.

        Returns:
            True if a row was deleted, False if it did not exist.
        """
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM call_records WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def list_records(self, user_id: str | None = None, limit: int = 100) -> list[CallRecord]:
        """List records newest first, optionally restricted to one owner."""
        query = "SELECT * FROM call_records"
        params: list[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self._get_conn().execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._lock:
                self._get_conn().execute("SELECT 1").fetchone()
        except (sqlite3.Error, StoreError):
            return False
        return True
