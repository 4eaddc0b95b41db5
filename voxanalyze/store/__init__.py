"""Record store for voxanalyze.

Main components:
- SQLiteRecordStore: persistent call records (status, sealed transcript, analysis)
- LocalBlobStore: uploaded audio files, addressable by audio id prefix
- StoreError and subclasses

Example usage:
    >>> from voxanalyze.store import SQLiteRecordStore, LocalBlobStore
    >>> store = SQLiteRecordStore.open("records.db")
    >>> blobs = LocalBlobStore("audio/")
"""

from __future__ import annotations

from .blobs import LocalBlobStore
from .store import SQLiteRecordStore
from .types import (
    DuplicateRecordError,
    SchemaVersionError,
    StoredBlob,
    StoreError,
    StoreTimeoutError,
)

__all__ = [
    "SQLiteRecordStore",
    "LocalBlobStore",
    "StoredBlob",
    "StoreError",
    "DuplicateRecordError",
    "SchemaVersionError",
    "StoreTimeoutError",
]
