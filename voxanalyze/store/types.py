"""Exceptions and small value types for the record store."""

from __future__ import annotations

from dataclasses import dataclass

from ..exceptions import VoxAnalyzeError

# =============================================================================
# Exceptions
# =============================================================================


class StoreError(VoxAnalyzeError):
    """Base exception for store errors."""


class DuplicateRecordError(StoreError):
    """Raised when inserting a record whose id already exists."""

    def __init__(self, record_id: str, message: str | None = None):
        super().__init__(message or f"Record already exists: {record_id}", record_id=record_id)


class SchemaVersionError(StoreError):
    """Raised when database schema version is incompatible."""

    def __init__(
        self,
        found_version: int,
        expected_version: int,
        message: str | None = None,
    ):
        self.found_version = found_version
        self.expected_version = expected_version
        super().__init__(
            message
            or f"Schema version mismatch: found {found_version}, expected {expected_version}"
        )


class StoreTimeoutError(StoreError):
    """Raised when a store operation does not finish within its timeout."""


# =============================================================================
# Value types
# =============================================================================


@dataclass(frozen=True)
class StoredBlob:
    """Location of an uploaded audio file in the blob store."""

    path: str
    size: int
