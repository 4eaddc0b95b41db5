"""Filesystem storage for uploaded audio files.

Blobs are written as ``<root>/<audio_id>-<timestamp_ms><ext>`` so every file
belonging to one upload can be found (and removed) by its audio id prefix.
"""

from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path

from .types import StoredBlob, StoreError

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")
_SAFE_EXT = re.compile(r"^\.[A-Za-z0-9]{1,8}$")


class LocalBlobStore:
    """Audio blob store on the local filesystem."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _check_id(self, audio_id: str) -> None:
        if not _SAFE_ID.match(audio_id):
            raise StoreError(f"Invalid audio id: {audio_id!r}")

    def _resolve(self, path: str | Path) -> Path:
        resolved = (self.root / path).resolve()
        if self.root.resolve() not in resolved.parents:
            raise StoreError("Blob path escapes the blob store root")
        return resolved

    def put(self, audio_id: str, file_name: str, data: bytes) -> StoredBlob:
        """Write ``data`` for ``audio_id`` and return its relative location."""
        self._check_id(audio_id)
        suffix = Path(file_name).suffix.lower()
        ext = suffix if _SAFE_EXT.match(suffix) else ".bin"
        name = f"{audio_id}-{int(time.time() * 1000)}{ext}"
        target = self.root / name
        try:
            target.write_bytes(data)
        except OSError as e:
            raise StoreError(f"Failed to store audio blob: {e.strerror or e}") from e
        logger.debug("Stored audio blob %s (%d bytes)", name, len(data))
        return StoredBlob(path=name, size=len(data))

    def local_path(self, path: str | Path) -> Path:
        """Absolute filesystem path of a stored blob.

        Raises:
            StoreError: If the blob does not exist or lies outside the root.
        """
        resolved = self._resolve(path)
        if not resolved.is_file():
            raise StoreError(f"Audio blob not found: {path}")
        return resolved

    def read(self, path: str | Path) -> bytes:
        return self.local_path(path).read_bytes()

    def delete_for(self, audio_id: str) -> int:
        """Remove every blob stored for ``audio_id``. Returns the number removed."""
        self._check_id(audio_id)
        removed = 0
        for blob in self.root.glob(f"{audio_id}-*"):
            if blob.is_file():
                blob.unlink(missing_ok=True)
                removed += 1
        return removed

    def writable(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)
