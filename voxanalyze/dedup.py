"""Deduplicate repeated uploads of the same audio.

A client that retries an upload (double click, flaky network) would otherwise
start a second, identical processing run. Uploads are keyed by a hash of the
owner id and the file content; within the window a repeat upload resolves to
the record created by the first one.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass


def content_key(user_id: str, content: bytes) -> str:
    """Hash identifying one owner's upload of one file."""
    digest = hashlib.sha256()
    digest.update(user_id.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(content)
    return digest.hexdigest()


@dataclass
class _Entry:
    record_id: str | None
    claimed_at: float


class UploadDeduplicator:
    """Track recent uploads by content key.

    ``claim`` either reserves the key for the caller (returns None) or
    returns the record id of an earlier upload within the window. A reserved
    key with no record yet (the first upload is still creating it) is
    reported as a duplicate with an empty id.
    """

    def __init__(self, window_s: float = 300.0) -> None:
        self.window_s = window_s
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _expire(self, now: float) -> None:
        stale = [k for k, e in self._entries.items() if now - e.claimed_at > self.window_s]
        for key in stale:
            del self._entries[key]

    async def claim(self, key: str) -> str | None:
        if self.window_s <= 0:
            return None
        async with self._lock:
            now = time.monotonic()
            self._expire(now)
            entry = self._entries.get(key)
            if entry is not None:
                return entry.record_id or ""
            self._entries[key] = _Entry(record_id=None, claimed_at=now)
            return None

    async def bind(self, key: str, record_id: str) -> None:
        """Attach the created record to a claimed key."""
        if self.window_s <= 0:
            return
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.record_id = record_id

    async def release(self, key: str) -> None:
        """Forget a key so the same content can be processed again."""
        async with self._lock:
            self._entries.pop(key, None)
