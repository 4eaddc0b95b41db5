"""Upload reading and response size helpers for the API service."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import UploadFile

from .exceptions import InvalidUploadError
from .service_settings import MAX_RESPONSE_CHARS, STREAMING_CHUNK_SIZE

logger = logging.getLogger(__name__)


async def read_upload_limited(upload: UploadFile, *, max_bytes: int) -> bytes:
    """
    Read an uploaded file in chunks, refusing to buffer more than ``max_bytes``.

    Args:
        upload: The FastAPI UploadFile to read from.
        max_bytes: Maximum allowed file size in bytes.

    Raises:
        InvalidUploadError: If the file exceeds ``max_bytes`` (``too_large``)
            or is empty.
    """
    buffer = bytearray()
    while True:
        chunk = await upload.read(STREAMING_CHUNK_SIZE)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise InvalidUploadError(
                f"Audio file too large: >{max_bytes / (1024 * 1024):g} MB",
                too_large=True,
            )
    if not buffer:
        raise InvalidUploadError("Uploaded file is empty")
    return bytes(buffer)


def fit_upload_payload(
    payload: dict[str, Any], max_chars: int = MAX_RESPONSE_CHARS
) -> dict[str, Any]:
    """Return ``payload`` or, when it serializes too large, a compact variant.

    The compact variant keeps the record summary and the analysis and drops
    the transcript, which stays retrievable through ``/transcription/{id}``.
    """
    try:
        size = len(json.dumps(payload, ensure_ascii=False))
    except (TypeError, ValueError):
        size = max_chars + 1
    if size <= max_chars:
        return payload

    logger.info(
        "Upload response too large (%d chars); returning compact payload",
        size,
        extra={"response_chars": size},
    )
    return {
        "record": payload.get("record"),
        "analysis": payload.get("analysis"),
        "transcription": None,
        "duplicate": payload.get("duplicate", False),
        "truncated": True,
    }
