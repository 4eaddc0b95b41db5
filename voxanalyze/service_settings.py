"""Shared configuration constants for the API service."""

from fastapi import status

# Upload read chunk size (1MB)
STREAMING_CHUNK_SIZE = 1024 * 1024

# Serialized upload responses above this many characters are replaced by a
# compact payload without the transcript
MAX_RESPONSE_CHARS = 250_000

# Starlette renamed a couple status constants. Keep runtime compatibility
# without breaking mypy on older/lagging stubs.
HTTP_413_TOO_LARGE: int = getattr(
    status, "HTTP_413_CONTENT_TOO_LARGE", status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
)
HTTP_422_UNPROCESSABLE: int = getattr(
    status, "HTTP_422_UNPROCESSABLE_CONTENT", status.HTTP_422_UNPROCESSABLE_ENTITY
)
