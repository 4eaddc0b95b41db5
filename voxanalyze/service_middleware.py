"""HTTP middleware for the call records API.

Requests to this service carry audio uploads and return masked transcripts,
so request logging records routing facts only: method, path, status and
timing. Query strings, headers and bodies never reach the log.
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request

logger = logging.getLogger(__name__)


async def log_requests(request: Request, call_next):
    """
    Tag each request with an id and log its outcome.

    The id is stored on ``request.state.request_id`` so error responses can
    quote it, and is echoed back in the ``X-Request-ID`` header. Record ids in
    the path are logged; transcript text and bearer tokens are not.
    """
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    logger.info(
        "Request started: %s %s [request_id=%s]",
        request.method,
        request.url.path,
        request_id,
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        },
    )

    start_time = time.time()
    response = await call_next(request)
    duration_ms = (time.time() - start_time) * 1000

    logger.info(
        "Request completed: %s %s -> %d (%.2f ms) [request_id=%s]",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
        request_id,
        extra={
            "request_id": request_id,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )

    response.headers["X-Request-ID"] = request_id

    return response


async def add_security_headers(request: Request, call_next):
    """
    Harden every response of the call records API.

    Responses carry masked transcripts and call scores, so browsers and
    proxies must not store them (``Cache-Control: no-store``). Content-type
    sniffing and framing by other sites are disabled as well. The CSP still
    admits the CDN assets of the interactive docs at ``/docs`` and ``/redoc``.
    """
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Cache-Control"] = "no-store"

    # Swagger UI and ReDoc need inline scripts/styles and their CDN
    csp_directives = [
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' cdn.jsdelivr.net",
        "style-src 'self' 'unsafe-inline' cdn.jsdelivr.net",
        "img-src 'self' data: fastapi.tiangolo.com",
    ]
    response.headers["Content-Security-Policy"] = "; ".join(csp_directives)

    return response
