"""
FastAPI service for confidential call recording analysis.

Example usage:
    # Start the service (development mode)
    uvicorn voxanalyze.service:app --reload --host 0.0.0.0 --port 8000

    # Using the API
    curl -X POST -H "Authorization: Bearer $TOKEN" -F "audio=@call.mp3" \
        "http://localhost:8000/upload"

    curl -H "Authorization: Bearer $TOKEN" "http://localhost:8000/transcription/<id>"

Configuration is read from ``VOXANALYZE_*`` environment variables when the
app is created without an explicit ``PipelineConfig``. The pipeline itself
(database, ASR model) is built on the first request that needs it.
"""

from __future__ import annotations

import threading

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .auth import Authenticator, StaticTokenAuthenticator
from .config import PipelineConfig
from .pipeline import CallRecordPipeline
from .service_errors import register_exception_handlers
from .service_middleware import add_security_headers, log_requests
from .service_records import router as records_router


def create_app(
    config: PipelineConfig | None = None,
    pipeline: CallRecordPipeline | None = None,
    authenticator: Authenticator | None = None,
) -> FastAPI:
    """Build the API application.

    Args:
        config: Service configuration. Defaults to ``pipeline.config`` or,
            failing that, ``PipelineConfig.from_env()``.
        pipeline: Pre-built pipeline (tests inject one with fakes).
        authenticator: Maps bearer tokens to principals. Defaults to the
            static tokens listed in ``config.api_tokens``.
    """
    if config is None:
        config = pipeline.config if pipeline is not None else PipelineConfig.from_env()
    if authenticator is None:
        authenticator = StaticTokenAuthenticator.from_entries(config.api_tokens)

    app = FastAPI(
        title="VoxAnalyze API",
        description=(
            "Confidential call recording analysis: transcription, personal data "
            "masking, encrypted transcript storage and call quality analysis."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.config = config
    app.state.pipeline = pipeline
    app.state.pipeline_lock = threading.Lock()
    app.state.authenticator = authenticator

    origins = list(config.allowed_origins) or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["authorization", "content-type"],
    )
    app.middleware("http")(add_security_headers)
    app.middleware("http")(log_requests)

    register_exception_handlers(app)

    @app.get(
        "/health",
        summary="Health check",
        description="Check if the service is running and responsive",
        tags=["System"],
    )
    async def health_check() -> dict[str, str]:
        return {
            "status": "healthy",
            "service": "voxanalyze-api",
            "version": __version__,
        }

    app.include_router(records_router)
    return app


app = create_app()
