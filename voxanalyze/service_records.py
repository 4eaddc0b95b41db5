"""Call record routes for the API service."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Header, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from .audit import run_security_audit
from .auth import Principal, require_admin, require_principal
from .pipeline import CallRecordPipeline, build_pipeline
from .service_validation import fit_upload_payload, read_upload_limited

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================


def get_pipeline(request: Request) -> CallRecordPipeline:
    """Return the app's pipeline, building it from config on first use."""
    state = request.app.state
    if state.pipeline is None:
        with state.pipeline_lock:
            if state.pipeline is None:
                logger.info("Building record pipeline")
                state.pipeline = build_pipeline(state.config)
    return state.pipeline


def get_principal(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """Resolve the caller from an ``Authorization: Bearer <token>`` header."""
    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer":
            token = value.strip()
    return require_principal(request.app.state.authenticator.authenticate(token))


PipelineDep = Annotated[CallRecordPipeline, Depends(get_pipeline)]
PrincipalDep = Annotated[Principal, Depends(get_principal)]


# =============================================================================
# Upload
# =============================================================================


@router.post(
    "/upload",
    summary="Upload and process a call recording",
    description=(
        "Upload an audio file. The call is transcribed, personal data is masked, "
        "the masked transcript is stored encrypted and the call is analyzed."
    ),
    tags=["Records"],
    response_model=None,
)
async def upload_audio(
    audio: Annotated[UploadFile, File(description="Call recording to process")],
    principal: PrincipalDep,
    pipeline: PipelineDep,
) -> JSONResponse:
    content = await read_upload_limited(audio, max_bytes=pipeline.config.max_audio_bytes)
    result = await pipeline.process_upload(
        principal,
        audio.filename or "recording",
        content,
        audio.content_type,
    )
    return JSONResponse(content=fit_upload_payload(result.to_dict()))


# =============================================================================
# Records
# =============================================================================


@router.get("/records", summary="List call records", tags=["Records"])
async def list_records(
    principal: PrincipalDep,
    pipeline: PipelineDep,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> dict[str, Any]:
    records = await pipeline.list_records(principal, limit=limit)
    return {"records": [r.to_summary() for r in records], "count": len(records)}


@router.get("/records/{record_id}", summary="Get a call record", tags=["Records"])
async def get_record(record_id: str, principal: PrincipalDep, pipeline: PipelineDep) -> dict[str, Any]:
    record = await pipeline.get_record(principal, record_id)
    return record.to_summary()


@router.delete("/records/{record_id}", summary="Delete a call record", tags=["Records"])
async def delete_record(
    record_id: str, principal: PrincipalDep, pipeline: PipelineDep
) -> dict[str, Any]:
    deleted = await pipeline.delete_record(principal, record_id)
    return {"success": True, "deleted": deleted, "id": record_id}


@router.post(
    "/records/{record_id}/retry",
    summary="Re-run processing for a failed record",
    tags=["Records"],
    response_model=None,
)
async def retry_record(
    record_id: str, principal: PrincipalDep, pipeline: PipelineDep
) -> JSONResponse:
    result = await pipeline.retry_record(principal, record_id)
    return JSONResponse(content=fit_upload_payload(result.to_dict()))


@router.get(
    "/transcription/{record_id}",
    summary="Get the masked transcript of a record",
    tags=["Records"],
)
async def get_transcription(
    record_id: str, principal: PrincipalDep, pipeline: PipelineDep
) -> dict[str, Any]:
    transcript = await pipeline.get_transcription(principal, record_id)
    return transcript.to_dict()


@router.get("/analysis/{record_id}", summary="Get the analysis of a record", tags=["Records"])
async def get_analysis(
    record_id: str, principal: PrincipalDep, pipeline: PipelineDep
) -> dict[str, Any]:
    analysis = await pipeline.get_analysis(principal, record_id)
    return analysis.to_dict()


# =============================================================================
# Administration
# =============================================================================


@router.get("/security-audit", summary="Run the security self-check", tags=["System"])
async def security_audit(request: Request, principal: PrincipalDep) -> dict[str, Any]:
    require_admin(principal)
    pipeline = request.app.state.pipeline
    store = pipeline.store if pipeline is not None else None
    report = run_security_audit(request.app.state.config, store)
    return report.to_dict()
