"""Confidential call record pipeline.

``CallRecordPipeline`` drives one upload through its lifecycle::

    pending -> transcribing -> analyzing -> completed
        \\___________\\______________\\____> error

Only masked text is ever persisted: the transcript is masked before it is
sealed and written, and the analysis summary is redacted before it is
written. Each status change is stored before the next stage starts, so an
interrupted run leaves a consistent record that ``retry_record`` can resume
from the stored audio.

Read paths check identity and ownership before touching encrypted payloads,
and surface "missing", "not allowed" and "cannot decrypt" as distinct
errors.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import tempfile
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from .analysis import CallAnalyzer
from .asr import Transcriber, WhisperTranscriber
from .auth import Principal, authorize_record_access, require_principal
from .config import PipelineConfig
from .crypto import EnvelopeCipher
from .dedup import UploadDeduplicator, content_key
from .dialogue import DialogueRepairer
from .exceptions import (
    AnalysisError,
    CryptoError,
    InvalidUploadError,
    NotFoundError,
    TranscriptionError,
    VoxAnalyzeError,
)
from .llm_client import LLMConfig, provider_factory
from .masking import PIIMasker
from .models import AnalysisResult, CallRecord, RecordStatus, Transcript, new_id
from .privacy import RedactionTokens, SummaryRedactor, sanitize_error_message
from .store import LocalBlobStore, SQLiteRecordStore, StoreError, StoreTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUDIO_EXTENSIONS = frozenset(
    {".mp3", ".wav", ".m4a", ".ogg", ".oga", ".opus", ".webm", ".flac", ".aac", ".mp4", ".amr"}
)

# Added to the summed per-model analysis bounds.
ANALYSIS_DEADLINE_MARGIN_S = 5.0


def new_audio_id() -> str:
    """Short human-facing id for an uploaded recording, e.g. ``SKAMB-4F2A91``."""
    return f"SKAMB-{secrets.token_hex(3).upper()}"


@dataclass
class UploadResult:
    """Outcome of processing (or re-processing) an upload."""

    record: CallRecord
    transcript: Transcript | None = None
    analysis: AnalysisResult | None = None
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "record": self.record.to_summary(),
            "transcription": self.transcript.to_dict() if self.transcript else None,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "duplicate": self.duplicate,
        }


class CallRecordPipeline:
    """Process uploads and serve stored records under access control.

    All collaborators are injected. ``build_pipeline`` wires the default
    implementations from a ``PipelineConfig``.
    """

    def __init__(
        self,
        store: SQLiteRecordStore,
        blobs: LocalBlobStore,
        transcriber: Transcriber,
        masker: PIIMasker,
        analyzer: CallAnalyzer,
        cipher: EnvelopeCipher,
        config: PipelineConfig | None = None,
        repairer: DialogueRepairer | None = None,
        deduplicator: UploadDeduplicator | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.store = store
        self.blobs = blobs
        self.transcriber = transcriber
        self.masker = masker
        self.analyzer = analyzer
        self.cipher = cipher
        self.repairer = repairer or DialogueRepairer(labels=self.config.speaker_labels)
        self.deduplicator = deduplicator or UploadDeduplicator(self.config.dedup_window_s)

        if not cipher.has_key:
            logger.warning("No encryption key configured; transcripts are stored as plaintext")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _store_call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking store call in a worker thread under the storage timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), timeout=self.config.storage_timeout_s
            )
        except TimeoutError as e:
            raise StoreTimeoutError(
                f"Storage operation timed out after {self.config.storage_timeout_s:.0f}s"
            ) from e

    def _analysis_deadline_s(self) -> float:
        """Overall analysis deadline: every candidate model gets its full per-call bound."""
        per_call = self.analyzer.timeout_s
        candidates = max(1, len(self.analyzer.models))
        return per_call * candidates + ANALYSIS_DEADLINE_MARGIN_S

    async def _update(self, record_id: str, **changes: Any) -> CallRecord:
        record = await self._store_call(self.store.update, record_id, **changes)
        if record is None:
            raise NotFoundError("Record was deleted during processing", record_id=record_id)
        return record

    async def _authorized_record(self, principal: Principal | None, record_id: str) -> CallRecord:
        principal = require_principal(principal)
        record = await self._store_call(self.store.get, record_id)
        if record is None:
            raise NotFoundError("Record not found", record_id=record_id)
        authorize_record_access(principal, record.user_id)
        return record

    def _validate_upload(self, file_name: str, content: bytes, content_type: str | None) -> None:
        if not content:
            raise InvalidUploadError("Uploaded file is empty")
        if len(content) > self.config.max_audio_bytes:
            raise InvalidUploadError(
                f"Audio file too large ({len(content) / 1024 / 1024:.1f}MB). "
                f"Maximum size: {self.config.max_audio_mb:g}MB",
                too_large=True,
            )
        ext = Path(file_name).suffix.lower()
        is_audio_type = bool(content_type and content_type.lower().startswith("audio/"))
        if ext not in AUDIO_EXTENSIONS and not is_audio_type:
            raise InvalidUploadError(f"Unsupported file type: {ext or content_type or 'unknown'}")

    def _seal(self, transcript: Transcript, record_id: str) -> dict[str, Any]:
        payload = transcript.to_dict()
        try:
            return self.cipher.seal(payload)
        except CryptoError as e:
            if not self.config.allow_plaintext_fallback:
                raise CryptoError(
                    "Could not encrypt transcript for storage", record_id=record_id
                ) from e
            logger.warning(
                "Encryption failed; storing masked transcript as plaintext (fallback enabled)",
                extra={"record_id": record_id},
            )
            return payload

    async def _fail(self, record_id: str, error: BaseException) -> None:
        message = sanitize_error_message(error)
        logger.error(
            "Processing failed for record %s: %s",
            record_id,
            message,
            extra={"record_id": record_id, "error_type": type(error).__name__},
        )
        try:
            await self._store_call(
                self.store.update, record_id, status=RecordStatus.ERROR, error_message=message
            )
        except (StoreError, OSError) as store_error:
            logger.error(
                "Could not persist error state for record %s: %s",
                record_id,
                sanitize_error_message(store_error),
                extra={"record_id": record_id},
            )

    @asynccontextmanager
    async def _audio_file(self, record: CallRecord, content: bytes | None) -> AsyncIterator[Path]:
        """Yield a local path to the record's audio, from the blob store or a temp file."""
        stored_path: Path | None = None
        if record.storage_path:
            try:
                stored_path = await self._store_call(self.blobs.local_path, record.storage_path)
            except StoreError as e:
                logger.warning(
                    "Stored audio unavailable for record %s: %s",
                    record.id,
                    e,
                    extra={"record_id": record.id},
                )

        if stored_path is not None:
            yield stored_path
            return

        if content is None:
            raise NotFoundError(
                "Original audio is no longer available; upload it again", record_id=record.id
            )

        fd, tmp_name = tempfile.mkstemp(suffix=Path(record.file_name).suffix or ".bin")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            yield Path(tmp_name)
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    # =========================================================================
    # Write path
    # =========================================================================

    async def process_upload(
        self,
        principal: Principal | None,
        file_name: str,
        content: bytes,
        content_type: str | None = None,
    ) -> UploadResult:
        """Run a new upload through transcription, masking and analysis.

        Raises:
            UnauthorizedError: If there is no principal.
            InvalidUploadError: If the file is empty, too large or not audio.
            TranscriptionError, AnalysisError, CryptoError, UpstreamQuotaError,
            UpstreamOverloadedError: When a stage fails. The record is left in
                ``error`` state and the exception carries its ``record_id``.
        """
        principal = require_principal(principal)
        self._validate_upload(file_name, content, content_type)

        key = content_key(principal.user_id, content)
        existing_id = await self.deduplicator.claim(key)
        if existing_id is not None:
            duplicate = await self._resolve_duplicate(key, existing_id)
            if duplicate is not None:
                return duplicate

        record = CallRecord(
            id=new_id(),
            audio_id=new_audio_id(),
            file_name=Path(file_name).name or "recording",
            user_id=principal.user_id,
            file_format=Path(file_name).suffix.lstrip(".").lower() or (content_type or ""),
            file_size=len(content),
            content_hash=key,
        )

        completed = False
        try:
            await self._store_call(self.store.insert, record)
            await self.deduplicator.bind(key, record.id)
            logger.info(
                "Accepted upload %s (%d bytes) as record %s",
                record.audio_id,
                record.file_size,
                record.id,
                extra={"record_id": record.id, "user_id": principal.user_id},
            )

            storage_path: str | None = None
            try:
                blob = await self._store_call(
                    self.blobs.put, record.audio_id, record.file_name, content
                )
                storage_path = blob.path
            except StoreError as e:
                logger.warning(
                    "Audio blob not stored for record %s: %s",
                    record.id,
                    sanitize_error_message(e),
                    extra={"record_id": record.id},
                )

            record = await self._update(
                record.id, status=RecordStatus.TRANSCRIBING, storage_path=storage_path
            )
            result = await self._run(record, content)
            completed = True
            return result
        finally:
            # Also reached on cancellation; the record keeps its last stored status.
            if not completed:
                await self.deduplicator.release(key)

    async def _resolve_duplicate(self, key: str, existing_id: str) -> UploadResult | None:
        if not existing_id:
            raise InvalidUploadError("An identical upload is already being processed")
        existing = await self._store_call(self.store.get, existing_id)
        if existing is not None and existing.status is not RecordStatus.ERROR:
            logger.info(
                "Duplicate upload resolved to record %s",
                existing.id,
                extra={"record_id": existing.id},
            )
            return UploadResult(record=existing, duplicate=True)
        await self.deduplicator.release(key)
        if await self.deduplicator.claim(key) is not None:
            raise InvalidUploadError("An identical upload is already being processed")
        return None

    async def _run(self, record: CallRecord, content: bytes | None) -> UploadResult:
        """Transcribe, mask, seal, analyze. ``record`` must be in ``transcribing``."""
        record_id = record.id
        stage = "transcription"
        try:
            async with self._audio_file(record, content) as audio_path:
                raw = await asyncio.wait_for(
                    self.transcriber.transcribe(audio_path, self.config.language),
                    timeout=self.config.transcription_timeout_s,
                )
            transcript = self.repairer.repair(raw)
            if not transcript.text.strip():
                raise TranscriptionError("Transcription produced no text")

            outcome = await self.masker.mask(transcript)
            masked = outcome.transcript
            record = await self._update(
                record_id,
                status=RecordStatus.ANALYZING,
                transcription=self._seal(masked, record_id),
                masking_method=outcome.method,
            )

            stage = "analysis"
            analysis = await asyncio.wait_for(
                self.analyzer.analyze(masked), timeout=self._analysis_deadline_s()
            )
            record = await self._update(
                record_id,
                status=RecordStatus.COMPLETED,
                analysis=analysis.to_dict(),
                error_message=None,
            )
        except TimeoutError as e:
            error_cls = TranscriptionError if stage == "transcription" else AnalysisError
            error = error_cls(f"{stage.capitalize()} timed out", record_id=record_id)
            await self._fail(record_id, error)
            raise error from e
        except VoxAnalyzeError as e:
            e.record_id = e.record_id or record_id
            await self._fail(record_id, e)
            raise
        except Exception as e:
            error_cls = TranscriptionError if stage == "transcription" else AnalysisError
            error = error_cls(f"{stage.capitalize()} failed: {e}", record_id=record_id)
            await self._fail(record_id, error)
            raise error from e

        logger.info(
            "Record %s completed (masking=%s)",
            record_id,
            outcome.method,
            extra={"record_id": record_id, "masking_method": outcome.method},
        )
        return UploadResult(record=record, transcript=masked, analysis=analysis)

    async def retry_record(self, principal: Principal | None, record_id: str) -> UploadResult:
        """Re-run processing for a failed or interrupted record from its stored audio.

        Raises:
            InvalidUploadError: If the record already completed.
            NotFoundError: If the record or its audio no longer exists.
        """
        record = await self._authorized_record(principal, record_id)
        if record.status is RecordStatus.COMPLETED:
            raise InvalidUploadError("Record is already completed; nothing to retry")
        record = await self._update(
            record_id, status=RecordStatus.TRANSCRIBING, error_message=None, analysis=None
        )
        logger.info("Retrying record %s", record_id, extra={"record_id": record_id})
        return await self._run(record, None)

    # =========================================================================
    # Read path
    # =========================================================================

    async def get_record(self, principal: Principal | None, record_id: str) -> CallRecord:
        return await self._authorized_record(principal, record_id)

    async def list_records(self, principal: Principal | None, limit: int = 100) -> list[CallRecord]:
        """Records visible to ``principal``: its own, or all for admins."""
        principal = require_principal(principal)
        owner = None if principal.is_admin else principal.user_id
        return await self._store_call(self.store.list_records, owner, limit)

    async def get_transcription(self, principal: Principal | None, record_id: str) -> Transcript:
        """Return the masked transcript of a record, decrypting it if sealed.

        Raises:
            UnauthorizedError: If there is no principal.
            NotFoundError: If the record or its transcript does not exist.
            ForbiddenError: If the principal is neither owner nor admin.
            CryptoError: If the stored envelope cannot be decrypted.
        """
        record = await self._authorized_record(principal, record_id)
        if record.transcription is None:
            raise NotFoundError("Transcription not available for this record", record_id=record_id)
        try:
            payload = self.cipher.open_sealed(record.transcription)
        except CryptoError as e:
            logger.error(
                "Failed to decrypt transcription for record %s: %s",
                record_id,
                e,
                extra={"record_id": record_id},
            )
            raise CryptoError("Failed to decrypt transcription", record_id=record_id) from e
        return Transcript.from_dict(payload)

    async def get_analysis(self, principal: Principal | None, record_id: str) -> AnalysisResult:
        record = await self._authorized_record(principal, record_id)
        if record.analysis is None:
            raise NotFoundError("Analysis not available for this record", record_id=record_id)
        return AnalysisResult.from_dict(record.analysis)

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete_record(self, principal: Principal | None, record_id: str) -> bool:
        """Delete a record and its audio.

        Deleting a record that does not exist succeeds and returns False.

        Raises:
            UnauthorizedError: If there is no principal.
            ForbiddenError: If the principal is neither owner nor admin.
        """
        principal = require_principal(principal)
        record = await self._store_call(self.store.get, record_id)
        if record is None:
            logger.info("Delete of missing record %s treated as success", record_id)
            return False
        authorize_record_access(principal, record.user_id)

        try:
            removed = await self._store_call(self.blobs.delete_for, record.audio_id)
            logger.debug("Removed %d audio blobs for record %s", removed, record_id)
        except (StoreError, OSError) as e:
            logger.warning(
                "Audio cleanup failed for record %s: %s",
                record_id,
                sanitize_error_message(e),
                extra={"record_id": record_id},
            )

        deleted = await self._store_call(self.store.delete, record_id)
        logger.info(
            "Deleted record %s",
            record_id,
            extra={"record_id": record_id, "user_id": principal.user_id},
        )
        return deleted


def build_pipeline(config: PipelineConfig) -> CallRecordPipeline:
    """Wire the default pipeline components from ``config``."""
    llm_config = LLMConfig(
        provider=config.llm_provider,
        api_key=config.llm_api_key,
        base_url=config.llm_base_url,
    )
    factory = provider_factory(llm_config)
    redactor = SummaryRedactor(RedactionTokens.for_locale(config.summary_locale))

    return CallRecordPipeline(
        store=SQLiteRecordStore.open(config.resolved_db_path()),
        blobs=LocalBlobStore(config.resolved_blob_dir()),
        transcriber=WhisperTranscriber(
            model_name=config.whisper_model,
            device=config.whisper_device,
            compute_type=config.whisper_compute_type,
            language=config.language,
        ),
        masker=PIIMasker(
            factory,
            models=config.masking_models,
            timeout_s=config.masking_timeout_s,
            segment_strategy=config.segment_strategy,
        ),
        analyzer=CallAnalyzer(
            factory,
            models=config.analysis_models,
            timeout_s=config.analysis_timeout_s,
            redactor=redactor,
        ),
        cipher=EnvelopeCipher(config.encryption_key),
        config=config,
    )
