"""
Confidential call recording analysis.

Public API:
    - CallRecordPipeline: Upload -> transcribe -> mask -> encrypt -> analyze
    - build_pipeline: Wire the default pipeline from a PipelineConfig
    - PIIMasker / mask_pii: AI-assisted PII masking with regex fallback
    - mask_with_regex: Deterministic PII masking
    - SummaryRedactor: Redact personal data from analysis summaries
    - EnvelopeCipher: AES-GCM transcript envelopes

Configuration:
    - PipelineConfig: Settings for pipeline, storage and service

Models:
    - Transcript, Segment: Transcribed dialogue
    - AnalysisResult, Metric: Call analysis
    - CallRecord, RecordStatus: Persisted call records

Exceptions:
    - VoxAnalyzeError: Base exception for this library
    - See voxanalyze.exceptions for the full hierarchy

The HTTP service lives in ``voxanalyze.service`` and is not imported here.
"""

from __future__ import annotations

# Must be defined before other imports to avoid circular imports
__version__ = "0.1.0"

# ruff: noqa: E402
from .config import PipelineConfig
from .crypto import EnvelopeCipher, generate_key
from .exceptions import (
    AnalysisError,
    ConfigurationError,
    CryptoError,
    ForbiddenError,
    InvalidUploadError,
    MaskingError,
    NotFoundError,
    TranscriptionError,
    UnauthorizedError,
    UpstreamOverloadedError,
    UpstreamQuotaError,
    VoxAnalyzeError,
)
from .masking import PIIMasker, mask_pii
from .models import AnalysisResult, CallRecord, Metric, RecordStatus, Segment, Transcript
from .pipeline import CallRecordPipeline, UploadResult, build_pipeline
from .privacy import SummaryRedactor, mask_with_regex, sanitize_error_message

__all__ = [
    "__version__",
    # Pipeline
    "CallRecordPipeline",
    "UploadResult",
    "build_pipeline",
    # Privacy
    "PIIMasker",
    "mask_pii",
    "mask_with_regex",
    "SummaryRedactor",
    "sanitize_error_message",
    # Crypto
    "EnvelopeCipher",
    "generate_key",
    # Config
    "PipelineConfig",
    # Models
    "Transcript",
    "Segment",
    "AnalysisResult",
    "Metric",
    "CallRecord",
    "RecordStatus",
    # Exceptions
    "VoxAnalyzeError",
    "ConfigurationError",
    "CryptoError",
    "MaskingError",
    "TranscriptionError",
    "AnalysisError",
    "InvalidUploadError",
    "UpstreamQuotaError",
    "UpstreamOverloadedError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
]
