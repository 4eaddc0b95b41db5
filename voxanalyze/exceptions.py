"""Custom exception classes for voxanalyze."""

from __future__ import annotations


class VoxAnalyzeError(Exception):
    """Base error for this library.

    Errors raised while a call record is being processed carry the record id
    so callers can point users at the partial artifacts that were persisted.
    """

    def __init__(self, message: str = "", *, record_id: str | None = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class ConfigurationError(VoxAnalyzeError):
    """Raised when configuration is invalid."""


class CryptoError(VoxAnalyzeError):
    """Raised when a payload cannot be sealed or opened.

    Covers malformed key material, undecodable envelopes and authentication
    failures. The message never includes key material or plaintext.
    """


class MaskingError(VoxAnalyzeError):
    """Raised when no candidate model produced a usable masked transcript."""


class TranscriptionError(VoxAnalyzeError):
    """Raised when transcription fails."""


class AnalysisError(VoxAnalyzeError):
    """Raised when call analysis fails for a reason other than upstream capacity."""


class InvalidUploadError(VoxAnalyzeError):
    """Raised when an uploaded file is empty, too large or of an unsupported type."""

    def __init__(self, message: str, *, too_large: bool = False) -> None:
        super().__init__(message)
        self.too_large = too_large


class UpstreamError(VoxAnalyzeError):
    """Base for failures reported by an external model service."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        model: str | None = None,
        record_id: str | None = None,
    ) -> None:
        super().__init__(message, record_id=record_id)
        self.status = status
        self.model = model


class UpstreamQuotaError(UpstreamError):
    """Raised when the upstream model service rejects a call for quota or rate reasons."""


class UpstreamOverloadedError(UpstreamError):
    """Raised when the upstream model service is temporarily overloaded."""


class UnauthorizedError(VoxAnalyzeError):
    """Raised when a request carries no valid principal."""


class ForbiddenError(VoxAnalyzeError):
    """Raised when a principal may not access a record."""


class NotFoundError(VoxAnalyzeError):
    """Raised when a record or one of its artifacts does not exist."""
