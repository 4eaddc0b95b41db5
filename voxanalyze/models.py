"""Core data model for call records, transcripts and analysis results.

Serialized field names follow the wire format shared with stored records
(``startTime``/``endTime`` on segments, camelCase analysis scores), while the
Python attributes use snake_case.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

PLACEHOLDER_TOKENS: tuple[str, ...] = (
    "[NAME]",
    "[SURNAME]",
    "[PERSON_CODE]",
    "[EMAIL]",
    "[PHONE]",
    "[ADDRESS]",
    "[CARD_NUMBER]",
    "[ACCOUNT_NUMBER]",
)

DEFAULT_SCORE = 50

Trend = Literal["up", "down", "neutral"]


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class RecordStatus(str, Enum):
    """Processing state of a call record."""

    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordStatus.COMPLETED, RecordStatus.ERROR)


@dataclass
class Segment:
    """A contiguous span of one speaker's speech."""

    speaker: str
    text: str
    start_time: float = 0.0
    end_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "speaker": self.speaker,
            "text": self.text,
            "startTime": self.start_time,
            "endTime": self.end_time,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Segment:
        return cls(
            speaker=str(d.get("speaker") or ""),
            text=str(d.get("text") or ""),
            start_time=float(d.get("startTime", d.get("start_time", d.get("start", 0.0))) or 0.0),
            end_time=float(d.get("endTime", d.get("end_time", d.get("end", 0.0))) or 0.0),
        )


@dataclass
class Transcript:
    """Full transcript of a call.

    ``text`` is the whole transcript; ``segments`` split it by speaker. The two
    are produced together by the transcriber and masked together, so a masked
    transcript keeps the same shape and only text content changes.
    """

    id: str
    text: str
    language: str = "lt"
    segments: list[Segment] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored and wire representation."""
        return {
            "id": self.id,
            "text": self.text,
            "language": self.language,
            "segments": [seg.to_dict() for seg in self.segments],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Transcript:
        segments = [Segment.from_dict(s) for s in d.get("segments") or [] if isinstance(s, dict)]
        return cls(
            id=str(d.get("id") or new_id()),
            text=str(d.get("text") or ""),
            language=str(d.get("language") or "lt"),
            segments=segments,
            timestamp=str(d.get("timestamp") or utc_now_iso()),
        )

    def with_texts(self, text: str, segment_texts: list[str]) -> Transcript:
        """Return a copy with ``text`` and segment texts replaced, all else unchanged."""
        if len(segment_texts) != len(self.segments):
            raise ValueError(
                f"Expected {len(self.segments)} segment texts, got {len(segment_texts)}"
            )
        segments = [
            replace(seg, text=seg_text)
            for seg, seg_text in zip(self.segments, segment_texts, strict=True)
        ]
        return replace(self, text=text, segments=segments)


@dataclass
class Metric:
    """A single labelled quality metric shown next to the analysis."""

    label: str
    value: float | str
    trend: Trend = "neutral"

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "value": self.value, "trend": self.trend}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Metric:
        trend = d.get("trend")
        if trend not in ("up", "down", "neutral"):
            trend = "neutral"
        value = d.get("value")
        if isinstance(value, bool) or not isinstance(value, int | float):
            value = "" if value is None else str(value)
        return cls(label=str(d.get("label") or ""), value=value, trend=trend)


@dataclass
class AnalysisResult:
    """Scored quality analysis of one call."""

    id: str
    sentiment_score: int = DEFAULT_SCORE
    customer_satisfaction: int = DEFAULT_SCORE
    agent_performance: int = DEFAULT_SCORE
    warnings: list[str] = field(default_factory=list)
    metrics: list[Metric] = field(default_factory=list)
    summary: str = ""
    compliance_checked: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sentimentScore": self.sentiment_score,
            "customerSatisfaction": self.customer_satisfaction,
            "agentPerformance": self.agent_performance,
            "warnings": list(self.warnings),
            "metrics": [m.to_dict() for m in self.metrics],
            "summary": self.summary,
            "complianceChecked": self.compliance_checked,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AnalysisResult:
        return cls(
            id=str(d.get("id") or new_id()),
            sentiment_score=int(d.get("sentimentScore", DEFAULT_SCORE)),
            customer_satisfaction=int(d.get("customerSatisfaction", DEFAULT_SCORE)),
            agent_performance=int(d.get("agentPerformance", DEFAULT_SCORE)),
            warnings=[str(w) for w in d.get("warnings") or []],
            metrics=[Metric.from_dict(m) for m in d.get("metrics") or [] if isinstance(m, dict)],
            summary=str(d.get("summary") or ""),
            compliance_checked=bool(d.get("complianceChecked", True)),
        )


@dataclass
class CallRecord:
    """Persisted record of one uploaded call.

    ``transcription`` holds the stored shape of the masked transcript: either an
    encryption envelope (``{"encrypted": True, "data": ...}``) or the plaintext
    transcript dict. Readers must handle both.
    """

    id: str
    audio_id: str
    file_name: str
    user_id: str
    file_format: str = ""
    file_size: int = 0
    status: RecordStatus = RecordStatus.PENDING
    transcription: dict[str, Any] | None = None
    analysis: dict[str, Any] | None = None
    error_message: str | None = None
    storage_path: str | None = None
    masking_method: str | None = None
    content_hash: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def is_encrypted(self) -> bool:
        return bool(self.transcription and self.transcription.get("encrypted") is True)

    def to_summary(self) -> dict[str, Any]:
        """Listing view: metadata only, no transcript or analysis payloads."""
        return {
            "id": self.id,
            "audioId": self.audio_id,
            "fileName": self.file_name,
            "fileFormat": self.file_format,
            "fileSize": self.file_size,
            "status": self.status.value,
            "hasTranscription": self.transcription is not None,
            "hasAnalysis": self.analysis is not None,
            "encrypted": self.is_encrypted,
            "maskingMethod": self.masking_method,
            "errorMessage": self.error_message,
            "userId": self.user_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
