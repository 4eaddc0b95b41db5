"""Tests for the record, transcript and analysis data model."""

from __future__ import annotations

import pytest

from voxanalyze.models import (
    AnalysisResult,
    CallRecord,
    Metric,
    RecordStatus,
    Segment,
    Transcript,
)


def test_segment_accepts_alternate_time_keys() -> None:
    assert Segment.from_dict({"speaker": "A", "text": "x", "start": 1, "end": 2}).end_time == 2.0
    seg = Segment.from_dict({"speaker": "A", "text": "x", "start_time": 1.5})
    assert seg.start_time == 1.5
    assert seg.to_dict() == {"speaker": "A", "text": "x", "startTime": 1.5, "endTime": 0.0}


def test_transcript_with_texts_keeps_shape() -> None:
    transcript = Transcript(
        id="t-1",
        text="a b",
        segments=[Segment("Agentas", "a", 0.0, 1.0), Segment("Klientas", "b", 1.0, 2.0)],
    )
    masked = transcript.with_texts("[NAME] b", ["[NAME]", "b"])

    assert masked.id == "t-1"
    assert masked.text == "[NAME] b"
    assert [s.speaker for s in masked.segments] == ["Agentas", "Klientas"]
    assert masked.segments[0].end_time == 1.0
    assert transcript.segments[0].text == "a"


def test_transcript_with_texts_rejects_length_mismatch() -> None:
    transcript = Transcript(id="t-1", text="a", segments=[Segment("A", "a")])
    with pytest.raises(ValueError, match="Expected 1 segment texts"):
        transcript.with_texts("a", [])


def test_transcript_from_dict_skips_malformed_segments() -> None:
    transcript = Transcript.from_dict({"text": "hi", "segments": [{"text": "hi"}, "junk"]})
    assert transcript.id
    assert transcript.language == "lt"
    assert len(transcript.segments) == 1


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ({"label": "Hold time", "value": 42, "trend": "down"}, ("Hold time", 42, "down")),
        ({"label": "Tone", "value": "calm", "trend": "sideways"}, ("Tone", "calm", "neutral")),
        ({"label": "Flag", "value": True}, ("Flag", "True", "neutral")),
        ({"label": "Empty"}, ("Empty", "", "neutral")),
    ],
)
def test_metric_from_dict(raw: dict, expected: tuple) -> None:
    metric = Metric.from_dict(raw)
    assert (metric.label, metric.value, metric.trend) == expected


def test_analysis_result_serialization() -> None:
    result = AnalysisResult(
        id="a-1",
        sentiment_score=70,
        warnings=["Interrupted customer"],
        metrics=[Metric("Resolution", "yes", "up")],
        summary="Resolved.",
    )
    data = result.to_dict()
    assert data["sentimentScore"] == 70
    assert data["customerSatisfaction"] == 50
    assert data["complianceChecked"] is True
    assert AnalysisResult.from_dict(data) == result


def test_record_status_terminal() -> None:
    assert RecordStatus.COMPLETED.is_terminal
    assert RecordStatus.ERROR.is_terminal
    assert not RecordStatus.ANALYZING.is_terminal
    assert RecordStatus("pending") is RecordStatus.PENDING


def test_call_record_summary() -> None:
    record = CallRecord(
        id="rec-1",
        audio_id="aud-1",
        file_name="call.wav",
        user_id="user-1",
        transcription={"encrypted": True, "data": "..."},
        status=RecordStatus.COMPLETED,
    )
    summary = record.to_summary()

    assert record.is_encrypted
    assert summary["status"] == "completed"
    assert summary["hasTranscription"] is True
    assert summary["hasAnalysis"] is False
    assert summary["encrypted"] is True
    assert "transcription" not in summary


def test_plaintext_record_is_not_encrypted() -> None:
    record = CallRecord(
        id="rec-1", audio_id="a", file_name="f", user_id="u", transcription={"text": "hi"}
    )
    assert not record.is_encrypted
