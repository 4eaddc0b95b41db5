"""Tests for AI-assisted PII masking, fallback and segment reconciliation."""

from __future__ import annotations

import asyncio

import pytest
from conftest import fake_mask, make_transcript

from voxanalyze.exceptions import MaskingError, UpstreamQuotaError
from voxanalyze.llm_client import MockScript
from voxanalyze.masking import (
    MASKING_SYSTEM_PROMPT,
    PIIMasker,
    SpanMapper,
    mask_pii,
    reconcile_segments_by_offset,
    widen_to_placeholders,
)
from voxanalyze.models import Transcript
from voxanalyze.privacy import RegexPIIMasker, mask_transcript_with_regex, placeholder_categories


def segment_categories(transcript: Transcript) -> set:
    found: set = set()
    for seg in transcript.segments:
        found |= placeholder_categories(seg.text)
    return found


# =============================================================================
# Span mapping
# =============================================================================


class TestSpanMapper:
    """Tests for mapping original offsets onto masked text."""

    def test_identity(self) -> None:
        text = "Labas, kaip sekasi?"
        mapper = SpanMapper(text, text)
        assert mapper.map_span(0, len(text)) == (0, len(text))
        assert mapper.map_span(7, 11) == (7, 11)

    def test_span_after_replacement_shifts(self) -> None:
        original = "čia Jonas iš banko"
        masked = "čia [NAME] iš banko"
        start = original.index("banko")
        mapped = SpanMapper(original, masked).map_span(start, start + 5)
        assert masked[mapped[0] : mapped[1]] == "banko"

    def test_span_covering_replacement_covers_placeholder(self) -> None:
        original = "skambinkite +370 612 34567 rytoj"
        masked = "skambinkite [PHONE] rytoj"
        start = original.index("+370")
        end = start + len("+370 612 34567")
        mapped = SpanMapper(original, masked).map_span(start, end)
        assert masked[mapped[0] : mapped[1]] == "[PHONE]"

    def test_widen_to_placeholders(self) -> None:
        masked = "labas [NAME] ir [PHONE]"
        start = masked.index("NAME")
        end = masked.index("HONE")
        assert widen_to_placeholders(masked, start, end) == (
            masked.index("[NAME]"),
            len(masked),
        )


class TestReconcileSegmentsByOffset:
    """Tests for deriving masked segments from the masked full text."""

    def test_segments_follow_masked_text(self) -> None:
        transcript = make_transcript()
        masked_text = fake_mask(transcript.text)
        segments = reconcile_segments_by_offset(
            transcript.text,
            masked_text,
            [s.text for s in transcript.segments],
            RegexPIIMasker(),
        )
        assert segments == [fake_mask(s.text) for s in transcript.segments]

    def test_unlocatable_segment_is_regex_masked(self) -> None:
        segments = reconcile_segments_by_offset(
            "visai kitas tekstas",
            "visai kitas tekstas",
            ["skambinkite +370 612 34567"],
            RegexPIIMasker(),
        )
        assert segments == ["skambinkite [PHONE]"]

    def test_repeated_segments_map_in_order(self) -> None:
        original = "Taip. Jonas. Taip. Petras."
        masked = "Taip. [NAME]. Taip. [NAME]."
        segments = reconcile_segments_by_offset(
            original, masked, ["Taip.", "Jonas.", "Taip.", "Petras."], RegexPIIMasker()
        )
        assert segments == ["Taip.", "[NAME].", "Taip.", "[NAME]."]

    def test_blank_segment_is_kept(self) -> None:
        segments = reconcile_segments_by_offset("a b", "a b", ["  "], RegexPIIMasker())
        assert segments == ["  "]


# =============================================================================
# PIIMasker
# =============================================================================


class TestPIIMasker:
    """Tests for the AI masker and its fallback behaviour."""

    @pytest.mark.asyncio
    async def test_ai_masking_masks_text_and_segments(self) -> None:
        script = MockScript(default=lambda system, user: fake_mask(user))
        masker = PIIMasker(script.factory(), models=("mask-a",))
        transcript = make_transcript()

        outcome = await masker.mask(transcript)

        assert outcome.method == "ai"
        assert outcome.model == "mask-a"
        assert outcome.transcript.text == fake_mask(transcript.text)
        assert [s.text for s in outcome.transcript.segments] == [
            fake_mask(s.text) for s in transcript.segments
        ]
        assert script.calls[0].system == MASKING_SYSTEM_PROMPT
        assert script.calls[0].user == transcript.text
        assert len(script.calls) == 1

    @pytest.mark.asyncio
    async def test_shape_is_preserved(self) -> None:
        script = MockScript(default=lambda system, user: fake_mask(user))
        transcript = make_transcript()
        outcome = await PIIMasker(script.factory(), models=("mask-a",)).mask(transcript)

        masked = outcome.transcript
        assert masked.id == transcript.id
        assert masked.language == transcript.language
        assert masked.timestamp == transcript.timestamp
        assert [(s.speaker, s.start_time, s.end_time) for s in masked.segments] == [
            (s.speaker, s.start_time, s.end_time) for s in transcript.segments
        ]

    @pytest.mark.asyncio
    async def test_segment_categories_match_text(self) -> None:
        script = MockScript(default=lambda system, user: fake_mask(user))
        outcome = await PIIMasker(script.factory(), models=("mask-a",)).mask(make_transcript())
        masked = outcome.transcript
        assert placeholder_categories(masked.text) == segment_categories(masked)

    @pytest.mark.asyncio
    async def test_regex_pass_runs_over_model_output(self) -> None:
        # Model that forgets to mask the phone number
        script = MockScript(
            default=lambda system, user: user.replace("jonas@example.com", "[EMAIL]")
        )
        outcome = await PIIMasker(script.factory(), models=("mask-a",)).mask(make_transcript())
        assert outcome.method == "ai"
        assert "+370 612 34567" not in outcome.transcript.text
        assert "[PHONE]" in outcome.transcript.segments[1].text

    @pytest.mark.asyncio
    async def test_model_output_is_cleaned(self) -> None:
        script = MockScript(default=lambda system, user: f"```\n{fake_mask(user)}\n```")
        transcript = make_transcript()
        outcome = await PIIMasker(script.factory(), models=("mask-a",)).mask(transcript)
        assert outcome.transcript.text == fake_mask(transcript.text)

    @pytest.mark.asyncio
    async def test_next_model_after_failure(self) -> None:
        script = MockScript(
            responses={"mask-a": [RuntimeError("boom")]},
            default=lambda system, user: fake_mask(user),
        )
        outcome = await PIIMasker(script.factory(), models=("mask-a", "mask-b")).mask(
            make_transcript()
        )
        assert outcome.method == "ai"
        assert outcome.model == "mask-b"
        assert script.models_called() == ["mask-a", "mask-b"]

    @pytest.mark.asyncio
    async def test_next_model_after_timeout(self) -> None:
        script = MockScript(
            default=lambda system, user: fake_mask(user),
            delay_s={"mask-a": 1.0},
        )
        masker = PIIMasker(script.factory(), models=("mask-a", "mask-b"), timeout_s=0.05)
        outcome = await masker.mask(make_transcript())
        assert outcome.model == "mask-b"

    @pytest.mark.asyncio
    async def test_empty_model_reply_counts_as_failure(self) -> None:
        script = MockScript(responses={"mask-a": ["   "]}, default=lambda s, u: fake_mask(u))
        outcome = await PIIMasker(script.factory(), models=("mask-a", "mask-b")).mask(
            make_transcript()
        )
        assert outcome.model == "mask-b"

    @pytest.mark.asyncio
    async def test_each_model_tried_once_then_regex(self) -> None:
        script = MockScript(default=UpstreamQuotaError("quota exceeded"))
        masker = PIIMasker(script.factory(), models=("mask-a", "mask-b"))
        transcript = make_transcript()

        outcome = await masker.mask(transcript)

        assert outcome.method == "regex"
        assert outcome.model is None
        assert script.models_called() == ["mask-a", "mask-b"]
        assert outcome.transcript == mask_transcript_with_regex(transcript)

    @pytest.mark.asyncio
    async def test_ai_disabled_uses_regex(self) -> None:
        transcript = make_transcript()
        outcome = await PIIMasker(None).mask(transcript)
        assert outcome.method == "regex"
        assert outcome.transcript == mask_transcript_with_regex(transcript)

    @pytest.mark.asyncio
    async def test_model_call_without_provider_raises_masking_error(self) -> None:
        masker = PIIMasker(None, models=("mask-a",))
        with pytest.raises(MaskingError, match="no masking model provider"):
            await masker._call_model("mask-a", "Labas, čia Jonas")

    @pytest.mark.asyncio
    async def test_empty_transcript_is_returned_unchanged(self) -> None:
        script = MockScript(default="should not be called")
        transcript = make_transcript([])
        outcome = await PIIMasker(script.factory(), models=("mask-a",)).mask(transcript)
        assert outcome.method == "none"
        assert outcome.transcript is transcript
        assert script.calls == []

    @pytest.mark.asyncio
    async def test_per_segment_strategy(self) -> None:
        script = MockScript(default=lambda system, user: fake_mask(user))
        transcript = make_transcript()
        masker = PIIMasker(script.factory(), models=("mask-a",), segment_strategy="per_segment")

        outcome = await masker.mask(transcript)

        assert outcome.method == "ai"
        assert [s.text for s in outcome.transcript.segments] == [
            fake_mask(s.text) for s in transcript.segments
        ]
        # one call for the full text plus one per segment
        assert len(script.calls) == 1 + len(transcript.segments)

    @pytest.mark.asyncio
    async def test_per_segment_failure_falls_back_per_segment(self) -> None:
        replies = iter([fake_mask(make_transcript().text)])

        def reply(system: str, user: str) -> str:
            try:
                return next(replies)
            except StopIteration:
                raise RuntimeError("segment call failed") from None

        script = MockScript(default=reply)
        masker = PIIMasker(script.factory(), models=("mask-a",), segment_strategy="per_segment")
        outcome = await masker.mask(make_transcript())

        assert outcome.method == "ai"
        # segments fall back to regex: names stay, numeric PII is masked
        assert outcome.transcript.segments[0].text == "Labas, čia Jonas iš banko. Kuo galiu padėti?"
        assert "[EMAIL]" in outcome.transcript.segments[1].text

    @pytest.mark.asyncio
    async def test_concurrent_masking(self) -> None:
        script = MockScript(default=lambda system, user: fake_mask(user))
        masker = PIIMasker(script.factory(), models=("mask-a",))
        outcomes = await asyncio.gather(*(masker.mask(make_transcript()) for _ in range(5)))
        assert {o.transcript.text for o in outcomes} == {fake_mask(make_transcript().text)}


@pytest.mark.asyncio
async def test_mask_pii_without_masker_uses_regex() -> None:
    masked = await mask_pii(make_transcript())
    assert "[EMAIL]" in masked.text
