"""AI-assisted PII masking with deterministic fallback.

The masker asks a hosted model to replace PII in a transcript with bracketed
placeholders. Candidate models are tried one after another, each once and
each under a hard timeout. If every candidate fails the regex masker takes
over, so masking as a whole never raises: a transcript always comes back
masked by one method or the other.

Segment texts are reconciled against the masked full text (``offset``
strategy) or masked by their own model calls (``per_segment`` strategy):

- ``offset`` locates each segment in the original text, maps the span onto
  the masked text through a token alignment of the two, and widens it so no
  placeholder is cut in half. One model call per transcript.
- ``per_segment`` masks each segment separately. Exact, but one model call
  per segment.

Both strategies run the regex masker over their output as a final pass.
"""

from __future__ import annotations

import bisect
import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Literal

from .config import SegmentStrategy
from .exceptions import MaskingError
from .llm_client import ProviderFactory, clean_model_text, extract_response_text
from .models import Transcript
from .privacy import PLACEHOLDER_PATTERN, RegexPIIMasker, sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_MASKING_TIMEOUT_S = 90.0

MASKING_SYSTEM_PROMPT = """You are a data-protection filter for call-centre transcripts.

Replace every occurrence of personal data in the text you receive with the
matching placeholder, exactly as written below:

- first names -> [NAME]
- surnames -> [SURNAME]
- national person codes -> [PERSON_CODE]
- email addresses -> [EMAIL]
- phone numbers -> [PHONE]
- physical addresses -> [ADDRESS]
- payment card numbers -> [CARD_NUMBER]
- bank account numbers and IBANs -> [ACCOUNT_NUMBER]

Rules:
- Return only the masked text. No explanations, no quotes, no markdown.
- Keep everything else exactly as it is: wording, punctuation, line breaks and order.
- Leave existing placeholders untouched.
- The text may be in Lithuanian or any other language; mask it all the same."""

MaskingMethod = Literal["ai", "regex", "none"]


@dataclass
class MaskingOutcome:
    """A masked transcript plus how it was masked."""

    transcript: Transcript
    method: MaskingMethod
    model: str | None = None


# =============================================================================
# Segment reconciliation
# =============================================================================

_TOKEN_PATTERN = re.compile(r"\S+|\s+")


def _tokenize(text: str) -> tuple[list[int], list[str]]:
    starts: list[int] = []
    tokens: list[str] = []
    for m in _TOKEN_PATTERN.finditer(text):
        starts.append(m.start())
        tokens.append(m.group(0))
    return starts, tokens


class SpanMapper:
    """Map character spans of an original text onto its masked counterpart.

    Both texts are split into word and whitespace tokens and aligned with
    ``difflib.SequenceMatcher``. Positions inside unchanged tokens map
    exactly; positions inside replaced tokens map to the whole replacement.
    """

    def __init__(self, original: str, masked: str) -> None:
        self._orig_starts, orig_tokens = _tokenize(original)
        self._masked_starts, masked_tokens = _tokenize(masked)
        self._masked_len = len(masked)
        self._opcodes = SequenceMatcher(
            None, orig_tokens, masked_tokens, autojunk=False
        ).get_opcodes()
        self._opcode_starts = [op[1] for op in self._opcodes]

    def _masked_offset(self, token_index: int) -> int:
        if token_index < len(self._masked_starts):
            return self._masked_starts[token_index]
        return self._masked_len

    def _opcode_for(self, token_index: int) -> tuple[str, int, int, int, int]:
        pos = bisect.bisect_right(self._opcode_starts, token_index) - 1
        # Skip zero-width inserts that share a start index with the real block
        while pos < len(self._opcodes) - 1 and self._opcodes[pos][2] <= token_index:
            pos += 1
        return self._opcodes[pos]

    def map_start(self, pos: int) -> int:
        if not self._orig_starts or not self._opcodes:
            return 0
        i = max(bisect.bisect_right(self._orig_starts, pos) - 1, 0)
        tag, i1, _i2, j1, _j2 = self._opcode_for(i)
        if tag == "equal":
            return self._masked_offset(j1 + (i - i1)) + (pos - self._orig_starts[i])
        return self._masked_offset(j1)

    def map_end(self, pos: int) -> int:
        if not self._orig_starts or not self._opcodes or pos <= 0:
            return 0
        i = max(bisect.bisect_right(self._orig_starts, pos - 1) - 1, 0)
        tag, i1, _i2, j1, j2 = self._opcode_for(i)
        if tag == "equal":
            return self._masked_offset(j1 + (i - i1)) + (pos - self._orig_starts[i])
        return self._masked_offset(j2)

    def map_span(self, start: int, end: int) -> tuple[int, int]:
        mapped_start = self.map_start(start)
        return mapped_start, max(mapped_start, self.map_end(end))


def widen_to_placeholders(masked: str, start: int, end: int) -> tuple[int, int]:
    """Extend ``[start, end)`` so it does not cut through a placeholder."""
    for m in PLACEHOLDER_PATTERN.finditer(masked):
        if m.start() < start < m.end():
            start = m.start()
        if m.start() < end < m.end():
            end = m.end()
        if m.start() >= end:
            break
    return start, end


def reconcile_segments_by_offset(
    original: str,
    masked: str,
    segment_texts: Sequence[str],
    regex_masker: RegexPIIMasker,
) -> list[str]:
    """Derive masked segment texts from the masked full text.

    Each segment is searched for in ``original``, first after the previous
    match and then from the beginning. Segments that cannot be located are
    masked with ``regex_masker`` on their own.
    """
    mapper = SpanMapper(original, masked)
    cursor = 0
    results: list[str] = []

    for seg_text in segment_texts:
        if not seg_text.strip():
            results.append(seg_text)
            continue

        idx = original.find(seg_text, cursor)
        if idx < 0:
            idx = original.find(seg_text)
        if idx < 0:
            results.append(regex_masker.mask(seg_text))
            continue
        cursor = idx + len(seg_text)

        start, end = mapper.map_span(idx, idx + len(seg_text))
        start, end = widen_to_placeholders(masked, start, end)
        piece = masked[start:end]
        if seg_text == seg_text.strip():
            piece = piece.strip()

        results.append(regex_masker.mask(piece) if piece else regex_masker.mask(seg_text))

    return results


# =============================================================================
# Masker
# =============================================================================


class PIIMasker:
    """Mask transcripts with hosted models, falling back to regex rules.

    Args:
        provider_factory: Builds a provider for a model name. None disables
            AI masking and every transcript is regex-masked.
        models: Candidate model names, tried in order.
        timeout_s: Per-call timeout in seconds.
        segment_strategy: ``"offset"`` or ``"per_segment"``.
        regex_masker: Rule-based masker used as fallback and final pass.
    """

    def __init__(
        self,
        provider_factory: ProviderFactory | None,
        models: Sequence[str] = (),
        timeout_s: float = DEFAULT_MASKING_TIMEOUT_S,
        segment_strategy: SegmentStrategy = "offset",
        regex_masker: RegexPIIMasker | None = None,
    ) -> None:
        self.provider_factory = provider_factory
        self.models = tuple(models)
        self.timeout_s = timeout_s
        self.segment_strategy = segment_strategy
        self.regex_masker = regex_masker or RegexPIIMasker()

    @property
    def ai_enabled(self) -> bool:
        return self.provider_factory is not None and bool(self.models)

    async def mask(self, transcript: Transcript) -> MaskingOutcome:
        """Mask ``transcript``. Never raises for a well-formed transcript."""
        if not transcript.text.strip() and not any(s.text.strip() for s in transcript.segments):
            return MaskingOutcome(transcript, "none")

        if not self.ai_enabled:
            logger.debug("AI masking disabled; using regex rules")
            return self._fallback(transcript)

        try:
            masked_text, model = await self._mask_text(transcript.text, transcript.id)
            segment_texts = await self._mask_segments(transcript, masked_text, model)
            masked = transcript.with_texts(self.regex_masker.mask(masked_text), segment_texts)
        except MaskingError as e:
            logger.warning(
                "AI masking failed, falling back to regex rules: %s",
                sanitize_error_message(e),
                extra={"transcript_id": transcript.id},
            )
            return self._fallback(transcript)
        except Exception:
            logger.exception(
                "Segment reconciliation failed, falling back to regex rules",
                extra={"transcript_id": transcript.id},
            )
            return self._fallback(transcript)

        return MaskingOutcome(masked, "ai", model)

    async def _call_model(self, model: str, text: str) -> str:
        """One masking call. Raises MaskingError on an empty result or without a provider."""
        if self.provider_factory is None:
            raise MaskingError("no masking model provider configured")
        provider = self.provider_factory(model)
        response = await provider.complete_with_timeout(MASKING_SYSTEM_PROMPT, text, self.timeout_s)
        masked = clean_model_text(extract_response_text(response))
        if not masked:
            raise MaskingError(f"empty masking response from {model}")
        return masked

    async def _mask_text(self, text: str, transcript_id: str) -> tuple[str, str]:
        """Try each candidate model once; return the first usable result."""
        if not text.strip():
            raise MaskingError("transcript text is empty")

        for attempt, model in enumerate(self.models, start=1):
            start_time = time.time()
            try:
                masked = await self._call_model(model, text)
            except TimeoutError:
                logger.warning(
                    "Masking model %s timed out after %.0fs (attempt %d/%d)",
                    model,
                    self.timeout_s,
                    attempt,
                    len(self.models),
                    extra={"transcript_id": transcript_id, "model": model},
                )
                continue
            except Exception as e:
                logger.warning(
                    "Masking model %s failed (attempt %d/%d): %s",
                    model,
                    attempt,
                    len(self.models),
                    sanitize_error_message(e),
                    extra={"transcript_id": transcript_id, "model": model},
                )
                continue

            logger.info(
                "Transcript masked with %s in %.0f ms",
                model,
                (time.time() - start_time) * 1000,
                extra={"transcript_id": transcript_id, "model": model},
            )
            return masked, model

        raise MaskingError(f"all {len(self.models)} candidate masking models failed")

    async def _mask_segments(self, transcript: Transcript, masked_text: str, model: str) -> list[str]:
        segment_texts = [seg.text for seg in transcript.segments]
        if self.segment_strategy == "per_segment":
            return [await self._mask_one_segment(t, model, transcript.id) for t in segment_texts]
        return reconcile_segments_by_offset(
            transcript.text, masked_text, segment_texts, self.regex_masker
        )

    async def _mask_one_segment(self, text: str, model: str, transcript_id: str) -> str:
        if not text.strip():
            return text
        try:
            masked = await self._call_model(model, text)
        except Exception as e:
            logger.debug(
                "Segment masking with %s failed, using regex rules: %s",
                model,
                sanitize_error_message(e),
                extra={"transcript_id": transcript_id, "model": model},
            )
            return self.regex_masker.mask(text)
        return self.regex_masker.mask(masked)

    def _fallback(self, transcript: Transcript) -> MaskingOutcome:
        try:
            return MaskingOutcome(self.regex_masker.mask_transcript(transcript), "regex")
        except Exception:
            logger.exception(
                "Regex masking failed; transcript left unmasked",
                extra={"transcript_id": transcript.id},
            )
            return MaskingOutcome(transcript, "none")


async def mask_pii(transcript: Transcript, masker: PIIMasker | None = None) -> Transcript:
    """Mask PII in ``transcript``.

    Without a configured ``masker`` only the regex rules are applied.
    """
    masker = masker or PIIMasker(provider_factory=None)
    outcome = await masker.mask(transcript)
    return outcome.transcript
