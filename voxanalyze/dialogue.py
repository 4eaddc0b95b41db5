"""Repair transcripts into an alternating two-party dialogue.

Speech-to-text output for call recordings frequently arrives as one long
segment, as many segments with no or identical speaker labels, or with
segments that cover only part of the recognised text. ``DialogueRepairer``
normalises such output before masking and analysis:

- empty segments are dropped
- a missing, single long, or single-speaker segmentation is re-split into
  sentences grouped into alternating agent/customer turns
- unlabeled segments keep their timings and get alternating labels
- text missing from the segments is appended to the last segment
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace

from .models import Segment, Transcript

logger = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"[.!?]+\s+")


@dataclass(frozen=True)
class DialogueCues:
    """Sentence-opening patterns hinting at a change of speaker."""

    greeting: re.Pattern[str]
    response: re.Pattern[str]
    customer_opening: re.Pattern[str]


LITHUANIAN_CUES = DialogueCues(
    greeting=re.compile(r"^(Labas|Sveiki|Sveikas|Ačiū|Dėkoju|Prašau|Taip|Ne)\b", re.IGNORECASE),
    response=re.compile(r"^(Aha|Taip|Ne|Gerai|Supratau|Aišku|Okei|Drąsiai)\b", re.IGNORECASE),
    customer_opening=re.compile(
        r"^(Norėčiau|Galėčiau|Aš|Man|Mano|Pas|Rytoj|Šiandien)\b", re.IGNORECASE
    ),
)


class DialogueRepairer:
    """Normalise transcript segments into an agent/customer dialogue.

    Args:
        labels: Agent and customer speaker labels, in that order.
        cues: Sentence-opening patterns used to guess speaker changes.
        max_sentences: Sentences per turn before a switch is forced.
        max_chars: Characters per turn before a switch is forced.
        seconds_per_char: Speaking-rate estimate for synthesised timings.
        long_segment_chars: A lone segment longer than this is re-split.
        incomplete_ratio: Full text longer than this multiple of the
            segment text counts as incomplete segmentation.
    """

    def __init__(
        self,
        labels: tuple[str, str] = ("Agentas", "Klientas"),
        cues: DialogueCues = LITHUANIAN_CUES,
        max_sentences: int = 3,
        max_chars: int = 250,
        seconds_per_char: float = 0.1,
        long_segment_chars: int = 200,
        incomplete_ratio: float = 1.2,
    ) -> None:
        self.agent, self.customer = labels
        self.cues = cues
        self.max_sentences = max_sentences
        self.max_chars = max_chars
        self.seconds_per_char = seconds_per_char
        self.long_segment_chars = long_segment_chars
        self.incomplete_ratio = incomplete_ratio

    def _other(self, speaker: str) -> str:
        return self.customer if speaker == self.agent else self.agent

    def _alternate(self, segments: list[Segment]) -> list[Segment]:
        labels = (self.agent, self.customer)
        return [replace(seg, speaker=labels[idx % 2]) for idx, seg in enumerate(segments)]

    @staticmethod
    def split_sentences(text: str) -> list[str]:
        """Split on sentence-ending punctuation.

        Unpunctuated text longer than 100 characters is cut into word-aligned
        chunks of roughly a tenth of its length (at least 100 characters).
        """
        sentences: list[str] = []
        last = 0
        for m in _SENTENCE_END.finditer(text):
            sentence = text[last : m.end()].strip()
            if sentence:
                sentences.append(sentence)
            last = m.end()
        if remaining := text[last:].strip():
            sentences.append(remaining)

        if len(sentences) == 1 and len(text) > 100:
            chunk_size = max(100, len(text) // 10)
            chunks: list[str] = []
            words: list[str] = []
            for word in text.split():
                words.append(word)
                if sum(len(w) + 1 for w in words) >= chunk_size:
                    chunks.append(" ".join(words))
                    words = []
            if words:
                chunks.append(" ".join(words))
            sentences = chunks
        return sentences

    def _should_switch(self, index: int, sentence: str, speaker: str) -> bool:
        is_question = "?" in sentence
        is_greeting = bool(self.cues.greeting.match(sentence))
        is_response = bool(self.cues.response.match(sentence))
        is_customer = bool(self.cues.customer_opening.match(sentence))

        if index == 0:
            return False
        if speaker == self.agent and (is_question or is_response or is_customer):
            return True
        if speaker == self.customer and is_response:
            return True
        return is_greeting or is_response

    def split_into_dialogue(self, text: str) -> list[Segment]:
        """Group the sentences of ``text`` into alternating speaker turns."""
        if not text.strip():
            return []

        segments: list[Segment] = []
        speaker = self.agent
        current: list[str] = []
        current_len = 0
        start_time = 0.0

        def flush() -> None:
            nonlocal start_time
            body = " ".join(current).strip()
            if not body:
                return
            end_time = start_time + len(body) * self.seconds_per_char
            segments.append(Segment(speaker, body, round(start_time, 2), round(end_time, 2)))
            start_time = end_time

        for index, sentence in enumerate(self.split_sentences(text)):
            force = len(current) >= self.max_sentences or (current_len > 150 and len(sentence) > 50)
            too_long = current_len > 0 and current_len + len(sentence) > self.max_chars
            if current and (self._should_switch(index, sentence, speaker) or force or too_long):
                flush()
                speaker = self._other(speaker)
                current, current_len = [], 0
            current.append(sentence)
            current_len += len(sentence) + (1 if current_len else 0)
        flush()

        if len(segments) > 1 and len({s.speaker for s in segments}) == 1:
            segments = self._alternate(segments)
        return segments

    def repair(self, transcript: Transcript) -> Transcript:
        """Return ``transcript`` with repaired segments."""
        segments = [seg for seg in transcript.segments if seg.text.strip()]
        full_text = transcript.text.strip()
        speakers = {seg.speaker.strip().lower() for seg in segments if seg.speaker.strip()}

        no_segments = not segments and bool(full_text)
        single_long = len(segments) == 1 and len(segments[0].text) > self.long_segment_chars
        same_speaker = len(segments) > 1 and len(speakers) == 1
        unlabeled = len(segments) > 1 and not speakers

        if no_segments or single_long or same_speaker:
            if no_segments:
                source = full_text
            elif single_long:
                source = segments[0].text
            else:
                source = " ".join(seg.text for seg in segments).strip()
            resplit = self.split_into_dialogue(source)
            logger.info(
                "Re-split transcript into %d dialogue segments",
                len(resplit),
                extra={
                    "transcript_id": transcript.id,
                    "no_segments": no_segments,
                    "single_long": single_long,
                    "same_speaker": same_speaker,
                },
            )
            segments = resplit or self._alternate(segments)
        elif unlabeled:
            segments = self._alternate(segments)
        elif len(segments) == 1 and not speakers:
            segments = [replace(segments[0], speaker=self.agent)]

        segment_text = " ".join(seg.text for seg in segments)
        full_text = full_text or segment_text
        if segments and len(full_text) > len(segment_text) * self.incomplete_ratio:
            missing = full_text[len(segment_text) :].strip()
            if missing:
                last = segments[-1]
                segments[-1] = replace(last, text=f"{last.text} {missing}")
                logger.info(
                    "Appended %d missing characters to the last segment",
                    len(missing),
                    extra={"transcript_id": transcript.id},
                )

        return replace(transcript, text=full_text, segments=segments)
