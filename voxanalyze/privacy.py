"""Deterministic PII masking and summary redaction.

This module holds the pattern-based half of the privacy layer:

- RegexPIIMasker / mask_with_regex: ordered regex rules that replace PII in
  transcript text with bracketed placeholders. This is the safety net used
  whenever AI-assisted masking is unavailable.
- SummaryRedactor: the redaction pass applied to every generated summary,
  with locale-specific replacement tokens.
- sanitize_error_message: scrub and truncate error text before it is logged
  or persisted.

Example usage:
    from voxanalyze.privacy import mask_with_regex, SummaryRedactor

    mask_with_regex("Rašykite jonas@example.com")   # "Rašykite [EMAIL]"
    SummaryRedactor().redact(summary)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import Transcript

logger = logging.getLogger(__name__)


# =============================================================================
# PII Types
# =============================================================================


class PIIType(str, Enum):
    """Closed set of PII categories recognised by the masking layer."""

    NAME = "NAME"
    SURNAME = "SURNAME"
    PERSON_CODE = "PERSON_CODE"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    ADDRESS = "ADDRESS"
    CARD_NUMBER = "CARD_NUMBER"
    ACCOUNT_NUMBER = "ACCOUNT_NUMBER"

    @property
    def placeholder(self) -> str:
        return f"[{self.value}]"


PLACEHOLDERS: dict[PIIType, str] = {pii_type: pii_type.placeholder for pii_type in PIIType}

# Matches any placeholder emitted by the masker (used to avoid cutting one in half)
PLACEHOLDER_PATTERN = re.compile(
    r"\[(?:" + "|".join(re.escape(t.value) for t in PIIType) + r")\]"
)


@dataclass
class PIIMatch:
    """A single PII span found in text.

    Attributes:
        type: The PII category.
        start: Start character index in the scanned text.
        end: End character index (exclusive).
        value: The matched text.
    """

    type: PIIType
    start: int
    end: int
    value: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "start": self.start, "end": self.end}


@dataclass(frozen=True)
class RegexRule:
    """One masking rule: a PII category and the patterns that detect it."""

    pii_type: PIIType
    patterns: tuple[re.Pattern[str], ...]


# =============================================================================
# Regex Masker
# =============================================================================

# Numeric rules anchor on word boundaries so each one consumes whole digit
# runs only. Placeholders contain no digits and no "@", so no rule matches a
# placeholder itself.
_EMAIL_PATTERNS = (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),)

_PHONE_PATTERNS = (
    # +370 612 34567, +37061234567, +1 (555) 123-4567
    re.compile(r"(?<![\w+])\+\d{1,3}(?:[ .-]?\(\d{1,4}\))?(?:[ .-]?\d{2,5}){1,4}\b"),
    # (8 5) 212 3456, (5) 212 3456
    re.compile(r"(?<!\w)\(\d{1,4}(?: \d{1,3})?\)[ .-]?\d{2,4}(?:[ .-]?\d{2,5}){1,2}\b"),
    # 8 612 34567, 8-612-34567
    re.compile(r"\b8[ -]\d{2,3}[ -]?\d{3,5}\b"),
    # 555-123-4567
    re.compile(r"\b\d{3}[ .-]\d{3}[ .-]\d{4}\b"),
    # 612 34567
    re.compile(r"\b6\d{2}[ -]\d{5}\b"),
    # bare 8-10 digit runs
    re.compile(r"\b\d{8,10}\b"),
)

_PERSON_CODE_PATTERNS = (re.compile(r"\b\d{6}-?\d{5}\b"),)

_CARD_PATTERNS = (
    # grouped digits directly after an IBAN country/check prefix belong to the account
    re.compile(r"(?<![A-Z]{2}\d{2}[ -])\b\d{4}[ -]?\d{4}[ -]?\d{4}[ -]?\d{4}\b"),
)

_ACCOUNT_PATTERNS = (
    re.compile(r"\b[A-Z]{2}\d{2}(?: [A-Z0-9]{4}){2,7}(?: [A-Z0-9]{1,4})?\b"),
    re.compile(r"\b[A-Z]{2}\d{2}[A-Z0-9]{10,30}\b"),
    re.compile(r"\b\d{16,20}\b"),
)

DEFAULT_RULES: tuple[RegexRule, ...] = (
    RegexRule(PIIType.EMAIL, _EMAIL_PATTERNS),
    RegexRule(PIIType.PHONE, _PHONE_PATTERNS),
    RegexRule(PIIType.PERSON_CODE, _PERSON_CODE_PATTERNS),
    RegexRule(PIIType.CARD_NUMBER, _CARD_PATTERNS),
    RegexRule(PIIType.ACCOUNT_NUMBER, _ACCOUNT_PATTERNS),
)


class RegexPIIMasker:
    """Mask PII with an ordered list of regex rules.

    Rules are applied one after another over the whole text, so a span taken
    by an earlier rule is never seen by a later one. Names, surnames and
    addresses have no reliable surface pattern and are only caught by the
    AI-assisted masker.

    The masker is pure and stateless; a single instance can be shared.
    """

    def __init__(self, rules: tuple[RegexRule, ...] = DEFAULT_RULES) -> None:
        self.rules = rules

    def _apply_rules(self, text: str) -> str:
        for rule in self.rules:
            placeholder = rule.pii_type.placeholder
            for pattern in rule.patterns:
                text = pattern.sub(placeholder, text)
        return text

    def mask(self, text: str) -> str:
        """Replace every PII span in ``text`` with its placeholder.

        The result is a fixed point: masking it again changes nothing.
        """
        if not text:
            return text
        # A placeholder can stand where a digit blocked a lookbehind, exposing
        # a new match to the next pass. Every change removes digits, so this ends.
        masked = self._apply_rules(text)
        while masked != text:
            text, masked = masked, self._apply_rules(masked)
        return masked

    def mask_transcript(self, transcript: Transcript) -> Transcript:
        """Mask ``text`` and every segment independently."""
        return transcript.with_texts(
            self.mask(transcript.text),
            [self.mask(seg.text) for seg in transcript.segments],
        )

    def detect(self, text: str) -> list[PIIMatch]:
        """Find PII spans in ``text`` without modifying it.

        Earlier rules win where spans overlap, mirroring the order ``mask``
        applies them in.
        """
        accepted: list[PIIMatch] = []
        for rule in self.rules:
            for pattern in rule.patterns:
                for m in pattern.finditer(text):
                    if any(m.start() < a.end and m.end() > a.start for a in accepted):
                        continue
                    accepted.append(PIIMatch(rule.pii_type, m.start(), m.end(), m.group(0)))
        return sorted(accepted, key=lambda match: match.start)


_default_masker = RegexPIIMasker()


def mask_with_regex(text: str) -> str:
    """Mask ``text`` with the default rule set."""
    return _default_masker.mask(text)


def mask_transcript_with_regex(transcript: Transcript) -> Transcript:
    """Mask a transcript's text and segments with the default rule set."""
    return _default_masker.mask_transcript(transcript)


def placeholder_categories(text: str) -> set[PIIType]:
    """Return the PII categories whose placeholders appear in ``text``."""
    return {PIIType(m.group(0)[1:-1]) for m in PLACEHOLDER_PATTERN.finditer(text)}


# =============================================================================
# Summary Redaction
# =============================================================================


@dataclass(frozen=True)
class RedactionTokens:
    """Replacement tokens used when redacting generated summaries."""

    email: str
    phone: str
    person_code: str
    iban: str
    name: str

    @classmethod
    def for_locale(cls, locale: str) -> RedactionTokens:
        if locale == "lt":
            return cls(
                email="[EL. PAŠTAS]",
                phone="[TEL. NR.]",
                person_code="[ASMENS KODAS]",
                iban="[IBAN]",
                name="[VARDAS PAVARDĖ]",
            )
        if locale == "en":
            return cls(
                email=PIIType.EMAIL.placeholder,
                phone=PIIType.PHONE.placeholder,
                person_code=PIIType.PERSON_CODE.placeholder,
                iban=PIIType.ACCOUNT_NUMBER.placeholder,
                name=PIIType.NAME.placeholder,
            )
        raise ValueError(f"Unknown redaction locale: {locale!r}")


_UPPER = "A-ZĄČĘĖĮŠŲŪŽ"
_LOWER = "a-ząčęėįšųūž"

_SUMMARY_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_SUMMARY_IBAN = re.compile(
    r"\b[A-Z]{2}\d{2}(?:[A-Z0-9]{10,30}|(?: [A-Z0-9]{4}){2,7}(?: [A-Z0-9]{1,4})?)\b"
)
_SUMMARY_PERSON_CODE = re.compile(r"\b\d{6}-?\d{5}\b")
_SUMMARY_PHONE = re.compile(r"(?<![\w+])\+?\d[\d ().-]{6,}\d\b")
_SUMMARY_NAME = re.compile(rf"\b[{_UPPER}][{_LOWER}]+[ \t]+[{_UPPER}][{_LOWER}]+\b")
_WHITESPACE = re.compile(r"\s{2,}")

# Phone-like runs with fewer digits are dates, amounts or times
_MIN_PHONE_DIGITS = 8


class SummaryRedactor:
    """Redact PII from generated call summaries.

    Summaries are produced by a model that reads the (already masked)
    transcript, but models can still echo or invent identifiers, so every
    summary passes through this redactor before it is stored. Rules run in
    order: emails, IBAN-like codes, person codes, phone-like sequences,
    two-word capitalised names, then whitespace collapse.
    """

    def __init__(self, tokens: RedactionTokens | None = None, redact_names: bool = True) -> None:
        self.tokens = tokens or RedactionTokens.for_locale("lt")
        self.redact_names = redact_names

    def redact(self, summary: str) -> str:
        if not summary:
            return summary

        text = _SUMMARY_EMAIL.sub(self.tokens.email, summary)
        text = _SUMMARY_IBAN.sub(self.tokens.iban, text)
        text = _SUMMARY_PERSON_CODE.sub(self.tokens.person_code, text)
        text = _SUMMARY_PHONE.sub(self._phone_replacer(), text)
        if self.redact_names:
            text = _SUMMARY_NAME.sub(self.tokens.name, text)
        return _WHITESPACE.sub(" ", text).strip()

    def _phone_replacer(self) -> Callable[[re.Match[str]], str]:
        token = self.tokens.phone

        def replace(match: re.Match[str]) -> str:
            digits = sum(ch.isdigit() for ch in match.group(0))
            return token if digits >= _MIN_PHONE_DIGITS else match.group(0)

        return replace


# =============================================================================
# Error Sanitisation
# =============================================================================

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(message: object, max_length: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Mask PII in an error message and truncate it.

    Upstream errors sometimes quote the request they failed on, so error text
    is treated as potentially sensitive before it reaches logs or storage.
    """
    text = mask_with_regex(str(message) if message is not None else "")
    text = _WHITESPACE.sub(" ", text).strip()
    if len(text) > max_length:
        text = text[: max_length - 3].rstrip() + "..."
    return text or "Unknown error"
