"""
Pytest configuration and fixtures for tests.

This module provides:
- Encryption keys and ciphers
- Sample Lithuanian call transcripts containing PII
- Temporary record and blob stores
- A fake transcriber and scripted LLM replies
- A factory for fully wired pipelines backed by the fakes
"""

from __future__ import annotations

import copy
import json
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from voxanalyze.analysis import CallAnalyzer
from voxanalyze.auth import Principal, Role
from voxanalyze.config import PipelineConfig
from voxanalyze.crypto import EnvelopeCipher, generate_key
from voxanalyze.llm_client import MockScript
from voxanalyze.masking import PIIMasker
from voxanalyze.models import Segment, Transcript
from voxanalyze.pipeline import CallRecordPipeline
from voxanalyze.privacy import RedactionTokens, SummaryRedactor
from voxanalyze.store import LocalBlobStore, SQLiteRecordStore

# ============================================================================
# Sample data
# ============================================================================

SAMPLE_SEGMENTS = [
    ("Agentas", "Labas, čia Jonas iš banko. Kuo galiu padėti?"),
    ("Klientas", "Mano el. paštas jonas@example.com, telefonas +370 612 34567."),
    ("Agentas", "Ačiū, patikrinsiu jūsų sąskaitą."),
]

ANALYSIS_REPLY = json.dumps(
    {
        "sentimentScore": 82,
        "customerSatisfaction": 75,
        "agentPerformance": 90,
        "warnings": [],
        "summary": "Klientas teiravosi dėl sąskaitos, prašė perskambinti +370 612 34567.",
        "metrics": [{"label": "Empatija", "value": 85, "trend": "up"}],
    },
    ensure_ascii=False,
)

AUDIO_BYTES = b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * 64


def make_transcript(segments: list[tuple[str, str]] | None = None) -> Transcript:
    segments = SAMPLE_SEGMENTS if segments is None else segments
    parts = [
        Segment(speaker=speaker, text=text, start_time=i * 5.0, end_time=i * 5.0 + 4.5)
        for i, (speaker, text) in enumerate(segments)
    ]
    return Transcript(
        id="transcript-1",
        text=" ".join(seg.text for seg in parts),
        language="lt",
        segments=parts,
    )


def fake_mask(text: str) -> str:
    """What a well-behaved masking model returns for the sample texts."""
    return (
        text.replace("Jonas", "[NAME]")
        .replace("jonas@example.com", "[EMAIL]")
        .replace("+370 612 34567", "[PHONE]")
    )


def scripted_reply(system: str, user: str) -> str:
    """Answer masking prompts with ``fake_mask`` and analysis prompts with a fixed JSON."""
    if "quality analyst" in system:
        return ANALYSIS_REPLY
    return fake_mask(user)


class FakeTranscriber:
    """Transcriber returning a canned transcript, or raising a canned error."""

    def __init__(
        self, transcript: Transcript | None = None, error: BaseException | None = None
    ):
        self.transcript = transcript or make_transcript()
        self.error = error
        self.calls: list[Path] = []

    async def transcribe(self, audio_path: Path, language: str | None = None) -> Transcript:
        self.calls.append(Path(audio_path))
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.transcript)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def encryption_key() -> str:
    return generate_key()


@pytest.fixture
def cipher(encryption_key: str) -> EnvelopeCipher:
    return EnvelopeCipher(encryption_key)


@pytest.fixture
def sample_transcript() -> Transcript:
    return make_transcript()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteRecordStore]:
    record_store = SQLiteRecordStore.open(tmp_path / "records.db")
    yield record_store
    record_store.close()


@pytest.fixture
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "audio")


@pytest.fixture
def owner() -> Principal:
    return Principal(user_id="user-1", role=Role.USER, email="owner@example.com")


@pytest.fixture
def other_user() -> Principal:
    return Principal(user_id="user-2", role=Role.USER)


@pytest.fixture
def admin() -> Principal:
    return Principal(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def base_config(tmp_path: Path, encryption_key: str) -> PipelineConfig:
    return PipelineConfig(
        encryption_key=encryption_key,
        llm_provider="mock",
        masking_models=("mask-a", "mask-b"),
        analysis_models=("analysis-a", "analysis-b"),
        masking_timeout_s=2.0,
        analysis_timeout_s=2.0,
        transcription_timeout_s=5.0,
        db_path=tmp_path / "records.db",
        blob_dir=tmp_path / "audio",
        max_audio_mb=1.0,
    )


@pytest.fixture
def make_pipeline(
    base_config: PipelineConfig,
) -> Iterator[Callable[..., CallRecordPipeline]]:
    """Factory for pipelines wired to fakes.

    Keyword arguments: ``transcriber``, ``script`` (MockScript), ``config``.
    """
    stores: list[SQLiteRecordStore] = []

    def _make(
        *,
        transcriber: FakeTranscriber | None = None,
        script: MockScript | None = None,
        config: PipelineConfig | None = None,
    ) -> CallRecordPipeline:
        config = config or base_config
        script = script or MockScript(default=scripted_reply)
        factory = script.factory()
        record_store = SQLiteRecordStore.open(config.resolved_db_path())
        stores.append(record_store)
        return CallRecordPipeline(
            store=record_store,
            blobs=LocalBlobStore(config.resolved_blob_dir()),
            transcriber=transcriber or FakeTranscriber(),
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
                redactor=SummaryRedactor(RedactionTokens.for_locale(config.summary_locale)),
            ),
            cipher=EnvelopeCipher(config.encryption_key),
            config=config,
        )

    yield _make
    for record_store in stores:
        record_store.close()
