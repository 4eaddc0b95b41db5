"""Tests for the faster-whisper transcriber wrapper (model is faked)."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from voxanalyze import asr
from voxanalyze.asr import WhisperTranscriber
from voxanalyze.exceptions import TranscriptionError


class FakeWhisperModel:
    instances: list[FakeWhisperModel] = []
    fail_on: set[str] = set()

    def __init__(self, model_name: str, device: str, compute_type: str):
        if device in self.fail_on:
            raise RuntimeError(f"{device} unavailable")
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.calls: list[dict] = []
        FakeWhisperModel.instances.append(self)

    def transcribe(self, path: str, **kwargs):
        self.calls.append({"path": path, **kwargs})
        segments = [
            SimpleNamespace(start=0.0, end=2.5, text=" Labas, kuo galiu padėti? "),
            SimpleNamespace(start=2.5, end=2.6, text="   "),
            SimpleNamespace(start=2.6, end=5.0, text="Norėčiau sužinoti likutį."),
        ]
        return iter(segments), SimpleNamespace(language="lt")


@pytest.fixture
def fake_whisper(monkeypatch: pytest.MonkeyPatch) -> type[FakeWhisperModel]:
    FakeWhisperModel.instances = []
    FakeWhisperModel.fail_on = set()
    monkeypatch.setattr(asr, "WhisperModel", FakeWhisperModel)
    monkeypatch.setattr(asr, "_FASTER_WHISPER_AVAILABLE", True)
    return FakeWhisperModel


@pytest.mark.asyncio
async def test_transcribe_builds_transcript(fake_whisper, tmp_path: Path) -> None:
    audio = tmp_path / "call.wav"
    audio.write_bytes(b"RIFF")
    transcriber = WhisperTranscriber(model_name="small", device="cpu", compute_type="int8")

    transcript = await transcriber.transcribe(audio)

    assert transcript.language == "lt"
    assert [s.text for s in transcript.segments] == [
        "Labas, kuo galiu padėti?",
        "Norėčiau sužinoti likutį.",
    ]
    assert transcript.text == "Labas, kuo galiu padėti? Norėčiau sužinoti likutį."
    assert all(s.speaker == "" for s in transcript.segments)
    assert transcript.segments[1].start_time == 2.6

    call = fake_whisper.instances[0].calls[0]
    assert call["path"] == str(audio)
    assert call["language"] == "lt"
    assert call["vad_filter"] is True


@pytest.mark.asyncio
async def test_model_is_loaded_once(fake_whisper, tmp_path: Path) -> None:
    transcriber = WhisperTranscriber(device="cpu")
    await transcriber.transcribe(tmp_path / "a.wav")
    await transcriber.transcribe(tmp_path / "b.wav", language="en")
    assert len(fake_whisper.instances) == 1
    assert fake_whisper.instances[0].calls[1]["language"] == "en"


@pytest.mark.asyncio
async def test_falls_back_to_cpu(fake_whisper, tmp_path: Path) -> None:
    fake_whisper.fail_on = {"cuda"}
    transcriber = WhisperTranscriber(device="cuda", compute_type="float16")
    await transcriber.transcribe(tmp_path / "a.wav")
    model = fake_whisper.instances[0]
    assert (model.device, model.compute_type) == ("cpu", "int8")


@pytest.mark.asyncio
async def test_load_failure_raises_transcription_error(fake_whisper, tmp_path: Path) -> None:
    fake_whisper.fail_on = {"cuda", "cpu"}
    transcriber = WhisperTranscriber(device="cuda")
    with pytest.raises(TranscriptionError, match="Could not load Whisper model"):
        await transcriber.transcribe(tmp_path / "a.wav")


@pytest.mark.asyncio
async def test_missing_dependency(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(asr, "_FASTER_WHISPER_AVAILABLE", False)
    with pytest.raises(TranscriptionError, match="faster-whisper is not installed"):
        await WhisperTranscriber().transcribe(tmp_path / "a.wav")


@pytest.mark.asyncio
async def test_inference_errors_are_wrapped(fake_whisper, tmp_path: Path) -> None:
    def broken(self, path: str, **kwargs):
        raise RuntimeError("corrupt audio stream")

    fake_whisper.transcribe = broken
    try:
        with pytest.raises(TranscriptionError, match="corrupt audio stream"):
            await WhisperTranscriber(device="cpu").transcribe(tmp_path / "a.wav")
    finally:
        del fake_whisper.transcribe
