"""Speech-to-text for uploaded call recordings.

The pipeline depends only on the ``Transcriber`` protocol. The bundled
implementation wraps faster-whisper; its segments carry timings but no
speaker labels, which ``DialogueRepairer`` assigns afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Protocol

from .exceptions import TranscriptionError
from .models import Segment, Transcript, new_id, utc_now_iso

logger = logging.getLogger(__name__)

WhisperModel: type[Any] | None
try:
    from faster_whisper import WhisperModel as _WhisperModel  # type: ignore[reportMissingTypeStubs]

    WhisperModel = _WhisperModel
    _FASTER_WHISPER_AVAILABLE = True
except Exception:
    WhisperModel = None
    _FASTER_WHISPER_AVAILABLE = False


class Transcriber(Protocol):
    async def transcribe(self, audio_path: Path, language: str | None = None) -> Transcript: ...


class WhisperTranscriber:
    """
    Thin wrapper around faster-whisper that returns Transcript objects.

    The model is loaded on first use. If loading fails on the requested
    device/compute type, a CPU int8 load is attempted before giving up.
    Inference runs in a worker thread so the event loop stays responsive.
    """

    def __init__(
        self,
        model_name: str = "large-v3",
        device: str = "auto",
        compute_type: str = "int8",
        language: str | None = "lt",
        beam_size: int = 5,
    ) -> None:
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self.beam_size = beam_size
        self._model: Any = None
        self._lock = threading.Lock()

    def _load_model(self) -> Any:
        if self._model is not None:
            return self._model

        with self._lock:
            if self._model is not None:
                return self._model
            if not _FASTER_WHISPER_AVAILABLE or WhisperModel is None:
                raise TranscriptionError(
                    "faster-whisper is not installed. Install with: pip install 'voxanalyze[asr]'"
                )

            attempts = [(self.device, self.compute_type)]
            if (self.device, self.compute_type) != ("cpu", "int8"):
                attempts.append(("cpu", "int8"))

            failures: list[str] = []
            for device, compute_type in attempts:
                try:
                    self._model = WhisperModel(
                        self.model_name, device=device, compute_type=compute_type
                    )
                except Exception as e:
                    failures.append(f"{device} ({compute_type}): {e}")
                    logger.warning(
                        "Whisper model load failed on %s (%s): %s", device, compute_type, e
                    )
                    continue
                logger.info(
                    "Loaded Whisper model %s on %s (%s)", self.model_name, device, compute_type
                )
                return self._model

            raise TranscriptionError(f"Could not load Whisper model: {'; '.join(failures)}")

    def _transcribe_sync(self, audio_path: Path, language: str | None) -> Transcript:
        model = self._load_model()
        raw_segments, info = model.transcribe(
            str(audio_path),
            beam_size=self.beam_size,
            vad_filter=True,
            language=language,
        )

        segments: list[Segment] = []
        for raw in raw_segments:
            text = str(getattr(raw, "text", "")).strip()
            if not text:
                continue
            segments.append(
                Segment(
                    speaker="",
                    text=text,
                    start_time=float(getattr(raw, "start", 0.0)),
                    end_time=float(getattr(raw, "end", 0.0)),
                )
            )

        detected = getattr(info, "language", None) or language or "unknown"
        return Transcript(
            id=new_id(),
            text=" ".join(seg.text for seg in segments),
            language=str(detected),
            segments=segments,
            timestamp=utc_now_iso(),
        )

    async def transcribe(self, audio_path: Path, language: str | None = None) -> Transcript:
        """Transcribe ``audio_path``.

        Raises:
            TranscriptionError: If the model cannot be loaded or inference fails.
        """
        try:
            return await asyncio.to_thread(
                self._transcribe_sync, audio_path, language or self.language
            )
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"Transcription failed: {e}") from e
