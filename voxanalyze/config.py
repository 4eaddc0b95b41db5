"""Pipeline configuration.

Configuration is resolved from (lowest to highest precedence):

1. Dataclass defaults
2. A JSON config file (``PipelineConfig.from_file``)
3. Environment variables with the ``VOXANALYZE_`` prefix (``PipelineConfig.from_env``)

Secrets (encryption key, model API key, API tokens) are never included in
``repr`` output.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from .exceptions import ConfigurationError

SegmentStrategy = Literal["offset", "per_segment"]

DEFAULT_MASKING_MODELS: tuple[str, ...] = ("claude-3-5-haiku-latest", "claude-sonnet-4-20250514")
DEFAULT_ANALYSIS_MODELS: tuple[str, ...] = ("claude-sonnet-4-20250514", "claude-3-5-haiku-latest")

VALID_PROVIDERS = ("anthropic", "openai", "mock")
VALID_SEGMENT_STRATEGIES = ("offset", "per_segment")
VALID_LOCALES = ("lt", "en")
VALID_DEVICES = ("cpu", "cuda", "auto")

_SECRET_FIELDS = frozenset({"encryption_key", "llm_api_key", "api_tokens"})
_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def get_default_data_dir() -> Path:
    """Return ~/.voxanalyze, creating it if needed."""
    data_dir = Path.home() / ".voxanalyze"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid {name}: {value!r}. Must be true or false")


def _parse_number(name: str, value: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(value)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name}: {value!r}. Must be a number") from e


def _parse_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass
class PipelineConfig:
    """Settings for the record pipeline, its model calls and the HTTP service."""

    # Encryption
    encryption_key: str | None = None
    allow_plaintext_fallback: bool = False

    # Text generation
    llm_provider: str = "anthropic"
    llm_api_key: str | None = None
    llm_base_url: str | None = None
    masking_models: tuple[str, ...] = DEFAULT_MASKING_MODELS
    analysis_models: tuple[str, ...] = DEFAULT_ANALYSIS_MODELS
    masking_timeout_s: float = 90.0
    analysis_timeout_s: float = 120.0
    segment_strategy: SegmentStrategy = "offset"

    # Transcription
    language: str = "lt"
    whisper_model: str = "large-v3"
    whisper_device: str = "auto"
    whisper_compute_type: str = "int8"
    transcription_timeout_s: float = 600.0
    speaker_labels: tuple[str, str] = ("Agentas", "Klientas")

    # Redaction
    summary_locale: str = "lt"

    # Storage
    db_path: Path | None = None
    blob_dir: Path | None = None
    storage_timeout_s: float = 10.0

    # Uploads
    max_audio_mb: float = 12.0
    dedup_window_s: float = 300.0

    # Service
    allowed_origins: tuple[str, ...] = ()
    api_tokens: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.llm_provider not in VALID_PROVIDERS:
            raise ConfigurationError(
                f"Invalid llm_provider: {self.llm_provider!r}. "
                f"Must be one of {', '.join(VALID_PROVIDERS)}"
            )
        if self.segment_strategy not in VALID_SEGMENT_STRATEGIES:
            raise ConfigurationError(
                f"Invalid segment_strategy: {self.segment_strategy!r}. "
                f"Must be one of {', '.join(VALID_SEGMENT_STRATEGIES)}"
            )
        if self.summary_locale not in VALID_LOCALES:
            raise ConfigurationError(
                f"Invalid summary_locale: {self.summary_locale!r}. "
                f"Must be one of {', '.join(VALID_LOCALES)}"
            )
        if self.whisper_device not in VALID_DEVICES:
            raise ConfigurationError(
                f"Invalid whisper_device: {self.whisper_device!r}. "
                f"Must be one of {', '.join(VALID_DEVICES)}"
            )
        if not self.masking_models:
            raise ConfigurationError("masking_models must name at least one model")
        if not self.analysis_models:
            raise ConfigurationError("analysis_models must name at least one model")
        if len(self.speaker_labels) != 2 or not all(self.speaker_labels):
            raise ConfigurationError("speaker_labels must be two non-empty labels")

        for name in (
            "masking_timeout_s",
            "analysis_timeout_s",
            "transcription_timeout_s",
            "storage_timeout_s",
            "max_audio_mb",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.dedup_window_s < 0:
            raise ConfigurationError(f"dedup_window_s must be >= 0, got {self.dedup_window_s}")

        if self.db_path is not None:
            self.db_path = Path(self.db_path)
        if self.blob_dir is not None:
            self.blob_dir = Path(self.blob_dir)

    def __repr__(self) -> str:
        parts = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _SECRET_FIELDS and value:
                value = "***"
            parts.append(f"{f.name}={value!r}")
        return f"PipelineConfig({', '.join(parts)})"

    @property
    def max_audio_bytes(self) -> int:
        return int(self.max_audio_mb * 1024 * 1024)

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.encryption_key)

    def resolved_db_path(self) -> Path:
        return self.db_path or get_default_data_dir() / "records.db"

    def resolved_blob_dir(self) -> Path:
        return self.blob_dir or get_default_data_dir() / "audio"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        """Build a config from a plain dict. Unknown keys raise ConfigurationError."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        values = dict(data)
        for key in ("masking_models", "analysis_models", "allowed_origins", "api_tokens"):
            if key in values and isinstance(values[key], str):
                values[key] = _parse_list(values[key])
            elif key in values and values[key] is not None:
                values[key] = tuple(values[key])
        if "speaker_labels" in values and values["speaker_labels"] is not None:
            values["speaker_labels"] = tuple(values["speaker_labels"])
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> PipelineConfig:
        """Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigurationError: If the file is not valid JSON or has invalid values.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_env(
        cls, prefix: str = "VOXANALYZE_", base: PipelineConfig | None = None
    ) -> PipelineConfig:
        """
        Load configuration from environment variables.

        Variables map to fields by upper-casing the field name, for example
        ``{prefix}ENCRYPTION_KEY -> encryption_key`` and
        ``{prefix}MASKING_MODELS -> masking_models`` (comma-separated).
        When ``base`` is given, environment values override it.

        Raises:
            ConfigurationError: If a variable contains an invalid value.

        Example:
            export VOXANALYZE_ENCRYPTION_KEY=$(voxanalyze generate-key)
            export VOXANALYZE_LLM_PROVIDER=anthropic
            export VOXANALYZE_MASKING_MODELS=claude-3-5-haiku-latest,claude-sonnet-4-20250514
        """
        config_dict: dict[str, Any] = {}
        if base is not None:
            config_dict = {f.name: getattr(base, f.name) for f in fields(base)}

        # String fields
        for name in (
            "encryption_key",
            "llm_provider",
            "llm_api_key",
            "llm_base_url",
            "segment_strategy",
            "language",
            "whisper_model",
            "whisper_device",
            "whisper_compute_type",
            "summary_locale",
        ):
            if value := os.getenv(f"{prefix}{name.upper()}"):
                config_dict[name] = value.strip()

        # Path fields
        if db_path := os.getenv(f"{prefix}DB_PATH"):
            config_dict["db_path"] = Path(db_path)
        if blob_dir := os.getenv(f"{prefix}BLOB_DIR"):
            config_dict["blob_dir"] = Path(blob_dir)

        # Boolean fields
        if fallback := os.getenv(f"{prefix}ALLOW_PLAINTEXT_FALLBACK"):
            config_dict["allow_plaintext_fallback"] = _parse_bool(
                f"{prefix}ALLOW_PLAINTEXT_FALLBACK", fallback
            )

        # Numeric fields
        for name in (
            "masking_timeout_s",
            "analysis_timeout_s",
            "transcription_timeout_s",
            "storage_timeout_s",
            "max_audio_mb",
            "dedup_window_s",
        ):
            env_name = f"{prefix}{name.upper()}"
            if value := os.getenv(env_name):
                config_dict[name] = _parse_number(env_name, value, float)

        # List fields
        for name in ("masking_models", "analysis_models", "allowed_origins", "api_tokens"):
            if value := os.getenv(f"{prefix}{name.upper()}"):
                config_dict[name] = _parse_list(value)
        if labels := os.getenv(f"{prefix}SPEAKER_LABELS"):
            config_dict["speaker_labels"] = _parse_list(labels)

        return cls.from_dict(config_dict)
