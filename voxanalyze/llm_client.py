"""
Text-generation provider abstraction.

Masking and call analysis both talk to a hosted model through the
``LLMProvider`` interface defined here, so the rest of the pipeline never
imports a vendor SDK directly. Provider SDKs are imported lazily and are only
required when the corresponding provider is selected.

Upstream failures are translated into the library's error taxonomy:
quota/rate exhaustion becomes ``UpstreamQuotaError`` and capacity problems
become ``UpstreamOverloadedError``.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, NoReturn

from .exceptions import UpstreamOverloadedError, UpstreamQuotaError

QUOTA_STATUS_CODES = frozenset({429, 546})
OVERLOADED_STATUS_CODES = frozenset({503, 529})

QUOTA_PATTERNS = (
    "quota",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "resource exhausted",
    "resource_exhausted",
    "too many requests",
)

OVERLOADED_PATTERNS = (
    "overloaded",
    "over capacity",
)


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""

    provider: str  # "anthropic", "openai", "mock"
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = 0.0
    max_tokens: int = 8192

    def __repr__(self) -> str:
        """Secure repr that masks API key."""
        key_repr = "None"
        if self.api_key:
            key_repr = f"'{self.api_key[:3]}...'" if len(self.api_key) > 6 else "'***'"

        return (
            f"LLMConfig(provider={self.provider!r}, model={self.model!r}, "
            f"api_key={key_repr}, base_url={self.base_url!r}, "
            f"temperature={self.temperature!r}, max_tokens={self.max_tokens!r})"
        )

    def for_model(self, model: str) -> LLMConfig:
        return replace(self, model=model)


@dataclass
class LLMResponse:
    """Response from LLM completion."""

    text: str
    tokens_used: int | None = None
    duration_ms: int = 0
    raw_response: Any = None


# =============================================================================
# Error classification
# =============================================================================


def _status_of(error: BaseException) -> int | None:
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_upstream_error(
    error: BaseException, model: str | None = None
) -> UpstreamQuotaError | UpstreamOverloadedError | None:
    """Map a provider exception onto the upstream error taxonomy.

    Returns:
        An ``UpstreamQuotaError`` or ``UpstreamOverloadedError`` describing
        ``error``, or None if it is neither.
    """
    if isinstance(error, UpstreamQuotaError | UpstreamOverloadedError):
        return error

    status = _status_of(error)
    message = str(error).lower()

    if status in QUOTA_STATUS_CODES or any(p in message for p in QUOTA_PATTERNS):
        return UpstreamQuotaError(
            "Model quota or rate limit exhausted; try again later",
            status=status,
            model=model,
        )
    if status in OVERLOADED_STATUS_CODES or any(p in message for p in OVERLOADED_PATTERNS):
        return UpstreamOverloadedError(
            "Model service is temporarily overloaded; try again shortly",
            status=status,
            model=model,
        )
    return None


def _raise_provider_error(provider_name: str, error: Exception, model: str) -> NoReturn:
    upstream = classify_upstream_error(error, model=model)
    if upstream is not None:
        raise upstream from error
    raise RuntimeError(f"{provider_name} API call failed: {error}") from error


# =============================================================================
# Response decoding
# =============================================================================


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _first(items: Any) -> Any:
    if isinstance(items, Sequence) and not isinstance(items, str | bytes) and items:
        return items[0]
    return None


def _text_field(response: Any) -> str | None:
    value = _field(response, "text")
    if callable(value):
        value = value()
    return value if isinstance(value, str) else None


def _candidate_parts(response: Any) -> str | None:
    content = _field(_first(_field(response, "candidates")), "content")
    parts = _field(content, "parts")
    if not isinstance(parts, Sequence) or isinstance(parts, str):
        return None
    texts = [t for t in (_field(part, "text") for part in parts) if isinstance(t, str)]
    return "".join(texts) if texts else None


def _content_blocks(response: Any) -> str | None:
    blocks = _field(response, "content")
    if not isinstance(blocks, Sequence) or isinstance(blocks, str):
        return None
    texts = [t for t in (_field(block, "text") for block in blocks) if isinstance(t, str)]
    return "".join(texts) if texts else None


def _choice_message(response: Any) -> str | None:
    message = _field(_first(_field(response, "choices")), "message")
    content = _field(message, "content")
    return content if isinstance(content, str) else None


def _string_coercion(response: Any) -> str | None:
    if isinstance(response, str):
        return response
    if isinstance(response, bytes):
        return response.decode("utf-8", errors="replace")
    return None


RESPONSE_TEXT_STRATEGIES: tuple[Callable[[Any], str | None], ...] = (
    _text_field,
    _candidate_parts,
    _content_blocks,
    _choice_message,
    _string_coercion,
)


def extract_response_text(response: Any) -> str:
    """Pull generated text out of a provider response of unknown shape.

    Strategies are tried in order (direct ``text`` field or method, nested
    candidate parts, content blocks, chat choices, plain string) and the first
    non-empty result wins. An ``LLMResponse`` with empty text falls through to
    its raw response. Returns an empty string if nothing matched.
    """
    if isinstance(response, LLMResponse):
        if response.text.strip():
            return response.text
        response = response.raw_response

    if response is None:
        return ""

    for strategy in RESPONSE_TEXT_STRATEGIES:
        try:
            text = strategy(response)
        except (AttributeError, TypeError, IndexError, KeyError):
            continue
        if text and text.strip():
            return text
    return ""


_FENCE_PATTERN = re.compile(r"^```[A-Za-z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)
_QUOTE_PAIRS = (('"', '"'), ("'", "'"), ("“", "”"), ("„", "“"), ("`", "`"))


def clean_model_text(text: str) -> str:
    """Strip whitespace, markdown code fences and one layer of wrapping quotes."""
    cleaned = text.strip()
    if match := _FENCE_PATTERN.match(cleaned):
        cleaned = match.group(1).strip()
    for opening, closing in _QUOTE_PAIRS:
        if len(cleaned) >= 2 and cleaned.startswith(opening) and cleaned.endswith(closing):
            cleaned = cleaned[len(opening) : -len(closing)].strip()
            break
    return cleaned


# =============================================================================
# Providers
# =============================================================================


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, config: LLMConfig):
        self.config = config

    @property
    def model_name(self) -> str:
        return self.config.model or "default"

    @abstractmethod
    async def complete(self, system: str, user: str) -> LLMResponse:
        """
        Send a completion request to the LLM.

        Args:
            system: System prompt
            user: User prompt

        Returns:
            LLMResponse with the completion text

        Raises:
            UpstreamQuotaError: If the service reports quota or rate exhaustion.
            UpstreamOverloadedError: If the service reports it is overloaded.
            RuntimeError: For any other API failure.
        """
        ...

    async def complete_with_timeout(self, system: str, user: str, timeout_s: float) -> LLMResponse:
        """``complete`` bounded by ``timeout_s`` seconds.

        Raises:
            TimeoutError: If the call does not finish in time.
        """
        return await asyncio.wait_for(self.complete(system, user), timeout=timeout_s)


class AnthropicProvider(LLMProvider):
    """
    LLM provider using the official Anthropic Python client.

    Requires the anthropic package (pip install anthropic) and either:
    - ANTHROPIC_API_KEY environment variable, or
    - api_key in LLMConfig
    """

    DEFAULT_MODEL = "claude-sonnet-4-20250514"

    async def complete(self, system: str, user: str) -> LLMResponse:
        """Send completion via Anthropic API."""
        start_time = time.time()

        try:
            import anthropic
        except ImportError as e:
            raise ImportError(
                "anthropic package not installed. Install with: pip install anthropic"
            ) from e

        api_key = self.config.api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError(
                "Anthropic API key not found. Set ANTHROPIC_API_KEY env var or pass in config."
            )

        client_kwargs: dict[str, Any] = {"api_key": api_key}
        if self.config.base_url:
            client_kwargs["base_url"] = self.config.base_url
        client = anthropic.AsyncAnthropic(**client_kwargs)
        model = self.config.model or self.DEFAULT_MODEL

        try:
            message = await client.messages.create(
                model=model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except Exception as e:
            _raise_provider_error("Anthropic", e, model)

        tokens_used = None
        if message.usage:
            tokens_used = message.usage.input_tokens + message.usage.output_tokens

        return LLMResponse(
            text=extract_response_text(message),
            tokens_used=tokens_used,
            duration_ms=int((time.time() - start_time) * 1000),
            raw_response=message,
        )


class OpenAIProvider(LLMProvider):
    """
    LLM provider using the official OpenAI Python client.

    Requires the openai package (pip install openai) and either:
    - OPENAI_API_KEY environment variable, or
    - api_key in LLMConfig

    ``base_url`` allows any OpenAI-compatible endpoint (Azure, proxies,
    self-hosted gateways).
    """

    DEFAULT_MODEL = "gpt-4o"

    async def complete(self, system: str, user: str) -> LLMResponse:
        """Send completion via OpenAI API."""
        start_time = time.time()

        try:
            import openai
        except ImportError as e:
            raise ImportError(
                "openai package not installed. Install with: pip install openai"
            ) from e

        api_key = self.config.api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError(
                "OpenAI API key not found. Set OPENAI_API_KEY env var or pass in config."
            )

        client_kwargs: dict[str, Any] = {"api_key": api_key}
        if self.config.base_url:
            client_kwargs["base_url"] = self.config.base_url

        client = openai.AsyncOpenAI(**client_kwargs)
        model = self.config.model or self.DEFAULT_MODEL

        try:
            response = await client.chat.completions.create(
                model=model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
        except Exception as e:
            _raise_provider_error("OpenAI", e, model)

        tokens_used = None
        if response.usage:
            tokens_used = response.usage.prompt_tokens + response.usage.completion_tokens

        return LLMResponse(
            text=extract_response_text(response),
            tokens_used=tokens_used,
            duration_ms=int((time.time() - start_time) * 1000),
            raw_response=response,
        )


MockResponse = str | BaseException | Callable[[str, str], str]


@dataclass
class MockCall:
    system: str
    user: str
    model: str | None


class MockProvider(LLMProvider):
    """
    Scripted provider for tests and offline runs.

    ``responses`` is consumed in order. Each item is returned as text, raised
    if it is an exception, or called with ``(system, user)`` if callable.
    When the script runs out, ``default`` is used; with no default the user
    prompt is echoed back. ``delay_s`` simulates a slow upstream.

    Calls are recorded on ``calls`` (shared between providers created from
    the same ``MockScript``).
    """

    def __init__(
        self,
        config: LLMConfig,
        responses: list[MockResponse] | None = None,
        default: MockResponse | None = None,
        delay_s: float = 0.0,
        calls: list[MockCall] | None = None,
    ):
        super().__init__(config)
        self.responses = responses if responses is not None else []
        self.default = default
        self.delay_s = delay_s
        self.calls: list[MockCall] = calls if calls is not None else []

    async def complete(self, system: str, user: str) -> LLMResponse:
        self.calls.append(MockCall(system=system, user=user, model=self.config.model))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)

        item = self.responses.pop(0) if self.responses else self.default
        if item is None:
            return LLMResponse(text=user)
        if isinstance(item, BaseException):
            upstream = classify_upstream_error(item, model=self.config.model)
            if upstream is not None and upstream is not item:
                raise upstream from item
            raise item
        text = item(system, user) if callable(item) else item
        return LLMResponse(text=text)


@dataclass
class MockScript:
    """Per-model scripted responses for building ``MockProvider`` instances.

    Example:
        script = MockScript({"model-a": [TimeoutError()], "model-b": ["masked"]})
        factory = script.factory()
        provider = factory("model-b")
    """

    responses: dict[str, list[MockResponse]] = field(default_factory=dict)
    default: MockResponse | None = None
    delay_s: dict[str, float] = field(default_factory=dict)
    calls: list[MockCall] = field(default_factory=list)

    def factory(self, base: LLMConfig | None = None) -> ProviderFactory:
        base_config = base or LLMConfig(provider="mock")

        def build(model: str) -> LLMProvider:
            return MockProvider(
                base_config.for_model(model),
                responses=self.responses.setdefault(model, []),
                default=self.default,
                delay_s=self.delay_s.get(model, 0.0),
                calls=self.calls,
            )

        return build

    def models_called(self) -> list[str | None]:
        return [call.model for call in self.calls]


ProviderFactory = Callable[[str], LLMProvider]


def create_llm_provider(config: LLMConfig) -> LLMProvider:
    """
    Factory function to create the appropriate LLM provider.

    Args:
        config: LLM configuration

    Returns:
        Configured LLM provider instance

    Raises:
        ValueError: If provider type is unknown
    """
    providers: dict[str, type[LLMProvider]] = {
        "anthropic": AnthropicProvider,
        "openai": OpenAIProvider,
        "mock": MockProvider,
    }

    provider_class = providers.get(config.provider)
    if not provider_class:
        raise ValueError(f"Unknown LLM provider: {config.provider}")

    return provider_class(config)


def provider_factory(config: LLMConfig) -> ProviderFactory:
    """Return a callable building a provider for a given model name."""

    def build(model: str) -> LLMProvider:
        return create_llm_provider(config.for_model(model))

    return build
