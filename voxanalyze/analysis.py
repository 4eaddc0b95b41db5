"""Call quality analysis.

``CallAnalyzer`` sends the masked dialogue to a text-generation model and
turns the JSON reply into an ``AnalysisResult``. Scores are clamped to
0-100, warnings are filtered to non-empty strings, and the summary always
passes through ``SummaryRedactor`` before it leaves this module.

Candidate models are tried in order. A quota error stops the loop at once
(other models share the same account limits); an overloaded model moves on
to the next candidate.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Sequence
from typing import Any

from .exceptions import AnalysisError, UpstreamOverloadedError, UpstreamQuotaError
from .llm_client import ProviderFactory, classify_upstream_error, extract_response_text
from .models import DEFAULT_SCORE, AnalysisResult, Metric, Transcript, new_id
from .privacy import SummaryRedactor, sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_TIMEOUT_S = 120.0

LANGUAGE_NAMES = {"lt": "Lithuanian", "en": "English"}

ANALYSIS_SYSTEM_PROMPT = """You are a quality analyst for a customer-service call centre.
You receive a call transcript in which personal data is already replaced by
placeholders such as [NAME] or [PHONE]. Return a single JSON object and nothing else:

{{
  "sentimentScore": <0-100, overall tone of the call>,
  "customerSatisfaction": <0-100, how satisfied the customer is with the outcome>,
  "agentPerformance": <0-100, professionalism, empathy, problem solving, communication>,
  "warnings": [<short strings: unprofessional tone, aggression, unresolved problem, missing empathy, rule violations>],
  "summary": "<2-4 sentences: who called and why, how the agent helped, whether the issue is resolved>",
  "metrics": [{{"label": "<name>", "value": <number>, "trend": "up" | "down" | "neutral"}}]
}}

Scoring bands: 80-100 very positive, 60-79 positive, 40-59 neutral or mixed,
20-39 negative, 0-19 very negative.

Always include "warnings", using [] when there is nothing to flag.
Write the summary in {language}. Never include names, phone numbers, emails,
addresses, person codes or account numbers in the summary; keep placeholders as they are.
The summary must describe the actual content of the call, not generic phrases."""


def format_dialogue(transcript: Transcript) -> str:
    """Render the transcript as ``speaker: text`` lines for the prompt."""
    if not transcript.segments:
        return transcript.text
    return "\n\n".join(f"{seg.speaker or 'Speaker'}: {seg.text}" for seg in transcript.segments)


def clamp_score(value: Any, default: int = DEFAULT_SCORE) -> int:
    """Coerce a model-provided score into an integer between 0 and 100."""
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return default
    if not isinstance(value, int | float) or math.isnan(value):
        return default
    return int(round(min(100.0, max(0.0, float(value)))))


def parse_analysis_json(response_text: str) -> dict[str, Any]:
    """Parse the model reply, tolerating markdown code fences and stray prose.

    Raises:
        AnalysisError: If no JSON object can be recovered.
    """
    text = response_text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start < 0 or end <= start:
            raise AnalysisError("analysis response is not JSON") from None
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError as e:
            raise AnalysisError(f"analysis response is not valid JSON: {e.msg}") from e

    if not isinstance(data, dict):
        raise AnalysisError("analysis response is not a JSON object")
    return data


def build_analysis_result(data: dict[str, Any], redactor: SummaryRedactor) -> AnalysisResult:
    """Normalise parsed model output into an ``AnalysisResult``."""
    warnings = [w.strip() for w in data.get("warnings") or [] if isinstance(w, str) and w.strip()]
    metrics = [Metric.from_dict(m) for m in data.get("metrics") or [] if isinstance(m, dict)]
    summary = data.get("summary")

    return AnalysisResult(
        id=new_id(),
        sentiment_score=clamp_score(data.get("sentimentScore")),
        customer_satisfaction=clamp_score(data.get("customerSatisfaction")),
        agent_performance=clamp_score(data.get("agentPerformance")),
        warnings=warnings,
        metrics=[m for m in metrics if m.label],
        summary=redactor.redact(summary if isinstance(summary, str) else ""),
        compliance_checked=True,
    )


class CallAnalyzer:
    """Score a masked call transcript with a text-generation model."""

    def __init__(
        self,
        provider_factory: ProviderFactory,
        models: Sequence[str],
        timeout_s: float = DEFAULT_ANALYSIS_TIMEOUT_S,
        redactor: SummaryRedactor | None = None,
    ) -> None:
        if not models:
            raise ValueError("CallAnalyzer needs at least one candidate model")
        self.provider_factory = provider_factory
        self.models = tuple(models)
        self.timeout_s = timeout_s
        self.redactor = redactor or SummaryRedactor()

    async def analyze(self, transcript: Transcript) -> AnalysisResult:
        """Analyse ``transcript``.

        Raises:
            UpstreamQuotaError: If the model service reports quota exhaustion.
            UpstreamOverloadedError: If every candidate was overloaded or failed
                after at least one overload.
            AnalysisError: If no candidate produced a usable analysis.
        """
        system = ANALYSIS_SYSTEM_PROMPT.format(
            language=LANGUAGE_NAMES.get(transcript.language, transcript.language or "English")
        )
        user = format_dialogue(transcript)
        if not user.strip():
            raise AnalysisError("transcript is empty; nothing to analyse")

        overloaded: UpstreamOverloadedError | None = None
        last_error: str = "no candidate models"

        for model in self.models:
            start_time = time.time()
            try:
                provider = self.provider_factory(model)
                response = await provider.complete_with_timeout(system, user, self.timeout_s)
                data = parse_analysis_json(extract_response_text(response))
            except UpstreamQuotaError as e:
                e.model = e.model or model
                logger.error("Analysis model %s hit a quota limit", model, extra={"model": model})
                raise
            except UpstreamOverloadedError as e:
                overloaded = e
                logger.warning("Analysis model %s is overloaded, trying next", model)
                continue
            except TimeoutError:
                last_error = f"{model} timed out after {self.timeout_s:.0f}s"
                logger.warning("Analysis model %s timed out", model, extra={"model": model})
                continue
            except Exception as e:
                upstream = classify_upstream_error(e, model=model)
                if isinstance(upstream, UpstreamQuotaError):
                    raise upstream from e
                if isinstance(upstream, UpstreamOverloadedError):
                    overloaded = upstream
                    continue
                last_error = f"{model}: {sanitize_error_message(e)}"
                logger.warning("Analysis model %s failed: %s", model, last_error)
                continue

            result = build_analysis_result(data, self.redactor)
            logger.info(
                "Call analysed with %s in %.0f ms",
                model,
                (time.time() - start_time) * 1000,
                extra={"transcript_id": transcript.id, "model": model},
            )
            return result

        if overloaded is not None:
            raise overloaded
        raise AnalysisError(f"Analysis failed with all models: {last_error}")
