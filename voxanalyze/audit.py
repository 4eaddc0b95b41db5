"""Security self-check for a deployment.

``run_security_audit`` inspects the effective configuration and the record
store and reports one ``AuditResult`` per check. Nothing is changed; the
report is meant for operators (CLI ``audit`` command, ``/security-audit``
endpoint).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Literal

from .auth import Role, StaticTokenAuthenticator
from .config import PipelineConfig
from .crypto import KEY_LENGTH, parse_key_material
from .exceptions import ConfigurationError, CryptoError
from .models import utc_now_iso

logger = logging.getLogger(__name__)

AuditStatus = Literal["passed", "failed", "warning"]

_PROVIDER_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}
_PROVIDER_KEY_PREFIX = {
    "anthropic": "sk-ant-",
    "openai": "sk-",
}


@dataclass
class AuditResult:
    check: str
    status: AuditStatus
    message: str
    details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"check": self.check, "status": self.status, "message": self.message}
        if self.details:
            d["details"] = list(self.details)
        return d


@dataclass
class AuditReport:
    """All check results plus a roll-up status."""

    results: list[AuditResult]
    timestamp: str = field(default_factory=utc_now_iso)

    def count(self, status: AuditStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def overall(self) -> AuditStatus:
        if self.count("failed"):
            return "failed"
        if self.count("warning"):
            return "warning"
        return "passed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "summary": {
                "total": len(self.results),
                "passed": self.count("passed"),
                "failed": self.count("failed"),
                "warnings": self.count("warning"),
            },
            "results": [r.to_dict() for r in self.results],
            "overall": self.overall,
        }


# =============================================================================
# Checks
# =============================================================================


def check_encryption_key(config: PipelineConfig) -> AuditResult:
    name = "Encryption Key"
    if not config.encryption_key:
        return AuditResult(name, "failed", "Encryption key not configured")
    try:
        raw = parse_key_material(config.encryption_key)
    except CryptoError as e:
        return AuditResult(name, "failed", "Encryption key is malformed", [str(e)])
    if len(raw) < KEY_LENGTH:
        return AuditResult(
            name,
            "warning",
            f"Encryption key is {len(raw) * 8} bits (recommended: {KEY_LENGTH * 8})",
        )
    return AuditResult(name, "passed", "Encryption key length is adequate")


def check_llm_credentials(config: PipelineConfig) -> AuditResult:
    name = "LLM Credentials"
    provider = config.llm_provider
    if provider == "mock":
        return AuditResult(name, "warning", "Mock LLM provider configured; no real masking model")

    env_var = _PROVIDER_KEY_ENV.get(provider)
    api_key = config.llm_api_key or (os.environ.get(env_var) if env_var else None)
    if not api_key:
        return AuditResult(
            name,
            "failed",
            f"No API key configured for provider {provider!r}",
            [env_var] if env_var else [],
        )

    prefix = _PROVIDER_KEY_PREFIX.get(provider)
    if prefix and not api_key.startswith(prefix) and not config.llm_base_url:
        return AuditResult(
            name,
            "warning",
            f"API key format may be incorrect for {provider} (expected prefix {prefix!r})",
        )
    return AuditResult(name, "passed", f"API key configured for {provider}")


def check_cors(config: PipelineConfig) -> AuditResult:
    name = "CORS Configuration"
    if not config.allowed_origins or "*" in config.allowed_origins:
        return AuditResult(
            name,
            "warning",
            "Wildcard CORS enabled (OK for development, restrict for production)",
        )
    return AuditResult(
        name,
        "passed",
        f"CORS restricted to: {', '.join(config.allowed_origins)}",
        list(config.allowed_origins),
    )


def check_api_tokens(config: PipelineConfig) -> AuditResult:
    name = "API Authentication"
    if not config.api_tokens:
        return AuditResult(name, "failed", "No API tokens configured; every request is rejected")
    try:
        authenticator = StaticTokenAuthenticator.from_entries(config.api_tokens)
    except ConfigurationError as e:
        return AuditResult(name, "failed", "API token entries are malformed", [str(e)])

    admins = sum(1 for p in authenticator.principals() if p.role is Role.ADMIN)
    if admins == 0:
        return AuditResult(name, "warning", "No admin token configured")
    return AuditResult(name, "passed", f"{len(config.api_tokens)} API tokens configured")


def check_plaintext_fallback(config: PipelineConfig) -> AuditResult:
    name = "Plaintext Fallback"
    if config.allow_plaintext_fallback:
        return AuditResult(
            name,
            "warning",
            "Transcripts may be stored unencrypted when encryption fails",
        )
    return AuditResult(name, "passed", "Encryption failures abort processing")


def check_record_store(store: Any) -> AuditResult:
    name = "Record Store"
    if store is None:
        return AuditResult(name, "warning", "Record store not opened; check skipped")
    if not store.ping():
        return AuditResult(name, "failed", "Record store is not reachable", [str(store.path)])
    return AuditResult(name, "passed", "Record store is reachable")


def run_security_audit(config: PipelineConfig, store: Any = None) -> AuditReport:
    """Run every check against ``config`` and, if given, ``store``."""
    results = [
        check_encryption_key(config),
        check_llm_credentials(config),
        check_api_tokens(config),
        check_cors(config),
        check_plaintext_fallback(config),
        check_record_store(store),
    ]
    report = AuditReport(results=results)
    logger.info(
        "Security audit finished: %s (%d passed, %d warnings, %d failed)",
        report.overall,
        report.count("passed"),
        report.count("warning"),
        report.count("failed"),
    )
    return report
