"""Deterministic reasoning-service failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from task_engine.orchestrator.errors import UpstreamServiceError

UPSTREAM_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "please retry",
    "try again later",
    "overloaded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
)
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 500, 502, 503, 504})


@dataclass(frozen=True, slots=True)
class _Rule:
    name: str
    reason: str
    retryable: bool
    patterns: tuple[str, ...]
    status_codes: frozenset[int] = frozenset()
    status_rule: str | None = None


# first match wins
_RULES: tuple[_Rule, ...] = (
    _Rule("billing_or_quota", "billing_or_quota", False, _BILLING_OR_QUOTA_PATTERNS),
    _Rule(
        "access_or_auth",
        "access_or_auth",
        False,
        _ACCESS_OR_AUTH_PATTERNS,
        status_codes=frozenset({401, 403}),
    ),
    _Rule("model_not_available", "model_not_available", False, _MODEL_NOT_AVAILABLE_PATTERNS),
    _Rule(
        "rate_limit_transient",
        "rate_limit_transient",
        True,
        _RATE_LIMIT_TRANSIENT_PATTERNS,
        status_codes=frozenset({429}),
    ),
    _Rule(
        "generic_transient",
        "transient",
        True,
        _GENERIC_TRANSIENT_PATTERNS,
        status_codes=_TRANSIENT_STATUS_CODES,
        status_rule="transient_status_code",
    ),
)


@dataclass(slots=True)
class UpstreamFailureClassification:
    """Normalized failure classification result."""

    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_error(self, message: str) -> UpstreamServiceError:
        return UpstreamServiceError(
            message,
            retryable=self.retryable,
            reason_code=self.reason_code,
        )

    def to_details(self, *, service: str) -> dict[str, object]:
        """Serialize classifier diagnostics for failure entries."""

        return {
            "classifier_version": UPSTREAM_FAILURE_CLASSIFIER_VERSION,
            "service": service,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_upstream_failure(
    *,
    service: str,
    message: str,
    status_code: int | None = None,
    exit_code: int | None = None,
    transient_exit_codes: tuple[int, ...] = (124,),
) -> UpstreamFailureClassification:
    """Classify a failed reasoning-service call into a deterministic retry class."""

    haystack = message.lower()
    for rule in _RULES:
        pattern = next((item for item in rule.patterns if item in haystack), None)
        if pattern is not None:
            return _classification(service, rule, rule.name, pattern)
        if status_code is not None and status_code in rule.status_codes:
            return _classification(service, rule, rule.status_rule or rule.name, None)

    if exit_code is not None and exit_code in transient_exit_codes:
        return UpstreamFailureClassification(
            retryable=True,
            reason_code=f"{service}_transient",
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )
    return UpstreamFailureClassification(
        retryable=False,
        reason_code=f"{service}_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _classification(
    service: str,
    rule: _Rule,
    matched_rule: str,
    pattern: str | None,
) -> UpstreamFailureClassification:
    return UpstreamFailureClassification(
        retryable=rule.retryable,
        reason_code=f"{service}_{rule.reason}",
        matched_rule=matched_rule,
        matched_pattern=pattern,
    )
