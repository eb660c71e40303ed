from __future__ import annotations

import allure

from task_engine.orchestrator.failure_classifier import (
    UPSTREAM_FAILURE_CLASSIFIER_VERSION,
    classify_upstream_failure,
)

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Reasoning Service"),
]


def test_classifier_version_is_stable() -> None:
    assert UPSTREAM_FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_upstream_failure(
        service="cli",
        message="Quota exceeded for this project",
        exit_code=124,
    )
    assert classified.retryable is False
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"


def test_classifier_maps_auth_status_without_pattern() -> None:
    classified = classify_upstream_failure(service="http", message="", status_code=403)
    assert classified.retryable is False
    assert classified.reason_code == "http_access_or_auth"
    assert classified.matched_pattern is None


def test_classifier_maps_model_unavailable() -> None:
    classified = classify_upstream_failure(service="cli", message="Invalid model requested")
    assert classified.retryable is False
    assert classified.reason_code == "cli_model_not_available"


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_upstream_failure(
        service="http",
        message="HTTP 429 too many requests, please retry",
    )
    assert classified.retryable is True
    assert classified.matched_rule == "rate_limit_transient"


def test_classifier_uses_transient_status_and_exit_codes() -> None:
    by_status = classify_upstream_failure(service="http", message="", status_code=502)
    by_exit = classify_upstream_failure(service="cli", message="", exit_code=124)

    assert by_status.retryable is True
    assert by_status.matched_rule == "transient_status_code"
    assert by_exit.retryable is True
    assert by_exit.matched_rule == "transient_exit_code"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_upstream_failure(
        service="cli",
        message="fatal: unsupported syntax in prompt template",
        exit_code=2,
    )
    assert classified.retryable is False
    assert classified.matched_rule == "fallback_non_retryable"

    error = classified.to_error("command failed")
    assert error.retryable is False
    assert error.reason_code == "cli_non_retryable"
    assert classified.to_details(service="cli") == {
        "classifier_version": 1,
        "service": "cli",
        "reason_code": "cli_non_retryable",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
