"""Deterministic failure classification for blocked steps and backend errors."""

from __future__ import annotations

from dataclasses import dataclass

from step_orchestrator.orchestrator.errors import (
    AttemptTimeoutError,
    ModuleNotAllowedError,
    PlanResponseError,
    SandboxExecutionError,
    SandboxTimeoutError,
    UnknownExecutorTypeError,
    ValidationFailedError,
)
from step_orchestrator.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "exceeded",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "auth",
    "401",
    "403",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "does not exist",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "timed out",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task props."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


_ERROR_TYPE_RULES: tuple[tuple[type[BaseException], FailureClass, str], ...] = (
    (SandboxTimeoutError, FailureClass.TIMEOUT, "sandbox_timeout"),
    (AttemptTimeoutError, FailureClass.TIMEOUT, "attempt_timeout"),
    (UnknownExecutorTypeError, FailureClass.UNKNOWN_EXECUTOR, "unknown_executor"),
    (PlanResponseError, FailureClass.PLAN_INVALID, "plan_invalid"),
    (ModuleNotAllowedError, FailureClass.MODULE_NOT_ALLOWED, "module_not_allowed"),
    (ValidationFailedError, FailureClass.VALIDATION_FAILED, "validation_failed"),
)


def classify_step_failure(error: BaseException, *, executor: str = "step") -> FailureClassification:
    """Classify an exception raised while executing a step."""

    for error_type, failure_class, rule in _ERROR_TYPE_RULES:
        if isinstance(error, error_type):
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"{executor}_{rule}",
                matched_rule=rule,
                matched_pattern=None,
            )

    if isinstance(error, SandboxExecutionError):
        if error.error_type == "ModuleNotAllowedError":
            return FailureClassification(
                failure_class=FailureClass.MODULE_NOT_ALLOWED,
                reason_code=f"{executor}_module_not_allowed",
                matched_rule="module_not_allowed",
                matched_pattern=error.error_type,
            )
        return FailureClassification(
            failure_class=FailureClass.SANDBOX_RUNTIME,
            reason_code=f"{executor}_sandbox_runtime",
            matched_rule="sandbox_runtime",
            matched_pattern=error.error_type,
        )

    transient = getattr(error, "transient", None)
    return _classify_text(
        agent=executor,
        haystack=str(error).lower(),
        transient_hint=transient is True,
        transient_rule="transient_hint",
    )


def classify_backend_failure(
    *,
    agent: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> FailureClassification:
    """Classify non-timeout CLI backend failure into a retry class."""

    return _classify_text(
        agent=agent,
        haystack=f"{stderr}\n{stdout}".lower(),
        transient_hint=exit_code in transient_exit_codes,
        transient_rule="transient_exit_code",
    )


def _classify_text(
    *,
    agent: str,
    haystack: str,
    transient_hint: bool,
    transient_rule: str,
) -> FailureClassification:
    for patterns, failure_class, rule in (
        (_BILLING_OR_QUOTA_PATTERNS, FailureClass.BILLING_OR_QUOTA, "billing_or_quota"),
        (_ACCESS_OR_AUTH_PATTERNS, FailureClass.ACCESS_OR_AUTH, "access_or_auth"),
        (_MODEL_NOT_AVAILABLE_PATTERNS, FailureClass.MODEL_NOT_AVAILABLE, "model_not_available"),
        (_RATE_LIMIT_TRANSIENT_PATTERNS, FailureClass.BACKEND_TRANSIENT, "rate_limit_transient"),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"{agent}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or transient_hint:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{agent}_backend_transient",
            matched_rule=transient_rule if pattern is None else "generic_transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{agent}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
