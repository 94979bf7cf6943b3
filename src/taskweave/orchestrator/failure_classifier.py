"""Deterministic executor failure classification for retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from taskweave.orchestrator.errors import ExecutionCancelledError, ExecutorError
from taskweave.orchestrator.models import ErrorInfo, ErrorKind
from taskweave.orchestrator.sanitization import summarize_exception

FAILURE_CLASSIFIER_VERSION = 2

# Patterns are regexes over the lowercased message; status codes match as whole tokens.
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate-limit",
    r"\b429\b",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    r"\b503\b",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
    "could not resolve host",
    r"\bdns\b",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    r"\b40[13]\b",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "not found",
    r"\b404\b",
    "no such",
)
_INVALID_INPUT_PATTERNS: tuple[str, ...] = (
    "invalid",
    "malformed",
    "validation",
    "bad request",
)

_TRANSIENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
)
_PERMANENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    ValueError,
    TypeError,
    KeyError,
    LookupError,
    PermissionError,
    NotImplementedError,
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.kind in {ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED}

    def to_error_info(self, error: BaseException) -> ErrorInfo:
        return ErrorInfo(
            kind=self.kind,
            summary=summarize_exception(error),
            reason_code=self.reason_code,
        )

    def to_event_details(self, *, executor: str) -> dict[str, object]:
        """Serialize classifier diagnostics for events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "executor": executor,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_exception(error: BaseException, *, executor: str) -> FailureClassification:  # noqa: PLR0911
    """Classify an executor exception into a deterministic retry class.

    Explicit ``TransientError`` / ``PermanentError`` always win; otherwise
    built-in exception types are consulted, then message patterns, with the
    permanent tables checked before the transient ones. Anything
    left over is treated as permanent so unknown failures never loop.
    """

    if isinstance(error, ExecutionCancelledError):
        return FailureClassification(
            kind=ErrorKind.CANCELLED,
            reason_code=f"{executor}_cancelled",
            matched_rule="cancelled",
            matched_pattern=None,
        )

    if isinstance(error, ExecutorError):
        kind = ErrorKind.TRANSIENT if error.transient else ErrorKind.PERMANENT
        return FailureClassification(
            kind=kind,
            reason_code=error.reason_code or f"{executor}_{kind.value}",
            matched_rule="explicit",
            matched_pattern=None,
        )

    haystack = str(error).lower()

    if isinstance(error, _PERMANENT_EXCEPTION_TYPES):
        return FailureClassification(
            kind=ErrorKind.PERMANENT,
            reason_code=f"{executor}_invalid_input",
            matched_rule="permanent_exception_type",
            matched_pattern=None,
        )

    if isinstance(error, _TRANSIENT_EXCEPTION_TYPES):
        return FailureClassification(
            kind=ErrorKind.TRANSIENT,
            reason_code=f"{executor}_{type(error).__name__.lower()}",
            matched_rule="transient_exception_type",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.PERMANENT,
            reason_code=f"{executor}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NOT_FOUND_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.PERMANENT,
            reason_code=f"{executor}_not_found",
            matched_rule="not_found",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _INVALID_INPUT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.PERMANENT,
            reason_code=f"{executor}_invalid_input",
            matched_rule="invalid_input",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.RATE_LIMITED,
            reason_code=f"{executor}_rate_limited",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.TRANSIENT,
            reason_code=f"{executor}_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        kind=ErrorKind.PERMANENT,
        reason_code=f"{executor}_unclassified",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack):
            return pattern
    return None
