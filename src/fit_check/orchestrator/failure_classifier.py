"""Deterministic failure classification for stage calls.

Every failure that leaves a stage is turned into an :class:`ExecutorError` here.
The code is derived only from the failure message, so the same message always
maps to the same code and recoverability regardless of stage or attempt.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from fit_check.orchestrator.models import now_ms

CLASSIFIER_VERSION = 1


class ErrorCode(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    AUTHENTICATION = "AUTHENTICATION"
    CONTENT_FILTER = "CONTENT_FILTER"
    SCHEMA_VALIDATION = "SCHEMA_VALIDATION"
    CANCELLED = "CANCELLED"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    UNKNOWN = "UNKNOWN"


RECOVERABLE_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.RATE_LIMIT,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.SERVICE_UNAVAILABLE,
        ErrorCode.TIMEOUT,
    },
)


@dataclass(eq=False)
class ExecutorError(Exception):
    """Classified stage failure; raised by the resilience layer and kept in ``errors[]``.

    Instances are never mutated after construction; derive copies with ``dataclasses.replace``.
    """

    code: ErrorCode
    message: str
    stage: str
    recoverable: bool
    timestamp: int = field(default_factory=now_ms)
    attempt: int | None = None
    cause: BaseException | None = field(default=None, repr=False)
    matched_rule: str | None = None
    matched_pattern: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.stage, Enum):
            self.stage = self.stage.value
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return format_error(self)

    def to_dict(self) -> dict[str, Any]:
        """User-visible shape; never carries a traceback."""

        payload: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "stage": self.stage,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp,
        }
        if self.attempt is not None:
            payload["attempt"] = self.attempt
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecutorError:
        attempt = raw.get("attempt")
        return cls(
            code=ErrorCode(raw["code"]),
            message=str(raw.get("message", "")),
            stage=str(raw.get("stage", "")),
            recoverable=bool(raw.get("recoverable", False)),
            timestamp=int(raw.get("timestamp", now_ms())),
            attempt=int(attempt) if attempt is not None else None,
        )


_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"rate.?limit",
    r"429",
    r"too many requests",
    r"quota exceeded",
    r"throttl",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    r"network",
    r"fetch failed",
    r"econnrefused",
    r"enotfound",
    r"etimedout",
    r"connection refused",
    r"dns",
    r"socket",
)
_SERVICE_UNAVAILABLE_PATTERNS: tuple[str, ...] = (
    r"503",
    r"502",
    r"500",
    r"service unavailable",
    r"bad gateway",
    r"internal server error",
    r"server error",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    r"timeout",
    r"timed? out",
    r"deadline",
)
_AUTHENTICATION_PATTERNS: tuple[str, ...] = (
    r"401",
    r"403",
    r"unauthorized",
    r"forbidden",
    r"invalid.?api.?key",
    r"authentication",
    r"not authenticated",
)
_CONTENT_FILTER_PATTERNS: tuple[str, ...] = (
    r"content filter",
    r"safety",
    r"blocked",
    r"policy violation",
    r"harmful",
    r"inappropriate",
)
_SCHEMA_VALIDATION_PATTERNS: tuple[str, ...] = (
    r"validation",
    r"schema",
    r"invalid response",
    r"parse error",
    r"json",
    r"zod",
)
_CANCELLED_PATTERNS: tuple[str, ...] = (
    r"cancel",
    r"abort",
)

# Precedence order: first matching rule wins.
_RULES: tuple[tuple[ErrorCode, str, tuple[str, ...]], ...] = (
    (ErrorCode.RATE_LIMIT, "rate_limit", _RATE_LIMIT_PATTERNS),
    (ErrorCode.NETWORK_ERROR, "network", _NETWORK_PATTERNS),
    (ErrorCode.SERVICE_UNAVAILABLE, "service_unavailable", _SERVICE_UNAVAILABLE_PATTERNS),
    (ErrorCode.TIMEOUT, "timeout", _TIMEOUT_PATTERNS),
    (ErrorCode.AUTHENTICATION, "authentication", _AUTHENTICATION_PATTERNS),
    (ErrorCode.CONTENT_FILTER, "content_filter", _CONTENT_FILTER_PATTERNS),
    (ErrorCode.SCHEMA_VALIDATION, "schema_validation", _SCHEMA_VALIDATION_PATTERNS),
    (ErrorCode.CANCELLED, "cancelled", _CANCELLED_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized classification result before it is bound to a stage."""

    code: ErrorCode
    recoverable: bool
    matched_rule: str
    matched_pattern: str | None


def classify_message(message: str) -> FailureClassification:
    """Map a failure message onto the closed error taxonomy."""

    haystack = message.lower()
    for code, rule, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                code=code,
                recoverable=code in RECOVERABLE_CODES,
                matched_rule=rule,
                matched_pattern=pattern,
            )
    return FailureClassification(
        code=ErrorCode.UNKNOWN,
        recoverable=False,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def classify_error(error: object, stage: str, attempt: int | None = None) -> ExecutorError:
    """Classify a raw failure (exception, string, or error-like object)."""

    if isinstance(error, ExecutorError):
        if attempt is None or error.attempt == attempt:
            return error
        return replace(error, attempt=attempt)

    message = extract_message(error)
    classification = classify_message(message)
    return ExecutorError(
        code=classification.code,
        message=message,
        stage=stage,
        recoverable=classification.recoverable,
        attempt=attempt,
        cause=error if isinstance(error, BaseException) else None,
        matched_rule=classification.matched_rule,
        matched_pattern=classification.matched_pattern,
    )


def extract_message(error: object) -> str:
    if isinstance(error, BaseException):
        text = str(error)
        return text or type(error).__name__
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    message = getattr(error, "message", None)
    if isinstance(message, str):
        return message
    return "Unknown error"


def create_timeout_error(stage: str, timeout_ms: int, attempt: int | None = None) -> ExecutorError:
    return ExecutorError(
        code=ErrorCode.TIMEOUT,
        message=f"Operation timed out after {timeout_ms}ms",
        stage=stage,
        recoverable=True,
        attempt=attempt,
        matched_rule="timeout_elapsed",
    )


def create_cancellation_error(stage: str, attempt: int | None = None) -> ExecutorError:
    return ExecutorError(
        code=ErrorCode.CANCELLED,
        message="Operation was cancelled",
        stage=stage,
        recoverable=False,
        attempt=attempt,
        matched_rule="cancellation_signal",
    )


def create_max_retries_error(
    stage: str,
    max_attempts: int,
    last_error: ExecutorError,
) -> ExecutorError:
    return ExecutorError(
        code=ErrorCode.MAX_RETRIES_EXCEEDED,
        message=f"Max retries ({max_attempts}) exceeded. Last error: {last_error.message}",
        stage=stage,
        recoverable=False,
        attempt=max_attempts,
        cause=last_error,
        matched_rule="retries_exhausted",
    )


def is_retryable_code(code: ErrorCode) -> bool:
    return code in RECOVERABLE_CODES


def should_retry(error: ExecutorError, attempt: int, max_attempts: int) -> bool:
    """Retry only recoverable failures while attempts remain."""

    return error.recoverable and attempt < max_attempts


def is_fatal_error(error: ExecutorError) -> bool:
    return not error.recoverable or error.code == ErrorCode.MAX_RETRIES_EXCEEDED


def format_error(error: ExecutorError) -> str:
    text = f"[{error.code.value}] {error.stage}: {error.message}"
    if error.attempt is not None:
        text += f" (attempt {error.attempt})"
    return text


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack):
            return pattern
    return None
