"""Deterministic failure classification for the queue retry policy."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from cv_evaluator.jobs.errors import PermanentJobError

FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Normalized failure classes recorded on work items."""

    INPUT_ERROR = "input_error"
    RATE_LIMITED = "rate_limited"
    PROVIDER_TRANSIENT = "provider_transient"
    STORAGE_ERROR = "storage_error"
    IO_ERROR = "io_error"
    UNKNOWN_TRANSIENT = "unknown_transient"


_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "resource_exhausted",
    "resource exhausted",
    "quota",
)
_PROVIDER_PATTERNS: tuple[str, ...] = (
    "gemini",
    "embedding",
    "qdrant",
    "deadline exceeded",
    "temporarily unavailable",
    "service unavailable",
    "503",
    "connection reset",
    "connection refused",
    "timed out",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class != FailureClass.INPUT_ERROR

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for work item events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify a processing error; only input errors are final on first failure."""

    error_type = type(error).__name__
    if isinstance(error, PermanentJobError):
        return FailureClassification(
            failure_class=FailureClass.INPUT_ERROR,
            reason_code=_reason_code(error_type),
            matched_rule="permanent_error_type",
            matched_pattern=None,
        )
    if isinstance(error, (SQLAlchemyError, sqlite3.Error)):
        return FailureClassification(
            failure_class=FailureClass.STORAGE_ERROR,
            reason_code=_reason_code(error_type),
            matched_rule="storage_error_type",
            matched_pattern=None,
        )

    haystack = f"{error_type} {error}".lower()
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code="provider_rate_limited",
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _PROVIDER_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            reason_code="provider_transient",
            matched_rule="provider_transient",
            matched_pattern=pattern,
        )
    if isinstance(error, OSError):
        return FailureClassification(
            failure_class=FailureClass.IO_ERROR,
            reason_code=_reason_code(error_type),
            matched_rule="os_error_type",
            matched_pattern=None,
        )
    return FailureClassification(
        failure_class=FailureClass.UNKNOWN_TRANSIENT,
        reason_code=_reason_code(error_type),
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def _reason_code(error_type: str) -> str:
    chars: list[str] = []
    for index, char in enumerate(error_type):
        if char.isupper() and index > 0:
            chars.append("_")
        chars.append(char.lower())
    return "".join(chars)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
