from __future__ import annotations

import sqlite3

import allure
import pytest
from sqlalchemy.exc import OperationalError

from cv_evaluator.jobs.errors import InvalidWorkItemError, JobNotFoundError, MissingDocumentError
from cv_evaluator.llm.base import EmbeddingError, ModelProviderError
from cv_evaluator.pipeline.extraction import DocumentExtractionError
from cv_evaluator.queue.failure_classifier import FailureClass, classify_failure

pytestmark = [
    allure.epic("Work Queue"),
    allure.feature("Retry Policy"),
]


@pytest.mark.parametrize(
    "error",
    [
        JobNotFoundError("job-1"),
        MissingDocumentError("job-1", "cv"),
        InvalidWorkItemError("bad payload"),
    ],
)
def test_permanent_errors_are_not_retryable(error: Exception) -> None:
    classification = classify_failure(error)

    assert classification.failure_class == FailureClass.INPUT_ERROR
    assert classification.retryable is False
    assert classification.matched_rule == "permanent_error_type"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (
            ModelProviderError("Gemini request failed: 429 Too Many Requests"),
            FailureClass.RATE_LIMITED,
        ),
        (ModelProviderError("Gemini request failed: 503"), FailureClass.PROVIDER_TRANSIENT),
        (EmbeddingError("Embedding returned an empty vector"), FailureClass.PROVIDER_TRANSIENT),
        (
            OperationalError("SELECT 1", {}, sqlite3.OperationalError("locked")),
            FailureClass.STORAGE_ERROR,
        ),
        (sqlite3.OperationalError("database is locked"), FailureClass.STORAGE_ERROR),
        (FileNotFoundError("Stored document not found: cv.pdf"), FailureClass.IO_ERROR),
        (DocumentExtractionError("Failed to parse PDF cv.pdf"), FailureClass.UNKNOWN_TRANSIENT),
        (RuntimeError("boom"), FailureClass.UNKNOWN_TRANSIENT),
    ],
)
def test_infrastructure_errors_are_retryable(error: Exception, expected: FailureClass) -> None:
    classification = classify_failure(error)

    assert classification.failure_class == expected
    assert classification.retryable is True


def test_event_details_carry_reason_code() -> None:
    details = classify_failure(RuntimeError("boom")).to_event_details()

    assert details["reason_code"] == "runtime_error"
    assert details["matched_rule"] == "fallback_transient"
    assert details["classifier_version"] == 1
