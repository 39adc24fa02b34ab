from __future__ import annotations

from pathlib import Path

import allure
import pytest

from cv_evaluator.config import Settings
from cv_evaluator.queue.models import BackoffPolicy, BackoffType, QueueOptions

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "GEMINI_API_KEY",
        "CV_EVALUATOR_DB_PATH",
        "CV_EVALUATOR_QUEUE_ATTEMPTS",
        "CV_EVALUATOR_QUEUE_BACKOFF_TYPE",
        "CV_EVALUATOR_QUEUE_REMOVE_ON_COMPLETE",
        "CV_EVALUATOR_WORKER_CONCURRENCY",
        "CV_EVALUATOR_CHUNK_SIZE",
        "CV_EVALUATOR_CHUNK_OVERLAP",
        "CV_EVALUATOR_RETRIEVAL_TOP_K",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_queue_contract() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".cv_evaluator.db")
    assert settings.queue.options() == QueueOptions(
        attempts=3,
        backoff=BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=5000),
        remove_on_complete=True,
        remove_on_fail=False,
    )
    assert settings.queue.concurrency == 1
    assert settings.vector.collection_name == "ground_truth_docs"
    assert settings.vector.top_k == 4
    assert (settings.vector.chunk_size, settings.vector.chunk_overlap) == (1000, 100)
    assert settings.model.embedding_dimension == 768


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "secret")
    monkeypatch.setenv("CV_EVALUATOR_WORKER_CONCURRENCY", "4")
    monkeypatch.setenv("CV_EVALUATOR_QUEUE_BACKOFF_TYPE", " FIXED ")
    monkeypatch.setenv("CV_EVALUATOR_QUEUE_REMOVE_ON_COMPLETE", "no")

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.queue.concurrency == 4
    assert settings.queue.options().backoff.type == BackoffType.FIXED
    assert settings.queue.remove_on_complete is False
    settings.validate_for_worker()


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_EVALUATOR_QUEUE_REMOVE_ON_COMPLETE", "maybe")

    with pytest.raises(ValueError, match="CV_EVALUATOR_QUEUE_REMOVE_ON_COMPLETE"):
        Settings.from_env()


def test_worker_requires_api_key() -> None:
    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        Settings.from_env().validate_for_worker()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("CV_EVALUATOR_QUEUE_ATTEMPTS", "0"),
        ("CV_EVALUATOR_WORKER_CONCURRENCY", "0"),
        ("CV_EVALUATOR_RETRIEVAL_TOP_K", "0"),
        ("CV_EVALUATOR_QUEUE_BACKOFF_TYPE", "linear"),
        ("CV_EVALUATOR_CHUNK_OVERLAP", "1000"),
    ],
)
def test_worker_validation_names_offending_variable(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "secret")
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env().validate_for_worker()


def test_ingestion_validation_checks_chunking(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "secret")
    monkeypatch.setenv("CV_EVALUATOR_CHUNK_SIZE", "100")
    monkeypatch.setenv("CV_EVALUATOR_CHUNK_OVERLAP", "150")

    with pytest.raises(ValueError, match="CV_EVALUATOR_CHUNK_OVERLAP"):
        Settings.from_env().validate_for_ingestion()
