"""Shared test fixtures and model doubles."""

from __future__ import annotations

import hashlib
import json
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from cv_evaluator.jobs.models import DocumentCreate, JobCreate
from cv_evaluator.jobs.repository import JobRepository
from cv_evaluator.queue.repository import QueueRepository

CV_PROMPT_MARKER = "senior technical recruiter"
REPORT_PROMPT_MARKER = "principal backend engineer"


def scoring_reply(score: float, feedback: str) -> str:
    return json.dumps({"score": score, "feedback": feedback})


class FakeGenerator:
    """Answers by stage; a value may be a string, ``None`` or an exception to raise."""

    def __init__(
        self,
        *,
        cv: object = scoring_reply(0.8, "Strong backend background."),
        report: object = scoring_reply(4.0, "Solid case study."),
        summary: object = "Recommended for the next round.",
    ) -> None:
        self.replies = {"cv": cv, "report": report, "summary": summary}
        self.calls: list[tuple[str, bool]] = []
        self._lock = threading.Lock()

    def generate(self, prompt: str, *, json_output: bool = False) -> str | None:
        if CV_PROMPT_MARKER in prompt:
            stage = "cv"
        elif REPORT_PROMPT_MARKER in prompt:
            stage = "report"
        else:
            stage = "summary"
        with self._lock:
            self.calls.append((stage, json_output))
        reply = self.replies[stage]
        if isinstance(reply, Exception):
            raise reply
        return reply  # type: ignore[return-value]

    def stages(self) -> list[str]:
        with self._lock:
            return sorted(stage for stage, _ in self.calls)


class FakeRetriever:
    def __init__(
        self,
        context: str = "Rubric: backend, cloud, AI.",
        error: Exception | None = None,
    ) -> None:
        self.context = context
        self.error = error
        self.queries: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def retrieve(self, query: str, limit: int) -> str:
        with self._lock:
            self.queries.append((query, limit))
        if self.error is not None:
            raise self.error
        return self.context


class FakeEmbedder:
    """Deterministic hash-based vectors of a fixed dimension."""

    def __init__(self, dimension: int = 8) -> None:
        self.dimension = dimension
        self.document_calls = 0
        self.query_calls = 0

    def embed_document(self, text: str) -> list[float]:
        self.document_calls += 1
        return self._vector(text)

    def embed_query(self, text: str) -> list[float]:
        self.query_calls += 1
        return self._vector(text)

    def _vector(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(digest[index % len(digest)] + 1) / 256.0 for index in range(self.dimension)]


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "evaluator.db"


@pytest.fixture()
def job_store(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def queue_repo(db_path: Path) -> Iterator[QueueRepository]:
    repository = QueueRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def register_pair(
    job_store: JobRepository,
    tmp_path: Path,
) -> Callable[..., tuple[str, str]]:
    """Write a CV and report as text files and register them; returns their ids."""

    counter = {"value": 0}

    def _register(
        cv_text: str = "Jane Doe, backend engineer, 6 years of Python and Kubernetes.",
        report_text: str = "Case study: async evaluation pipeline with retries.",
    ) -> tuple[str, str]:
        counter["value"] += 1
        index = counter["value"]
        cv_file = tmp_path / f"cv-{index}.txt"
        report_file = tmp_path / f"report-{index}.txt"
        cv_file.write_text(cv_text, "utf-8")
        report_file.write_text(report_text, "utf-8")
        cv, report = job_store.register_documents(
            cv=DocumentCreate(filename=cv_file.name, stored_path=str(cv_file)),
            report=DocumentCreate(filename=report_file.name, stored_path=str(report_file)),
        )
        return cv.document_id, report.document_id

    return _register


@pytest.fixture()
def make_job(
    job_store: JobRepository,
    register_pair: Callable[..., tuple[str, str]],
) -> Callable[..., str]:
    def _make(title: str = "Backend Engineer") -> str:
        cv_id, report_id = register_pair()
        job = job_store.create_job(
            JobCreate(title=title, cv_document_id=cv_id, report_document_id=report_id),
        )
        return job.job_id

    return _make
