from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace

import allure
import pytest
from conftest import FakeGenerator, FakeRetriever

from cv_evaluator.jobs.errors import InvalidWorkItemError
from cv_evaluator.jobs.models import JobStatus
from cv_evaluator.jobs.repository import JobRepository
from cv_evaluator.llm.base import ModelProviderError
from cv_evaluator.pipeline.consumer import EvaluationConsumer
from cv_evaluator.pipeline.extraction import PdfTextExtractor
from cv_evaluator.pipeline.orchestrator import EvaluationOrchestrator
from cv_evaluator.queue.models import EVALUATE_JOB, WorkItemCreate, WorkItemView
from cv_evaluator.queue.repository import QueueRepository

pytestmark = [
    allure.epic("Evaluation Pipeline"),
    allure.feature("Queue Consumer"),
]


def _consumer(job_store: JobRepository, generator: FakeGenerator) -> EvaluationConsumer:
    return EvaluationConsumer(
        job_store=job_store,
        orchestrator=EvaluationOrchestrator(
            job_store=job_store,
            extractor=PdfTextExtractor(),
            retriever=FakeRetriever(),
            generator=generator,
        ),
    )


def _claimed_item(queue_repo: QueueRepository, job_id: str) -> WorkItemView:
    queue_repo.enqueue(WorkItemCreate(name=EVALUATE_JOB, payload={"jobId": job_id}, job_id=job_id))
    item = queue_repo.claim_next(worker_id="test")
    assert item is not None
    return item


def test_process_completes_job(
    job_store: JobRepository,
    queue_repo: QueueRepository,
    make_job: Callable[..., str],
) -> None:
    job_id = make_job()
    _consumer(job_store, FakeGenerator()).process(_claimed_item(queue_repo, job_id))

    assert job_store.get_job(job_id).status == JobStatus.COMPLETED


def test_failure_is_recorded_then_reraised(
    job_store: JobRepository,
    queue_repo: QueueRepository,
    make_job: Callable[..., str],
) -> None:
    job_id = make_job()
    generator = FakeGenerator(cv=ModelProviderError("Gemini request failed: quota"))

    with pytest.raises(ModelProviderError, match="quota"):
        _consumer(job_store, generator).process(_claimed_item(queue_repo, job_id))

    loaded = job_store.get_job_with_result(job_id)
    assert loaded is not None
    assert loaded.job.status == JobStatus.FAILED
    assert loaded.result is not None
    assert loaded.result.overall_summary == "Gemini request failed: quota"


def test_redelivery_of_completed_job_is_acknowledged(
    job_store: JobRepository,
    queue_repo: QueueRepository,
    make_job: Callable[..., str],
) -> None:
    job_id = make_job()
    item = _claimed_item(queue_repo, job_id)
    _consumer(job_store, FakeGenerator()).process(item)

    generator = FakeGenerator()
    _consumer(job_store, generator).process(item)

    assert generator.calls == []
    assert job_store.get_job(job_id).status == JobStatus.COMPLETED


@pytest.mark.parametrize(
    "changes",
    [
        {"name": "other-job"},
        {"payload": {}},
        {"payload": {"jobId": ""}},
        {"payload": {"jobId": 42}},
    ],
)
def test_malformed_items_are_rejected(
    job_store: JobRepository,
    queue_repo: QueueRepository,
    make_job: Callable[..., str],
    changes: dict[str, object],
) -> None:
    job_id = make_job()
    item = replace(_claimed_item(queue_repo, job_id), **changes)

    with pytest.raises(InvalidWorkItemError):
        _consumer(job_store, FakeGenerator()).process(item)
    assert job_store.get_job(job_id).status == JobStatus.QUEUED


def test_abandon_records_stall_and_skips_unknown_jobs(
    job_store: JobRepository,
    queue_repo: QueueRepository,
    make_job: Callable[..., str],
) -> None:
    job_id = make_job()
    consumer = _consumer(job_store, FakeGenerator())
    item = _claimed_item(queue_repo, job_id)

    consumer.abandon(item, reason="Worker stalled while processing the item.")
    consumer.abandon(replace(item, payload={"jobId": "ghost"}), reason="stalled")
    consumer.abandon(replace(item, payload={}), reason="stalled")

    loaded = job_store.get_job_with_result(job_id)
    assert loaded is not None
    assert loaded.job.status == JobStatus.FAILED
    assert loaded.result is not None
    assert loaded.result.overall_summary == "Worker stalled while processing the item."
