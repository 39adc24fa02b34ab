"""Controllers for evaluator CLI commands."""

from __future__ import annotations

import json
import logging
import re
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Event
from uuid import uuid4

from qdrant_client import QdrantClient

from cv_evaluator.config import Settings
from cv_evaluator.jobs.models import DocumentCreate, JobCreate, JobStatus
from cv_evaluator.jobs.repository import JobRepository
from cv_evaluator.jobs.results import ResultService
from cv_evaluator.llm.gemini import GeminiEmbedder, GeminiGenerator
from cv_evaluator.pipeline.consumer import EvaluationConsumer
from cv_evaluator.pipeline.extraction import PdfTextExtractor
from cv_evaluator.pipeline.orchestrator import EvaluationOrchestrator
from cv_evaluator.queue.models import WorkItemStatus
from cv_evaluator.queue.producer import EvaluationProducer
from cv_evaluator.queue.repository import QueueRepository
from cv_evaluator.queue.worker import QueueWorker, WorkerPool
from cv_evaluator.rag.ingestion import GroundTruthIngestor, IngestionReport
from cv_evaluator.rag.locks import IngestionLockRepository
from cv_evaluator.rag.retriever import ContextRetriever

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class UploadCommand:
    """CLI input for a CV and project report upload."""

    db_path: Path | None
    cv_path: Path
    report_path: Path


@dataclass(slots=True)
class EvaluateCommand:
    """CLI input for job submission."""

    db_path: Path | None
    title: str
    cv_document_id: str
    report_document_id: str


@dataclass(slots=True)
class ResultCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_items: int | None
    concurrency: int | None
    skip_ingestion: bool
    max_idle_polls: int | None = None


@dataclass(slots=True)
class IngestCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for work item listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueItemCommand:
    """CLI input for inspect/retry of one work item."""

    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class ReplayCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


class EvaluatorCliController:
    """Coordinates upload, submission, worker and inspection CLI operations."""

    def upload(self, command: UploadCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        for path in (command.cv_path, command.report_path):
            _validate_upload(path)

        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        cv_upload = _store_upload(command.cv_path, settings.upload_dir)
        report_upload = _store_upload(command.report_path, settings.upload_dir)
        with _job_repository(settings) as job_store:
            cv, report = job_store.register_documents(cv=cv_upload, report=report_upload)

        return [
            f"CV uploaded: document_id={cv.document_id} file={cv.filename}",
            f"Report uploaded: document_id={report.document_id} file={report.filename}",
        ]

    def evaluate(self, command: EvaluateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_repository(settings) as job_store, _queue_repository(settings) as queue:
            producer = EvaluationProducer(
                job_store=job_store,
                queue=queue,
                options=settings.queue.options(),
            )
            submission = producer.submit(
                JobCreate(
                    title=command.title,
                    cv_document_id=command.cv_document_id,
                    report_document_id=command.report_document_id,
                ),
            )
        return [json.dumps(submission.to_dict())]

    def result(self, command: ResultCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_repository(settings) as job_store, _queue_repository(settings) as queue:
            view = ResultService(job_store=job_store, queue=queue).get_result(command.job_id)
        return json.dumps(view, indent=2, ensure_ascii=False).splitlines()

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.concurrency is not None:
            settings.queue.concurrency = command.concurrency
        settings.validate_for_worker()

        lines: list[str] = []
        client = _qdrant_client(settings)
        embedder = _embedder(settings)
        try:
            with _ingestor(settings, client=client, embedder=embedder) as ingestor:
                if command.skip_ingestion:
                    sources = ingestor.ground_truth_sources()
                    logger.info("Startup ingestion skipped by request.")
                else:
                    report = ingestor.ensure_collection()
                    sources = report.sources
                    lines.append(_ingestion_line(report, settings))

            retriever = ContextRetriever(
                client=client,
                collection_name=settings.vector.collection_name,
                embedder=embedder,
                sources=sources,
            )
            generator = GeminiGenerator(
                api_key=settings.model.api_key,
                model_name=settings.model.generation_model,
            )
            extractor = PdfTextExtractor()

            @contextmanager
            def _slot(index: int, stop_event: Event) -> Iterator[QueueWorker]:
                with _job_repository(settings) as job_store, _queue_repository(settings) as queue:
                    orchestrator = EvaluationOrchestrator(
                        job_store=job_store,
                        extractor=extractor,
                        retriever=retriever,
                        generator=generator,
                        top_k=settings.vector.top_k,
                    )
                    yield QueueWorker(
                        repository=queue,
                        processor=EvaluationConsumer(
                            job_store=job_store,
                            orchestrator=orchestrator,
                        ),
                        worker_id=f"{settings.queue.worker_id}#{index}",
                        poll_interval_seconds=settings.queue.poll_interval_seconds,
                        stalled_after_seconds=settings.queue.stalled_after_seconds,
                        heartbeat_interval_seconds=settings.queue.heartbeat_interval_seconds,
                        stop_event=stop_event,
                    )

            pool = WorkerPool(slot_factory=_slot, concurrency=settings.queue.concurrency)
            summary = (
                pool.run(max_items=1, max_idle_polls=1)
                if command.once
                else pool.run(max_items=command.max_items, max_idle_polls=command.max_idle_polls)
            )
        finally:
            client.close()

        lines.append(
            "Worker summary: "
            f"concurrency={settings.queue.concurrency} processed={summary.processed} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"retried={summary.retried} idle_polls={summary.idle_polls}",
        )
        return lines

    def ingest(self, command: IngestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_ingestion()
        client = _qdrant_client(settings)
        try:
            with _ingestor(settings, client=client, embedder=_embedder(settings)) as ingestor:
                report = ingestor.ensure_collection()
        finally:
            client.close()
        return [_ingestion_line(report, settings)]

    def list_items(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = WorkItemStatus(command.status) if command.status else None
        with _queue_repository(settings) as queue:
            items = queue.list_items(status=status, limit=command.limit)
        if not items:
            return ["No work items found."]
        return [
            f"{item.item_id} {item.status.value} name={item.name} job_id={item.job_id or '-'} "
            f"attempts={item.attempts_made}/{item.max_attempts} "
            f"run_after={item.run_after.isoformat()}"
            for item in items
        ]

    def inspect_item(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue_repository(settings) as queue:
            details = queue.get_item_details(item_id=command.item_id)
        if details is None:
            return [f"Work item not found: {command.item_id}"]

        item = details.item
        lines = [
            f"Work item: {item.item_id}",
            f"Name: {item.name}",
            f"Job: {item.job_id or '-'}",
            f"Status: {item.status.value}",
            f"Attempts: {item.attempts_made}/{item.max_attempts}",
            f"Backoff: {item.backoff.type.value} {item.backoff.delay_ms}ms",
            f"Failure class: {item.failure_class or '-'}",
            f"Error: {item.failed_reason or '-'}",
            f"Worker: {item.worker_id or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_item(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue_repository(settings) as queue:
            queue.retry_failed(item_id=command.item_id)
        return [f"Work item re-queued: {command.item_id}"]

    def replay_job(self, command: ReplayCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_repository(settings) as job_store, _queue_repository(settings) as queue:
            producer = EvaluationProducer(
                job_store=job_store,
                queue=queue,
                options=settings.queue.options(),
            )
            item = producer.replay(command.job_id)
        return [f"Job {command.job_id} re-enqueued as work item {item.item_id}"]

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _job_repository(settings) as job_store:
            jobs = job_store.list_jobs(status=status, limit=command.limit)
        if not jobs:
            return ["No jobs found."]
        return [
            f"{job.job_id} {job.status.value} title={job.title} "
            f"updated_at={job.updated_at.isoformat()}"
            for job in jobs
        ]


def _validate_upload(path: Path) -> None:
    if not path.is_file():
        raise FileNotFoundError(f"Upload not found: {path}")
    if path.suffix.lower() != ".pdf":
        raise ValueError(f"Only PDF uploads are accepted: {path.name}")
    size = path.stat().st_size
    if size > MAX_UPLOAD_BYTES:
        raise ValueError(
            f"Upload {path.name} is {size} bytes; the limit is {MAX_UPLOAD_BYTES} bytes.",
        )


def _store_upload(source: Path, upload_dir: Path) -> DocumentCreate:
    safe_name = _UNSAFE_FILENAME_CHARS.sub("_", source.name).strip("._") or "upload.pdf"
    target = upload_dir / f"{uuid4()}-{safe_name}"
    shutil.copyfile(source, target)
    return DocumentCreate(filename=source.name, stored_path=str(target.resolve()))


def _ingestion_line(report: IngestionReport, settings: Settings) -> str:
    return (
        f"Ground truth {report.action}: collection={settings.vector.collection_name} "
        f"chunks={report.chunks} sources={len(report.sources)}"
    )


def _qdrant_client(settings: Settings) -> QdrantClient:
    return QdrantClient(url=settings.vector.url, api_key=settings.vector.api_key)


def _embedder(settings: Settings) -> GeminiEmbedder:
    return GeminiEmbedder(
        api_key=settings.model.api_key,
        model_name=settings.model.embedding_model,
        dimension=settings.model.embedding_dimension,
    )


@contextmanager
def _ingestor(
    settings: Settings,
    *,
    client: QdrantClient,
    embedder: GeminiEmbedder,
) -> Iterator[GroundTruthIngestor]:
    locks = IngestionLockRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    locks.init_schema()
    try:
        yield GroundTruthIngestor(
            client=client,
            collection_name=settings.vector.collection_name,
            embedder=embedder,
            documents_dir=settings.documents_dir,
            lock_repository=locks,
            owner_id=settings.queue.worker_id,
            chunk_size=settings.vector.chunk_size,
            chunk_overlap=settings.vector.chunk_overlap,
            lock_ttl_seconds=settings.vector.lock_ttl_seconds,
            lock_timeout_seconds=settings.vector.lock_timeout_seconds,
        )
    finally:
        locks.close()


@contextmanager
def _job_repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _queue_repository(settings: Settings) -> Iterator[QueueRepository]:
    repository = QueueRepository(
        settings.db_path,
        queue_name=settings.queue.name,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
