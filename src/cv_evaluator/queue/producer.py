"""Submission boundary: create the job, then enqueue its work item."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cv_evaluator.jobs.errors import JobNotFoundError
from cv_evaluator.jobs.models import JobCreate, JobStatus
from cv_evaluator.jobs.repository import JobRepository
from cv_evaluator.queue.models import EVALUATE_JOB, QueueOptions, WorkItemCreate, WorkItemView
from cv_evaluator.queue.repository import QueueRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmissionView:
    id: str
    status: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "status": self.status}


class EvaluationProducer:
    def __init__(
        self,
        *,
        job_store: JobRepository,
        queue: QueueRepository,
        options: QueueOptions | None = None,
    ) -> None:
        self.job_store = job_store
        self.queue = queue
        self.options = options or QueueOptions()

    def submit(self, payload: JobCreate) -> SubmissionView:
        """Create a queued job and enqueue ``{"jobId": ...}`` for it."""

        job = self.job_store.create_job(payload)
        self._enqueue(job.job_id)
        logger.info("Submitted job %s (%s)", job.job_id, job.title)
        return SubmissionView(id=job.job_id, status=job.status.value)

    def replay(self, job_id: str) -> WorkItemView:
        """Re-enqueue a job whose work item was lost or exhausted."""

        job = self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status == JobStatus.COMPLETED:
            raise RuntimeError(f"Job {job_id} is already completed.")
        if self.queue.has_pending_delivery(job_id=job_id):
            raise RuntimeError(f"Job {job_id} already has a pending work item.")
        item = self._enqueue(job_id)
        logger.info("Replayed job %s as work item %s", job_id, item.item_id)
        return item

    def _enqueue(self, job_id: str) -> WorkItemView:
        return self.queue.enqueue(
            WorkItemCreate(
                name=EVALUATE_JOB,
                payload={"jobId": job_id},
                options=self.options,
                job_id=job_id,
            ),
        )
