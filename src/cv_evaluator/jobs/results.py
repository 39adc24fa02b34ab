"""Poller view of a job and its evaluation result."""

from __future__ import annotations

from typing import Any

from cv_evaluator.jobs.errors import JobNotFoundError
from cv_evaluator.jobs.models import JobStatus
from cv_evaluator.jobs.repository import JobRepository
from cv_evaluator.queue.repository import QueueRepository


class ResultService:
    def __init__(self, *, job_store: JobRepository, queue: QueueRepository) -> None:
        self.job_store = job_store
        self.queue = queue

    def get_result(self, job_id: str) -> dict[str, Any]:
        """Return ``{id, status}``, plus ``result`` once the job is completed.

        A failed attempt that still has a delivery pending is reported as
        ``processing``; the failure text only surfaces after the last attempt.
        """

        loaded = self.job_store.get_job_with_result(job_id)
        if loaded is None:
            raise JobNotFoundError(job_id)

        job, result = loaded.job, loaded.result
        if job.status == JobStatus.COMPLETED and result is not None:
            return {
                "id": job.job_id,
                "status": JobStatus.COMPLETED.value,
                "result": {
                    "cv_match_rate": result.cv_match_rate,
                    "cv_feedback": result.cv_feedback,
                    "project_score": result.project_score,
                    "project_feedback": result.project_feedback,
                    "overall_summary": result.overall_summary,
                },
            }

        status = job.status
        if status == JobStatus.FAILED and self.queue.has_pending_delivery(job_id=job_id):
            status = JobStatus.PROCESSING
        response: dict[str, Any] = {"id": job.job_id, "status": status.value}
        if status == JobStatus.FAILED and result is not None:
            response["error"] = result.overall_summary
        return response
