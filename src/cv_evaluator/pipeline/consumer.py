"""Per-work-item contract around one orchestrator run."""

from __future__ import annotations

import logging

from cv_evaluator.jobs.errors import (
    InvalidWorkItemError,
    JobAlreadyCompletedError,
    JobNotFoundError,
)
from cv_evaluator.jobs.models import JobStatus
from cv_evaluator.jobs.repository import JobRepository
from cv_evaluator.pipeline.orchestrator import EvaluationOrchestrator
from cv_evaluator.queue.models import EVALUATE_JOB, WorkItemView

logger = logging.getLogger(__name__)


class EvaluationConsumer:
    """Drives job status transitions around the orchestrator.

    Failures are written to the job store (status ``failed`` plus the message
    as ``overall_summary``) before the original error is re-raised, so the
    queue worker can schedule the next attempt.
    """

    def __init__(self, *, job_store: JobRepository, orchestrator: EvaluationOrchestrator) -> None:
        self.job_store = job_store
        self.orchestrator = orchestrator

    def process(self, item: WorkItemView) -> None:
        job_id = _job_id_from(item)

        try:
            self.job_store.update_job_status(job_id, JobStatus.PROCESSING)
        except JobAlreadyCompletedError:
            logger.info(
                "Job %s already completed; redelivered item %s acknowledged.",
                job_id,
                item.item_id,
            )
            return

        try:
            self.orchestrator.run(job_id)
        except Exception as error:
            message = str(error) or type(error).__name__
            logger.error(
                "Evaluation failed for job %s (attempt %d/%d): %s",
                job_id,
                item.attempts_made,
                item.max_attempts,
                message,
            )
            self._record_failure(job_id=job_id, message=message)
            raise

        logger.info("Evaluation completed for job %s", job_id)

    def abandon(self, item: WorkItemView, *, reason: str) -> None:
        try:
            job_id = _job_id_from(item)
        except InvalidWorkItemError:
            return

        try:
            self.job_store.update_job_status(job_id, JobStatus.FAILED, error_message=reason)
        except JobAlreadyCompletedError:
            logger.info("Job %s already completed; stalled item %s ignored.", job_id, item.item_id)
            return
        except JobNotFoundError:
            logger.warning("Stalled item %s references unknown job %s", item.item_id, job_id)
            return
        logger.error(
            "Job %s failed: item %s stalled on its last attempt (%d/%d).",
            job_id,
            item.item_id,
            item.attempts_made,
            item.max_attempts,
        )

    def _record_failure(self, *, job_id: str, message: str) -> None:
        try:
            self.job_store.update_job_status(job_id, JobStatus.FAILED, error_message=message)
        except Exception:
            logger.exception("Could not record failure for job %s", job_id)


def _job_id_from(item: WorkItemView) -> str:
    if item.name != EVALUATE_JOB:
        logger.error("Unknown work item name %r on item %s", item.name, item.item_id)
        raise InvalidWorkItemError(f"Unknown work item name: {item.name!r}")
    job_id = item.payload.get("jobId")
    if not isinstance(job_id, str) or not job_id.strip():
        logger.error("Work item %s has no jobId in payload %r", item.item_id, item.payload)
        raise InvalidWorkItemError(f"Work item {item.item_id} payload has no jobId.")
    return job_id.strip()
