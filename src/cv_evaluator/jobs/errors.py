"""Error taxonomy for the evaluation store and pipeline."""

from __future__ import annotations


class EvaluationError(Exception):
    """Base class for evaluation domain errors."""


class PermanentJobError(EvaluationError):
    """Input or data-integrity error that a retry cannot fix."""


class JobNotFoundError(PermanentJobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class MissingDocumentError(PermanentJobError):
    def __init__(self, job_id: str, kind: str) -> None:
        super().__init__(f"Job {job_id} has no {kind} document record")
        self.job_id = job_id
        self.kind = kind


class DocumentNotFoundError(PermanentJobError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class InvalidWorkItemError(PermanentJobError):
    """Malformed queue payload."""


class JobConflictError(EvaluationError):
    """A document is already attached to another job."""


class InvalidStatusTransitionError(EvaluationError, ValueError):
    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Invalid status transition for job {job_id}: {current} -> {requested}",
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobAlreadyCompletedError(InvalidStatusTransitionError):
    """Completed jobs are terminal."""
