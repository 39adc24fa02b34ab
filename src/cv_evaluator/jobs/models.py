"""Domain models for evaluation jobs, documents and results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Forward-only job lifecycle."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentKind(str, Enum):
    CV = "cv"
    REPORT = "report"


# Allowed (from, to) pairs. ``failed -> processing`` is a redelivery of the same
# work item; nothing ever moves back to ``queued`` and ``completed`` is terminal.
ALLOWED_TRANSITIONS: frozenset[tuple[JobStatus, JobStatus]] = frozenset(
    {
        (JobStatus.QUEUED, JobStatus.PROCESSING),
        (JobStatus.QUEUED, JobStatus.FAILED),
        (JobStatus.PROCESSING, JobStatus.PROCESSING),
        (JobStatus.PROCESSING, JobStatus.FAILED),
        (JobStatus.PROCESSING, JobStatus.COMPLETED),
        (JobStatus.FAILED, JobStatus.PROCESSING),
        (JobStatus.FAILED, JobStatus.FAILED),
    },
)


@dataclass(slots=True)
class DocumentCreate:
    """Stored upload to register."""

    filename: str
    stored_path: str


@dataclass(slots=True)
class DocumentView:
    document_id: str
    filename: str
    stored_path: str
    kind: DocumentKind
    created_at: datetime


@dataclass(slots=True)
class JobCreate:
    """Submission input: a title and two previously uploaded documents."""

    title: str
    cv_document_id: str
    report_document_id: str


@dataclass(slots=True)
class JobView:
    job_id: str
    title: str
    cv_document_id: str
    report_document_id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobWithDocuments:
    """Job plus both document relations, as loaded by the pipeline."""

    job: JobView
    cv: DocumentView
    report: DocumentView


@dataclass(slots=True)
class EvaluationResultData:
    """Fully populated evaluation written on completion."""

    cv_match_rate: float
    cv_feedback: str
    project_score: float
    project_feedback: str
    overall_summary: str


@dataclass(slots=True)
class ResultView:
    job_id: str
    cv_match_rate: float | None
    cv_feedback: str | None
    project_score: float | None
    project_feedback: str | None
    overall_summary: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def has_scores(self) -> bool:
        return self.cv_match_rate is not None and self.project_score is not None


@dataclass(slots=True)
class JobWithResult:
    job: JobView
    result: ResultView | None
