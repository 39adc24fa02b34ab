"""Job store: documents, evaluation jobs and their results."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from cv_evaluator.jobs.errors import (
    DocumentNotFoundError,
    InvalidStatusTransitionError,
    JobAlreadyCompletedError,
    JobConflictError,
    JobNotFoundError,
    MissingDocumentError,
)
from cv_evaluator.jobs.models import (
    ALLOWED_TRANSITIONS,
    DocumentCreate,
    DocumentKind,
    DocumentView,
    EvaluationResultData,
    JobCreate,
    JobStatus,
    JobView,
    JobWithDocuments,
    JobWithResult,
    ResultView,
)
from cv_evaluator.storage.alembic_runner import upgrade_head
from cv_evaluator.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from cv_evaluator.storage.sqlmodel_models import Document, EvaluationJob, EvaluationResult

logger = logging.getLogger(__name__)


class JobRepository:
    """Evaluation job persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def register_documents(
        self,
        *,
        cv: DocumentCreate,
        report: DocumentCreate,
    ) -> tuple[DocumentView, DocumentView]:
        """Persist the CV and report records of one upload together."""

        now = utc_now()
        rows = [
            Document(
                document_id=str(uuid4()),
                filename=upload.filename,
                stored_path=upload.stored_path,
                kind=kind.value,
                created_at=now,
            )
            for upload, kind in ((cv, DocumentKind.CV), (report, DocumentKind.REPORT))
        ]
        with Session(self.engine) as session:
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
            cv_view, report_view = (_to_document_view(row) for row in rows)
        logger.info(
            "Registered documents cv=%s report=%s",
            cv_view.document_id,
            report_view.document_id,
        )
        return cv_view, report_view

    def get_document(self, document_id: str) -> DocumentView | None:
        with Session(self.engine) as session:
            row = session.get(Document, document_id)
            return _to_document_view(row) if row is not None else None

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a queued job; each document may back at most one job."""

        if payload.cv_document_id == payload.report_document_id:
            raise JobConflictError("CV and report must be different documents.")

        document_ids = (payload.cv_document_id, payload.report_document_id)
        now = utc_now()
        with Session(self.engine) as session:
            for document_id, expected_kind in zip(
                document_ids,
                (DocumentKind.CV, DocumentKind.REPORT),
                strict=True,
            ):
                document = session.get(Document, document_id)
                if document is None:
                    raise DocumentNotFoundError(document_id)
                if document.kind != expected_kind.value:
                    raise ValueError(
                        f"Document {document_id} is a {document.kind} upload, "
                        f"expected {expected_kind.value}.",
                    )

            attached = session.exec(
                select(EvaluationJob)
                .where(
                    or_(
                        col(EvaluationJob.cv_document_id).in_(document_ids),
                        col(EvaluationJob.report_document_id).in_(document_ids),
                    ),
                )
                .limit(1),
            ).first()
            if attached is not None:
                raise JobConflictError(
                    f"Document already attached to job {attached.job_id}.",
                )

            row = EvaluationJob(
                job_id=str(uuid4()),
                title=payload.title,
                cv_document_id=payload.cv_document_id,
                report_document_id=payload.report_document_id,
                status=JobStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise JobConflictError(
                    "Document already attached to another job.",
                ) from error
            session.refresh(row)
            return _to_job_view(row)

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error_message: str | None = None,
    ) -> JobView:
        """Move a job forward; ``failed`` also records the error on its result row."""

        target = JobStatus(status)
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(EvaluationJob, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                current = JobStatus(row.status)
                _check_transition(job_id=job_id, current=current, target=target)

                result = session.exec(
                    sa_update(EvaluationJob)
                    .where(
                        col(EvaluationJob.job_id) == job_id,
                        col(EvaluationJob.status) == current.value,
                    )
                    .values(status=target.value, updated_at=to_db_datetime(now)),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                if target == JobStatus.FAILED:
                    _upsert_result_row(
                        session=session,
                        job_id=job_id,
                        now=now,
                        overall_summary=error_message,
                    )
                session.commit()
                session.refresh(row)
                logger.info("Job %s status %s -> %s", job_id, current.value, target.value)
                return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(EvaluationJob, job_id)
            return _to_job_view(row) if row is not None else None

    def get_job_with_documents(self, job_id: str) -> JobWithDocuments:
        """Load the job and both document relations or raise a permanent error."""

        with Session(self.engine) as session:
            row = session.get(EvaluationJob, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            cv = session.get(Document, row.cv_document_id)
            if cv is None:
                raise MissingDocumentError(job_id, DocumentKind.CV.value)
            report = session.get(Document, row.report_document_id)
            if report is None:
                raise MissingDocumentError(job_id, DocumentKind.REPORT.value)
            return JobWithDocuments(
                job=_to_job_view(row),
                cv=_to_document_view(cv),
                report=_to_document_view(report),
            )

    def save_evaluation_result(self, job_id: str, data: EvaluationResultData) -> JobWithResult:
        """Upsert the result and complete the job in one transaction.

        Completed jobs are terminal: saving again returns the stored result
        unchanged, so a redelivered work item neither overwrites nor
        duplicates it.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(EvaluationJob, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                current = JobStatus(row.status)
                if current == JobStatus.COMPLETED:
                    stored = session.exec(
                        select(EvaluationResult).where(EvaluationResult.job_id == job_id),
                    ).one_or_none()
                    if stored is not None:
                        logger.info("Job %s already completed; keeping stored result.", job_id)
                        return JobWithResult(
                            job=_to_job_view(row),
                            result=_to_result_view(stored),
                        )
                if current not in {JobStatus.PROCESSING, JobStatus.COMPLETED}:
                    raise InvalidStatusTransitionError(
                        job_id,
                        current.value,
                        JobStatus.COMPLETED.value,
                    )

                result = session.exec(
                    sa_update(EvaluationJob)
                    .where(
                        col(EvaluationJob.job_id) == job_id,
                        col(EvaluationJob.status) == current.value,
                    )
                    .values(status=JobStatus.COMPLETED.value, updated_at=to_db_datetime(now)),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                result_row = _upsert_result_row(
                    session=session,
                    job_id=job_id,
                    now=now,
                    cv_match_rate=data.cv_match_rate,
                    cv_feedback=data.cv_feedback,
                    project_score=data.project_score,
                    project_feedback=data.project_feedback,
                    overall_summary=data.overall_summary,
                )
                session.commit()
                session.refresh(row)
                session.refresh(result_row)
                return JobWithResult(job=_to_job_view(row), result=_to_result_view(result_row))

    def get_job_with_result(self, job_id: str) -> JobWithResult | None:
        with Session(self.engine) as session:
            row = session.get(EvaluationJob, job_id)
            if row is None:
                return None
            result_row = session.exec(
                select(EvaluationResult).where(EvaluationResult.job_id == job_id),
            ).one_or_none()
            return JobWithResult(
                job=_to_job_view(row),
                result=_to_result_view(result_row) if result_row is not None else None,
            )

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(EvaluationJob).order_by(col(EvaluationJob.created_at).desc())
            if status is not None:
                statement = statement.where(EvaluationJob.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
            return [_to_job_view(row) for row in rows]


def _check_transition(*, job_id: str, current: JobStatus, target: JobStatus) -> None:
    if current == JobStatus.COMPLETED:
        raise JobAlreadyCompletedError(job_id, current.value, target.value)
    if (current, target) not in ALLOWED_TRANSITIONS:
        raise InvalidStatusTransitionError(job_id, current.value, target.value)


def _upsert_result_row(
    *,
    session: Session,
    job_id: str,
    now: datetime,
    **values: float | str | None,
) -> EvaluationResult:
    row = session.exec(
        select(EvaluationResult).where(EvaluationResult.job_id == job_id),
    ).one_or_none()
    if row is None:
        row = EvaluationResult(job_id=job_id, created_at=now, updated_at=now, **values)
    else:
        for name, value in values.items():
            setattr(row, name, value)
        row.updated_at = now
    session.add(row)
    return row


def _to_document_view(row: Document) -> DocumentView:
    return DocumentView(
        document_id=row.document_id,
        filename=row.filename,
        stored_path=row.stored_path,
        kind=DocumentKind(row.kind),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job_view(row: EvaluationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        title=row.title,
        cv_document_id=row.cv_document_id,
        report_document_id=row.report_document_id,
        status=JobStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_result_view(row: EvaluationResult) -> ResultView:
    return ResultView(
        job_id=row.job_id,
        cv_match_rate=row.cv_match_rate,
        cv_feedback=row.cv_feedback,
        project_score=row.project_score,
        project_feedback=row.project_feedback,
        overall_summary=row.overall_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
