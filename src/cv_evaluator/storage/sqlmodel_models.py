"""SQLModel ORM tables for the evaluation store and work queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Document(SQLModel, table=True):
    __tablename__ = "documents"  # type: ignore[bad-override]

    document_id: str = Field(primary_key=True)
    filename: str
    stored_path: str
    kind: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EvaluationJob(SQLModel, table=True):
    __tablename__ = "evaluation_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_evaluation_jobs_status_created", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    title: str
    cv_document_id: str = Field(
        sa_column=Column(
            ForeignKey("documents.document_id"),
            nullable=False,
            unique=True,
        ),
    )
    report_document_id: str = Field(
        sa_column=Column(
            ForeignKey("documents.document_id"),
            nullable=False,
            unique=True,
        ),
    )
    status: str = Field(default="queued", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EvaluationResult(SQLModel, table=True):
    __tablename__ = "evaluation_results"  # type: ignore[bad-override]

    result_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("evaluation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    cv_match_rate: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    cv_feedback: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    project_score: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    project_feedback: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    overall_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItem(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_items_ready", "queue_name", "status", "run_after"),)

    item_id: str = Field(primary_key=True)
    queue_name: str = Field(index=True)
    name: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    job_id: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    attempts_made: int = Field(default=0)
    max_attempts: int = Field(default=3)
    backoff_type: str = Field(default="exponential")
    backoff_delay_ms: int = Field(default=5000)
    remove_on_complete: bool = Field(default=True)
    remove_on_fail: bool = Field(default=False)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_class: str | None = Field(default=None, index=True)
    failed_reason: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemEvent(SQLModel, table=True):
    __tablename__ = "work_item_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_item_events_item_time", "item_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    item_id: str = Field(
        sa_column=Column(
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class IngestionLock(SQLModel, table=True):
    __tablename__ = "ingestion_locks"  # type: ignore[bad-override]

    lock_name: str = Field(primary_key=True)
    owner_id: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
