"""Create evaluation store, work queue and ingestion lock tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("document_id", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("stored_path", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("document_id"),
    )
    op.create_index("ix_documents_kind", "documents", ["kind"])

    op.create_table(
        "evaluation_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("cv_document_id", sa.String(), nullable=False),
        sa.Column("report_document_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="queued", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
        sa.ForeignKeyConstraint(["cv_document_id"], ["documents.document_id"]),
        sa.ForeignKeyConstraint(["report_document_id"], ["documents.document_id"]),
        sa.UniqueConstraint("cv_document_id", name="uq_evaluation_jobs_cv_document"),
        sa.UniqueConstraint("report_document_id", name="uq_evaluation_jobs_report_document"),
    )
    op.create_index("ix_evaluation_jobs_status", "evaluation_jobs", ["status"])
    op.create_index(
        "idx_evaluation_jobs_status_created",
        "evaluation_jobs",
        ["status", "created_at"],
    )

    op.create_table(
        "evaluation_results",
        sa.Column("result_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("cv_match_rate", sa.Float(), nullable=True),
        sa.Column("cv_feedback", sa.Text(), nullable=True),
        sa.Column("project_score", sa.Float(), nullable=True),
        sa.Column("project_feedback", sa.Text(), nullable=True),
        sa.Column("overall_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("result_id"),
        sa.ForeignKeyConstraint(["job_id"], ["evaluation_jobs.job_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id", name="uq_evaluation_results_job"),
    )

    op.create_table(
        "work_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts_made", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="3", nullable=False),
        sa.Column("backoff_type", sa.String(), server_default="exponential", nullable=False),
        sa.Column("backoff_delay_ms", sa.Integer(), server_default="5000", nullable=False),
        sa.Column("remove_on_complete", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("remove_on_fail", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("failed_reason", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_work_items_queue_name", "work_items", ["queue_name"])
    op.create_index("ix_work_items_name", "work_items", ["name"])
    op.create_index("ix_work_items_job_id", "work_items", ["job_id"])
    op.create_index("ix_work_items_status", "work_items", ["status"])
    op.create_index("ix_work_items_failure_class", "work_items", ["failure_class"])
    op.create_index("ix_work_items_worker_id", "work_items", ["worker_id"])
    op.create_index("idx_work_items_ready", "work_items", ["queue_name", "status", "run_after"])

    op.create_table(
        "work_item_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.item_id"], ondelete="CASCADE"),
    )
    op.create_index("ix_work_item_events_item_id", "work_item_events", ["item_id"])
    op.create_index("ix_work_item_events_event_type", "work_item_events", ["event_type"])
    op.create_index(
        "idx_work_item_events_item_time",
        "work_item_events",
        ["item_id", "created_at"],
    )

    op.create_table(
        "ingestion_locks",
        sa.Column("lock_name", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lock_name"),
    )


def downgrade() -> None:
    op.drop_table("ingestion_locks")
    op.drop_index("idx_work_item_events_item_time", table_name="work_item_events")
    op.drop_index("ix_work_item_events_event_type", table_name="work_item_events")
    op.drop_index("ix_work_item_events_item_id", table_name="work_item_events")
    op.drop_table("work_item_events")
    op.drop_index("idx_work_items_ready", table_name="work_items")
    op.drop_index("ix_work_items_worker_id", table_name="work_items")
    op.drop_index("ix_work_items_failure_class", table_name="work_items")
    op.drop_index("ix_work_items_status", table_name="work_items")
    op.drop_index("ix_work_items_job_id", table_name="work_items")
    op.drop_index("ix_work_items_name", table_name="work_items")
    op.drop_index("ix_work_items_queue_name", table_name="work_items")
    op.drop_table("work_items")
    op.drop_table("evaluation_results")
    op.drop_index("idx_evaluation_jobs_status_created", table_name="evaluation_jobs")
    op.drop_index("ix_evaluation_jobs_status", table_name="evaluation_jobs")
    op.drop_table("evaluation_jobs")
    op.drop_index("ix_documents_kind", table_name="documents")
    op.drop_table("documents")
