"""Persistent work queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from cv_evaluator.queue.models import (
    EVALUATION_QUEUE,
    BackoffPolicy,
    BackoffType,
    StalledRecovery,
    WorkItemCreate,
    WorkItemDetails,
    WorkItemEventView,
    WorkItemStatus,
    WorkItemView,
)
from cv_evaluator.storage.alembic_runner import upgrade_head
from cv_evaluator.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from cv_evaluator.storage.sqlmodel_models import WorkItem, WorkItemEvent

logger = logging.getLogger(__name__)

STALLED_REASON = "Worker stalled while processing the item."


class QueueRepository:
    """Queue persistence facade for one named queue."""

    def __init__(
        self,
        db_path: Path,
        *,
        queue_name: str = EVALUATION_QUEUE,
        sqlite_busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.queue_name = queue_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: WorkItemCreate) -> WorkItemView:
        """Create a queued work item ready for immediate delivery."""

        now = utc_now()
        item_id = str(uuid4())
        options = payload.options
        with Session(self.engine) as session:
            row = WorkItem(
                item_id=item_id,
                queue_name=payload.queue_name,
                name=payload.name,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                job_id=payload.job_id,
                status=WorkItemStatus.QUEUED.value,
                attempts_made=0,
                max_attempts=options.attempts,
                backoff_type=options.backoff.type.value,
                backoff_delay_ms=options.backoff.delay_ms,
                remove_on_complete=options.remove_on_complete,
                remove_on_fail=options.remove_on_fail,
                run_after=to_db_datetime(now),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="enqueued",
                status_from=None,
                status_to=WorkItemStatus.QUEUED,
                details={"name": payload.name, "max_attempts": options.attempts},
            )
            session.commit()
            session.refresh(row)
            logger.info(
                "Enqueued work item %s name=%s job_id=%s",
                item_id,
                payload.name,
                payload.job_id,
            )
            return _to_item_view(row)

    def claim_next(self, *, worker_id: str) -> WorkItemView | None:
        """Atomically claim the oldest item ready for delivery."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(WorkItem)
                    .where(
                        WorkItem.queue_name == self.queue_name,
                        WorkItem.status == WorkItemStatus.QUEUED.value,
                        WorkItem.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(WorkItem.run_after).asc(),
                        col(WorkItem.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.item_id) == candidate.item_id,
                        col(WorkItem.status) == WorkItemStatus.QUEUED.value,
                    )
                    .values(
                        status=WorkItemStatus.ACTIVE.value,
                        attempts_made=candidate.attempts_made + 1,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = self._get_row(session=session, item_id=candidate.item_id)
                self._add_event(
                    session=session,
                    item_id=claimed.item_id,
                    event_type="claimed",
                    status_from=WorkItemStatus.QUEUED,
                    status_to=WorkItemStatus.ACTIVE,
                    details={"worker_id": worker_id, "attempt": claimed.attempts_made},
                )
                session.commit()
                session.refresh(claimed)
                return _to_item_view(claimed)

    def touch(self, *, item_id: str) -> None:
        """Update heartbeat for an active item."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.ACTIVE.value,
                )
                .values(heartbeat_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            session.commit()

    def complete(self, *, item_id: str) -> bool:
        """Acknowledge an active item; removed unless it opted to be kept."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None or row.status != WorkItemStatus.ACTIVE.value:
                return False
            if row.remove_on_complete:
                result = session.exec(
                    sa_delete(WorkItem).where(
                        col(WorkItem.item_id) == item_id,
                        col(WorkItem.status) == WorkItemStatus.ACTIVE.value,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                session.commit()
                return True

            result = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.ACTIVE.value,
                )
                .values(
                    status=WorkItemStatus.COMPLETED.value,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="completed",
                status_from=WorkItemStatus.ACTIVE,
                status_to=WorkItemStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def schedule_retry(
        self,
        *,
        item_id: str,
        run_after: datetime,
        failure_class: str,
        failed_reason: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue an active item for a later delivery attempt."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.ACTIVE.value,
                )
                .values(
                    status=WorkItemStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    failure_class=failure_class,
                    failed_reason=failed_reason,
                    started_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="retry_scheduled",
                status_from=WorkItemStatus.ACTIVE,
                status_to=WorkItemStatus.QUEUED,
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "failure_class": failure_class,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def fail(
        self,
        *,
        item_id: str,
        failure_class: str,
        failed_reason: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark an active item as failed; kept for inspection unless it opted out."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None or row.status != WorkItemStatus.ACTIVE.value:
                return False
            if row.remove_on_fail:
                result = session.exec(
                    sa_delete(WorkItem).where(
                        col(WorkItem.item_id) == item_id,
                        col(WorkItem.status) == WorkItemStatus.ACTIVE.value,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                session.commit()
                return True

            result = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.ACTIVE.value,
                )
                .values(
                    status=WorkItemStatus.FAILED.value,
                    failure_class=failure_class,
                    failed_reason=failed_reason,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="failed",
                status_from=WorkItemStatus.ACTIVE,
                status_to=WorkItemStatus.FAILED,
                details={
                    "failure_class": failure_class,
                    "failed_reason": failed_reason,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def retry_failed(self, *, item_id: str) -> None:
        """Manual operator retry for a retained failed item."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None:
                raise RuntimeError(f"Work item not found: {item_id}")
            if row.status != WorkItemStatus.FAILED.value:
                raise RuntimeError(
                    f"Only failed work items can be retried manually, got {row.status}.",
                )
            result = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.FAILED.value,
                )
                .values(
                    status=WorkItemStatus.QUEUED.value,
                    attempts_made=0,
                    run_after=to_db_datetime(now),
                    started_at=None,
                    heartbeat_at=None,
                    finished_at=None,
                    failure_class=None,
                    failed_reason=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Work item state changed concurrently while retrying; "
                    f"please retry command (item_id={item_id}).",
                )
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="manual_retry",
                status_from=WorkItemStatus.FAILED,
                status_to=WorkItemStatus.QUEUED,
                details={},
            )
            session.commit()

    def recover_stalled(self, *, stale_after: timedelta) -> StalledRecovery:
        """Return items whose worker stopped heartbeating to the queue.

        The attempt that stalled stays counted; an item that has used up its
        attempts is failed instead of redelivered and listed in
        ``exhausted`` so the caller can record the failure on its job.
        """

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovery = StalledRecovery()
        exhausted_rows: list[WorkItem] = []
        with Session(self.engine) as session:
            stalled = session.exec(
                select(WorkItem).where(
                    WorkItem.queue_name == self.queue_name,
                    WorkItem.status == WorkItemStatus.ACTIVE.value,
                    col(WorkItem.heartbeat_at) < cutoff,
                ),
            ).all()
            for row in stalled:
                exhausted = row.attempts_made >= row.max_attempts
                target = WorkItemStatus.FAILED if exhausted else WorkItemStatus.QUEUED
                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.item_id) == row.item_id,
                        col(WorkItem.status) == WorkItemStatus.ACTIVE.value,
                    )
                    .values(
                        status=target.value,
                        run_after=to_db_datetime(now),
                        failed_reason=STALLED_REASON,
                        finished_at=to_db_datetime(now) if exhausted else None,
                        started_at=None,
                        heartbeat_at=None,
                        worker_id=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    item_id=row.item_id,
                    event_type="stalled_requeued" if not exhausted else "stalled_failed",
                    status_from=WorkItemStatus.ACTIVE,
                    status_to=target,
                    details={"stale_after_seconds": int(stale_after.total_seconds())},
                )
                if exhausted:
                    exhausted_rows.append(row)
                else:
                    recovery.requeued += 1
            session.commit()
            for row in exhausted_rows:
                session.refresh(row)
                recovery.exhausted.append(_to_item_view(row))
        if recovery.total:
            logger.warning(
                "Recovered %d stalled work item(s): %d requeued, %d out of attempts.",
                recovery.total,
                recovery.requeued,
                len(recovery.exhausted),
            )
        return recovery

    def has_pending_delivery(self, *, job_id: str) -> bool:
        """Whether a queued or active item still references the job."""

        with Session(self.engine) as session:
            row = session.exec(
                select(WorkItem.item_id)
                .where(
                    WorkItem.queue_name == self.queue_name,
                    WorkItem.job_id == job_id,
                    col(WorkItem.status).in_(
                        [WorkItemStatus.QUEUED.value, WorkItemStatus.ACTIVE.value],
                    ),
                )
                .limit(1),
            ).first()
        return row is not None

    def list_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        limit: int = 50,
    ) -> list[WorkItemView]:
        """List recent items, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(WorkItem)
                .where(WorkItem.queue_name == self.queue_name)
                .order_by(col(WorkItem.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(WorkItem.status == status.value)
            rows = session.exec(statement).all()
            return [_to_item_view(row) for row in rows]

    def get_item_details(self, *, item_id: str) -> WorkItemDetails | None:
        """Return item details with event stream."""

        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None:
                return None
            event_rows = session.exec(
                select(WorkItemEvent)
                .where(WorkItemEvent.item_id == item_id)
                .order_by(col(WorkItemEvent.created_at).asc(), col(WorkItemEvent.id).asc()),
            ).all()
            item = _to_item_view(row)

        events: list[WorkItemEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                WorkItemEventView(
                    event_id=event_row.id or 0,
                    item_id=event_row.item_id,
                    event_type=event_row.event_type,
                    status_from=(
                        WorkItemStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        WorkItemStatus(event_row.status_to)
                        if event_row.status_to is not None
                        else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return WorkItemDetails(item=item, events=events)

    def _get_row(self, *, session: Session, item_id: str) -> WorkItem:
        row = session.exec(select(WorkItem).where(WorkItem.item_id == item_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Work item not found: {item_id}")
        return row

    def _add_event(
        self,
        *,
        session: Session,
        item_id: str,
        event_type: str,
        status_from: WorkItemStatus | None,
        status_to: WorkItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkItemEvent(
                item_id=item_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_item_view(row: WorkItem) -> WorkItemView:
    payload: dict[str, Any] = {}
    try:
        parsed = json.loads(row.payload_json)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        payload = parsed
    return WorkItemView(
        item_id=row.item_id,
        queue_name=row.queue_name,
        name=row.name,
        payload=payload,
        job_id=row.job_id,
        status=WorkItemStatus(row.status),
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        backoff=BackoffPolicy(
            type=BackoffType(row.backoff_type),
            delay_ms=row.backoff_delay_ms,
        ),
        remove_on_complete=row.remove_on_complete,
        remove_on_fail=row.remove_on_fail,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        failure_class=row.failure_class,
        failed_reason=row.failed_reason,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
