"""Domain models for the work queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

EVALUATION_QUEUE = "evaluation"
EVALUATE_JOB = "evaluate-job"


class WorkItemStatus(str, Enum):
    """Durable work item lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Delay between delivery attempts."""

    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 5000

    def delay_for(self, attempts_made: int) -> timedelta:
        """Delay before the next attempt once ``attempts_made`` attempts have failed."""

        if self.type == BackoffType.FIXED:
            return timedelta(milliseconds=self.delay_ms)
        return timedelta(milliseconds=self.delay_ms * (2 ** max(attempts_made - 1, 0)))


@dataclass(slots=True, frozen=True)
class QueueOptions:
    """Per-item delivery options."""

    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_on_complete: bool = True
    remove_on_fail: bool = False


@dataclass(slots=True)
class WorkItemCreate:
    """Input payload for enqueuing a work item."""

    name: str
    payload: dict[str, Any]
    options: QueueOptions = field(default_factory=QueueOptions)
    queue_name: str = EVALUATION_QUEUE
    job_id: str | None = None


@dataclass(slots=True)
class WorkItemView:
    """Readable work item view for CLI and worker logic."""

    item_id: str
    queue_name: str
    name: str
    payload: dict[str, Any]
    job_id: str | None
    status: WorkItemStatus
    attempts_made: int
    max_attempts: int
    backoff: BackoffPolicy
    remove_on_complete: bool
    remove_on_fail: bool
    run_after: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    failure_class: str | None
    failed_reason: str | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def retries_left(self) -> bool:
        return self.attempts_made < self.max_attempts


@dataclass(slots=True)
class WorkItemEventView:
    """Work item event entry for audit trail."""

    event_id: int
    item_id: str
    event_type: str
    status_from: WorkItemStatus | None
    status_to: WorkItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkItemDetails:
    item: WorkItemView
    events: list[WorkItemEventView]


@dataclass(slots=True)
class StalledRecovery:
    """Outcome of one sweep over work items whose worker stopped heartbeating."""

    requeued: int = 0
    exhausted: list[WorkItemView] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.requeued + len(self.exhausted)
