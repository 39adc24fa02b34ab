"""Queue worker slots that deliver work items to a processor."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import NamedTuple, Protocol

from cv_evaluator.queue.failure_classifier import classify_failure
from cv_evaluator.queue.models import WorkItemView
from cv_evaluator.queue.repository import STALLED_REASON, QueueRepository
from cv_evaluator.storage.common import utc_now

logger = logging.getLogger(__name__)


class WorkItemProcessor(Protocol):
    def process(self, item: WorkItemView) -> None: ...

    def abandon(self, item: WorkItemView, *, reason: str) -> None:
        """Record a terminal failure for an item whose last attempt stalled."""
        ...


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool


class QueueWorker:
    """Single-threaded pull loop: claim, process, acknowledge or reschedule."""

    def __init__(
        self,
        *,
        repository: QueueRepository,
        processor: WorkItemProcessor,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        stalled_after_seconds: int = 600,
        heartbeat_interval_seconds: float = 30.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.stalled_after_seconds = stalled_after_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._stop = stop_event or threading.Event()
        self._stop_signal_name: str | None = None
        self._current_item_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one work item from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        item = self._claim_item()
        if item is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_item_id = item.item_id
        logger.info(
            "Worker %s claimed item %s name=%s attempt=%d/%d",
            self.worker_id,
            item.item_id,
            item.name,
            item.attempts_made,
            item.max_attempts,
        )
        try:
            try:
                with self._heartbeat(item.item_id):
                    self.processor.process(item)
            except Exception as error:  # noqa: BLE001
                outcome = self._handle_retry_or_fail(item=item, error=error)
                summary.retried = int(outcome.retried)
                summary.failed = int(outcome.failed)
                return summary

            if self.repository.complete(item_id=item.item_id):
                summary.succeeded = 1
            else:
                logger.warning(
                    "Work item %s changed state while processing; acknowledgement skipped.",
                    item.item_id,
                )
            return summary
        finally:
            self._current_item_id = None

    def run_loop(
        self,
        *,
        max_items: int | None = None,
        max_idle_polls: int | None = 1,
        install_signal_handlers: bool = True,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, ``max_items`` are processed or stop is requested.

        Args:
            max_items: Stop after processing this many items (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
            install_signal_handlers: Handle SIGINT/SIGTERM by finishing the
                current item and exiting. Only possible on the main thread.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        handlers = (
            install_stop_handlers(self.request_stop)
            if install_signal_handlers
            else _noop_context()
        )
        with handlers:
            while True:
                if self.stop_requested:
                    return aggregate
                if max_items is not None and aggregate.processed >= max_items:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_signal_name = signal_name
        self._stop.set()
        if self._current_item_id is not None:
            logger.info(
                "Stop requested (%s); finishing item %s before exit.",
                signal_name,
                self._current_item_id,
            )

    def _claim_item(self) -> WorkItemView | None:
        if self.stalled_after_seconds > 0:
            recovery = self.repository.recover_stalled(
                stale_after=timedelta(seconds=self.stalled_after_seconds),
            )
            for stalled in recovery.exhausted:
                self.processor.abandon(stalled, reason=stalled.failed_reason or STALLED_REASON)
        if self.stop_requested:
            return None
        return self.repository.claim_next(worker_id=self.worker_id)

    def _handle_retry_or_fail(self, *, item: WorkItemView, error: Exception) -> RetryOutcome:
        classification = classify_failure(error)
        failed_reason = str(error) or type(error).__name__
        details = classification.to_event_details()

        if classification.retryable and item.retries_left:
            delay = item.backoff.delay_for(item.attempts_made)
            retried = self.repository.schedule_retry(
                item_id=item.item_id,
                run_after=utc_now() + delay,
                failure_class=classification.failure_class.value,
                failed_reason=failed_reason,
                details=details,
            )
            logger.warning(
                "Work item %s attempt %d/%d failed (%s); retry in %.1fs: %s",
                item.item_id,
                item.attempts_made,
                item.max_attempts,
                classification.failure_class.value,
                delay.total_seconds(),
                failed_reason,
            )
            return RetryOutcome(retried=retried, failed=False)

        failed = self.repository.fail(
            item_id=item.item_id,
            failure_class=classification.failure_class.value,
            failed_reason=failed_reason,
            details=details,
        )
        logger.error(
            "Work item %s failed after %d/%d attempt(s) (%s): %s",
            item.item_id,
            item.attempts_made,
            item.max_attempts,
            classification.failure_class.value,
            failed_reason,
        )
        return RetryOutcome(retried=False, failed=failed)

    @contextmanager
    def _heartbeat(self, item_id: str) -> Iterator[None]:
        if self.heartbeat_interval_seconds <= 0:
            yield
            return

        done = threading.Event()

        def _beat() -> None:
            while not done.wait(timeout=self.heartbeat_interval_seconds):
                self.repository.touch(item_id=item_id)

        thread = threading.Thread(target=_beat, daemon=True, name=f"heartbeat-{item_id[:8]}")
        thread.start()
        try:
            yield
        finally:
            done.set()
            thread.join(timeout=5)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


class WorkerPool:
    """Runs ``concurrency`` worker slots, each on its own thread.

    ``slot_factory`` builds one worker per slot and owns its resources (every
    slot gets its own repositories and DB connections). Claims are
    compare-and-set, so slots never receive the same item.
    """

    def __init__(
        self,
        *,
        slot_factory: Callable[[int, threading.Event], AbstractContextManager[QueueWorker]],
        concurrency: int = 1,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.slot_factory = slot_factory
        self.concurrency = concurrency
        self._stop = threading.Event()

    def request_stop(self, *, signal_name: str = "manual") -> None:
        logger.info("Worker pool stop requested (%s).", signal_name)
        self._stop.set()

    def run(
        self,
        *,
        max_items: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run all slots until each exits; ``max_items`` caps items per slot."""

        if self.concurrency == 1:
            with self.slot_factory(0, self._stop) as worker:
                return worker.run_loop(max_items=max_items, max_idle_polls=max_idle_polls)

        aggregate = WorkerRunSummary()
        lock = threading.Lock()
        errors: list[BaseException] = []

        def _slot(index: int) -> None:
            try:
                with self.slot_factory(index, self._stop) as worker:
                    summary = worker.run_loop(
                        max_items=max_items,
                        max_idle_polls=max_idle_polls,
                        install_signal_handlers=False,
                    )
            except Exception as error:
                logger.exception("Worker slot %d crashed", index)
                with lock:
                    errors.append(error)
                self._stop.set()
                return
            with lock:
                aggregate.add(summary)

        threads = [
            threading.Thread(target=_slot, args=(index,), name=f"evaluation-worker-{index}")
            for index in range(self.concurrency)
        ]
        with install_stop_handlers(self.request_stop):
            for thread in threads:
                thread.start()
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=0.5)

        if errors:
            raise RuntimeError(f"{len(errors)} worker slot(s) crashed") from errors[0]
        return aggregate


@contextmanager
def install_stop_handlers(on_stop: Callable[..., None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``on_stop(signal_name=...)`` for the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_stop(signal_name=name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


@contextmanager
def _noop_context() -> Iterator[None]:
    yield
