"""Cross-process lock rows guarding destructive vector collection rebuilds."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col

from cv_evaluator.storage.alembic_runner import upgrade_head
from cv_evaluator.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from cv_evaluator.storage.sqlmodel_models import IngestionLock

logger = logging.getLogger(__name__)


class IngestionLockTimeout(RuntimeError):
    """Lock was not acquired within the allowed wait."""


class IngestionLockRepository:
    """Named lease locks stored in the relational database."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def acquire(self, *, lock_name: str, owner_id: str, ttl: timedelta) -> bool:
        """Take the lock if free or expired; re-entrant for the same owner."""

        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                IngestionLock(
                    lock_name=lock_name,
                    owner_id=owner_id,
                    acquired_at=now,
                    expires_at=now + ttl,
                ),
            )
            try:
                session.commit()
                return True
            except IntegrityError:
                session.rollback()

            result = session.exec(
                sa_update(IngestionLock)
                .where(
                    col(IngestionLock.lock_name) == lock_name,
                    (col(IngestionLock.expires_at) <= to_db_datetime(now))
                    | (col(IngestionLock.owner_id) == owner_id),
                )
                .values(
                    owner_id=owner_id,
                    acquired_at=to_db_datetime(now),
                    expires_at=to_db_datetime(now + ttl),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            logger.warning("Took over expired ingestion lock %s (owner=%s)", lock_name, owner_id)
            return True

    def release(self, *, lock_name: str, owner_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(IngestionLock).where(
                    col(IngestionLock.lock_name) == lock_name,
                    col(IngestionLock.owner_id) == owner_id,
                ),
            )
            session.commit()
            return result.rowcount == 1

    @contextmanager
    def hold(
        self,
        *,
        lock_name: str,
        owner_id: str,
        ttl: timedelta,
        timeout_seconds: float,
        poll_interval_seconds: float = 0.5,
    ) -> Iterator[None]:
        """Block until the lock is held, then release it when the block exits."""

        deadline = time.monotonic() + timeout_seconds
        while not self.acquire(lock_name=lock_name, owner_id=owner_id, ttl=ttl):
            if time.monotonic() >= deadline:
                raise IngestionLockTimeout(
                    f"Timed out after {timeout_seconds:.0f}s waiting for lock {lock_name}.",
                )
            time.sleep(poll_interval_seconds)
        logger.info("Acquired ingestion lock %s (owner=%s)", lock_name, owner_id)
        try:
            yield
        finally:
            self.release(lock_name=lock_name, owner_id=owner_id)
            logger.info("Released ingestion lock %s (owner=%s)", lock_name, owner_id)
