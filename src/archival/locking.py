"""PostgreSQL advisory locks that keep a job from running twice at once."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog

from archival.database import DatabaseManager
from archival.exceptions import LockError
from utils.logging import get_logger

LOCK_NAMESPACE = "table_archival_job"


class JobLock:
    """An advisory lock held for one job."""

    def __init__(self, job_id: int, acquired_at: datetime, namespace: str = LOCK_NAMESPACE) -> None:
        """Initialize lock.

        Args:
            job_id: Job the lock belongs to
            acquired_at: When the lock was acquired
            namespace: First key of the two-key advisory lock
        """
        self.job_id = job_id
        self.acquired_at = acquired_at
        self.namespace = namespace

    def held_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.acquired_at).total_seconds()


class JobLockManager:
    """Session-level ``pg_try_advisory_lock(hashtext(namespace), job_id)`` locks.

    Session locks belong to the connection that took them, so the connection
    is held for as long as the lock is.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        namespace: str = LOCK_NAMESPACE,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize lock manager.

        Args:
            db_manager: Database the locks are taken in (shared by all engine processes)
            namespace: Lock namespace, hashed into the first lock key
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.namespace = namespace
        self.logger = logger or get_logger("lock_manager")

    @asynccontextmanager
    async def lock(self, job_id: int) -> AsyncGenerator[JobLock, None]:
        """Hold the advisory lock of a job for the duration of the block.

        Raises:
            LockError: If another session holds the lock or locking fails
        """
        async with self.db_manager.acquire_connection() as conn:
            try:
                acquired = await conn.fetchval(
                    "SELECT pg_try_advisory_lock(hashtext($1), $2)", self.namespace, job_id
                )
            except Exception as e:
                raise LockError(
                    f"Failed to acquire advisory lock: {e}",
                    context={"job_id": job_id},
                ) from e

            if not acquired:
                raise LockError(
                    f"Job {job_id} is already running elsewhere",
                    context={"job_id": job_id, "namespace": self.namespace},
                )

            job_lock = JobLock(job_id, datetime.now(timezone.utc), self.namespace)
            self.logger.debug("Advisory lock acquired", job_id=job_id)
            try:
                yield job_lock
            finally:
                try:
                    released = await conn.fetchval(
                        "SELECT pg_advisory_unlock(hashtext($1), $2)", self.namespace, job_id
                    )
                    if not released:
                        self.logger.warning("Advisory lock was not held at release", job_id=job_id)
                    else:
                        self.logger.debug(
                            "Advisory lock released",
                            job_id=job_id,
                            held_seconds=round(job_lock.held_seconds(), 3),
                        )
                except Exception as e:
                    # Closing the session drops every advisory lock it holds
                    self.logger.warning("Failed to release advisory lock, closing session", job_id=job_id, error=str(e))
                    conn.terminate()
