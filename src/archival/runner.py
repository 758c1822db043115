"""Runs one invocation of an archival job from start to finish."""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from archival.config import EngineConfig
from archival.database import ConnectionRegistry
from archival.exceptions import ArchivalError, LockError
from archival.executor import ArchiveExecutor
from archival.locking import JobLockManager
from archival.metrics import ArchivalMetrics
from archival.models import ArchivalJob, BatchResult, ExecutionSummary, JobStatus, MoveStrategy
from archival.repository import JobRepository
from archival.scheduling import next_run_time
from utils.logging import bind_job_context, clear_job_context, get_logger

ExecutorFactory = Callable[[ArchivalJob], Awaitable[Any]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataSourceExecutorFactory:
    """Builds an :class:`ArchiveExecutor` on the connections of a job's datasource."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        config: EngineConfig,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.registry = registry
        self.config = config
        self.logger = logger or get_logger("job_runner")

    async def __call__(self, job: ArchivalJob) -> ArchiveExecutor:
        connections = await self.registry.get(job.source_datasource)
        return ArchiveExecutor(
            connections,
            self.config.execution,
            self.config.introspection,
            logger=self.logger,
        )


class JobRunner:
    """Drives a job through Running to its final status.

    The job record is written when the invocation starts and again when it
    ends, including after unexpected errors and cancellation.
    """

    def __init__(
        self,
        repository: JobRepository,
        executor_factory: ExecutorFactory,
        lock_manager: Optional[JobLockManager] = None,
        metrics: Optional[ArchivalMetrics] = None,
        clock: Clock = _utcnow,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize job runner.

        Args:
            repository: Job storage
            executor_factory: Async callable returning an executor for a job
            lock_manager: Advisory locks keeping a job from running twice at once
            metrics: Optional Prometheus metrics
            clock: Source of the current time
            logger: Optional logger instance
        """
        self.repository = repository
        self.executor_factory = executor_factory
        self.lock_manager = lock_manager
        self.metrics = metrics
        self.clock = clock
        self.logger = logger or get_logger("job_runner")

    async def execute(self, job_id: int) -> ExecutionSummary:
        """Run one invocation of a job.

        Args:
            job_id: Identifier of the job to run

        Returns:
            ExecutionSummary with the final status, rows moved and batch audits
        """
        if self.lock_manager is None:
            return await self._execute(job_id)

        try:
            async with self.lock_manager.lock(job_id):
                return await self._execute(job_id)
        except LockError as e:
            self.logger.warning("Job invocation skipped, lock not acquired", job_id=job_id, reason=e.message)
            return ExecutionSummary(job_id=job_id, status=JobStatus.SKIPPED, error=e.message)

    async def _execute(self, job_id: int) -> ExecutionSummary:
        started = time.monotonic()
        job = await self.repository.get(job_id)
        if job is None:
            self.logger.error("Job not found", job_id=job_id)
            return ExecutionSummary(job_id=job_id, status=JobStatus.FAILED, error=f"Job {job_id} not found")

        bind_job_context(job_id, job.name)
        try:
            if not job.is_enabled:
                job.update_execution_result(JobStatus.SKIPPED, error="disabled", now=self.clock())
                await self.repository.update(job)
                self.logger.info("Job is disabled, invocation skipped")
                return ExecutionSummary(job_id=job_id, status=JobStatus.SKIPPED, error="disabled")

            summary = ExecutionSummary(job_id=job_id, status=JobStatus.RUNNING)
            try:
                if job.last_status == JobStatus.RUNNING:
                    self.logger.warning(
                        "Previous invocation never recorded its outcome, starting over",
                        last_run_at=job.last_run_at.isoformat() if job.last_run_at else None,
                    )
                job.update_execution_result(JobStatus.RUNNING, now=self.clock())
                await self.repository.update(job)
                self.logger.info("Job invocation started", strategy=str(job.strategy))

                error = await self._run_batches(job, summary)
                self._finish(job, summary, error)
                await self.repository.update(job)
            except asyncio.CancelledError:
                summary.status = JobStatus.FAILED
                summary.error = "cancelled"
                await asyncio.shield(self._record_failure(job, summary))
                raise
            except Exception as e:
                self.logger.error("Job invocation failed unexpectedly", error=str(e), exc_info=True)
                summary.status = JobStatus.FAILED
                summary.error = f"Unexpected error: {e}"
                await self._record_failure(job, summary)

            summary.duration_seconds = time.monotonic() - started
            self.logger.info(
                "Job invocation finished",
                status=str(summary.status),
                rows_moved=summary.rows_moved,
                batches=summary.batches,
                duration_seconds=round(summary.duration_seconds, 3),
                error=summary.error,
            )
            if self.metrics:
                self.metrics.record_invocation(
                    job.name, str(summary.status), job.consecutive_failures, summary.auto_disabled
                )
            return summary
        finally:
            clear_job_context()

    async def _run_batches(self, job: ArchivalJob, summary: ExecutionSummary) -> Optional[str]:
        """Run batches until the row cap is reached or a batch fails or moves nothing.

        A partition switch moves at most one partition per invocation.

        Returns:
            The failure message, or None when every batch succeeded
        """
        try:
            executor = await self.executor_factory(job)
            verdict = await executor.preflight(job)
        except ArchivalError as e:
            return e.message

        if not verdict.can_proceed:
            return f"Pre-flight validation failed: {verdict.summary()}"

        for _ in range(math.ceil(job.max_rows_per_execution / job.batch_size)):
            remaining = job.max_rows_per_execution - summary.rows_moved
            if remaining <= 0:
                break

            try:
                result = await asyncio.wait_for(
                    executor.run_batch(job, limit=min(job.batch_size, remaining)),
                    timeout=job.batch_timeout_seconds,
                )
            except asyncio.TimeoutError:
                result = BatchResult.failed(
                    f"Batch timed out after {job.batch_timeout_seconds}s", job.batch_timeout_seconds
                )

            summary.batches += 1
            if result.audit:
                summary.audits.append(result.audit)
            if self.metrics:
                self.metrics.record_batch(
                    job.name, str(job.strategy), result.success, result.rows_moved, result.duration_seconds
                )

            if not result.success:
                return result.error or "Batch failed"
            if result.rows_moved == 0:
                break
            summary.rows_moved += result.rows_moved
            if job.strategy == MoveStrategy.PARTITION_SWITCH:
                # The switched partition fills the target; the next one waits for the next firing
                break

        return None

    def _finish(self, job: ArchivalJob, summary: ExecutionSummary, error: Optional[str]) -> None:
        if error is not None:
            status = JobStatus.FAILED
        elif summary.rows_moved == 0:
            status = JobStatus.SKIPPED
        else:
            status = JobStatus.SUCCESS

        now = self.clock()
        was_enabled = job.is_enabled
        job.update_execution_result(status, summary.rows_moved, error, now=now)
        if job.is_enabled:
            job.set_next_run_time(next_run_time(job, now))

        summary.status = status
        summary.error = error
        summary.auto_disabled = was_enabled and not job.is_enabled
        if summary.auto_disabled:
            self.logger.warning(
                "Job disabled after consecutive failures",
                consecutive_failures=job.consecutive_failures,
                max_consecutive_failures=job.max_consecutive_failures,
            )

    async def _record_failure(self, job: ArchivalJob, summary: ExecutionSummary) -> None:
        """Best-effort write of a Failed outcome on a freshly loaded copy of the job."""
        try:
            current = await self.repository.get(job.id) or job
        except Exception as e:
            self.logger.warning("Failed to reload job, using in-memory state", error=str(e))
            current = job

        try:
            now = self.clock()
            was_enabled = current.is_enabled
            current.update_execution_result(JobStatus.FAILED, summary.rows_moved, summary.error, now=now)
            if current.is_enabled:
                current.set_next_run_time(next_run_time(current, now))
            summary.auto_disabled = was_enabled and not current.is_enabled
            await self.repository.update(current)
            job.consecutive_failures = current.consecutive_failures
        except Exception as e:
            self.logger.error("Failed to record job failure", error=str(e), exc_info=True)
