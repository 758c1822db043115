"""Persistence of archival jobs."""

from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import structlog

from archival.database import DatabaseManager
from archival.exceptions import ConfigurationError, DatabaseError
from archival.models import ArchivalJob
from utils.logging import get_logger

JOBS_TABLE = "archival_jobs"

_CREATE_TABLE = f"""
    CREATE TABLE IF NOT EXISTS {JOBS_TABLE} (
        id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        source_datasource TEXT NOT NULL,
        source_schema TEXT NOT NULL,
        source_table TEXT NOT NULL,
        target_schema TEXT NOT NULL,
        target_table TEXT NOT NULL,
        filter_column TEXT NOT NULL,
        filter_predicate TEXT NOT NULL,
        filter_definition TEXT,
        strategy TEXT NOT NULL,
        delete_source_rows BOOLEAN NOT NULL,
        batch_size INTEGER NOT NULL CHECK (batch_size > 0),
        max_rows_per_execution INTEGER NOT NULL CHECK (max_rows_per_execution >= batch_size),
        interval_minutes INTEGER CHECK (interval_minutes > 0),
        cron_expression TEXT,
        max_consecutive_failures INTEGER NOT NULL CHECK (max_consecutive_failures > 0),
        batch_timeout_seconds DOUBLE PRECISION NOT NULL,
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        next_run_at TIMESTAMPTZ,
        last_run_at TIMESTAMPTZ,
        last_status TEXT NOT NULL DEFAULT 'NotStarted',
        last_error TEXT,
        last_rows_moved BIGINT NOT NULL DEFAULT 0,
        total_runs BIGINT NOT NULL DEFAULT 0,
        total_rows_moved BIGINT NOT NULL DEFAULT 0,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK (interval_minutes IS NOT NULL OR cron_expression IS NOT NULL)
    )
"""

# Every persisted field except the identity column
_COLUMNS = [name for name in ArchivalJob.model_fields if name != "id"]


class JobRepository(Protocol):
    """Storage operations the runner and CLI depend on."""

    async def get(self, job_id: int) -> Optional[ArchivalJob]: ...

    async def get_by_name(self, name: str) -> Optional[ArchivalJob]: ...

    async def get_enabled(self) -> list[ArchivalJob]: ...

    async def get_due(self, now: datetime) -> list[ArchivalJob]: ...

    async def create(self, job: ArchivalJob) -> ArchivalJob: ...

    async def update(self, job: ArchivalJob) -> None: ...

    async def delete(self, job_id: int) -> bool: ...


def _to_row(job: ArchivalJob) -> list[Any]:
    values = job.model_dump(include=set(_COLUMNS))
    return [str(values[c]) if c in ("strategy", "last_status") else values[c] for c in _COLUMNS]


class PostgresJobRepository:
    """Stores jobs in the ``archival_jobs`` table."""

    def __init__(self, db_manager: DatabaseManager, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.db_manager = db_manager
        self.logger = logger or get_logger("job_repository")

    async def ensure_table(self) -> None:
        """Create the jobs table if it doesn't exist."""
        await self.db_manager.execute(_CREATE_TABLE)
        await self.db_manager.execute(
            f"CREATE INDEX IF NOT EXISTS ix_{JOBS_TABLE}_due ON {JOBS_TABLE} (next_run_at) WHERE is_enabled"
        )

    def _to_job(self, row: Any) -> ArchivalJob:
        try:
            return ArchivalJob.model_validate(dict(row))
        except ValueError as e:
            raise ConfigurationError(
                f"Stored job is invalid: {e}",
                context={"job_id": row["id"], "job": row["name"]},
            ) from e

    async def get(self, job_id: int) -> Optional[ArchivalJob]:
        row = await self.db_manager.fetchrow(f"SELECT * FROM {JOBS_TABLE} WHERE id = $1", job_id)
        return self._to_job(row) if row else None

    async def get_by_name(self, name: str) -> Optional[ArchivalJob]:
        row = await self.db_manager.fetchrow(f"SELECT * FROM {JOBS_TABLE} WHERE name = $1", name)
        return self._to_job(row) if row else None

    async def list_all(self) -> list[ArchivalJob]:
        rows = await self.db_manager.fetch(f"SELECT * FROM {JOBS_TABLE} ORDER BY id")
        return [self._to_job(row) for row in rows]

    async def get_enabled(self) -> list[ArchivalJob]:
        rows = await self.db_manager.fetch(f"SELECT * FROM {JOBS_TABLE} WHERE is_enabled ORDER BY id")
        return [self._to_job(row) for row in rows]

    async def get_due(self, now: datetime) -> list[ArchivalJob]:
        """Enabled jobs that never ran or whose next run time has passed."""
        rows = await self.db_manager.fetch(
            f"""
            SELECT * FROM {JOBS_TABLE}
            WHERE is_enabled AND (next_run_at IS NULL OR next_run_at <= $1)
            ORDER BY next_run_at NULLS FIRST, id
            """,
            now,
        )
        return [self._to_job(row) for row in rows]

    async def create(self, job: ArchivalJob) -> ArchivalJob:
        """Insert a job and return it with its assigned id.

        Raises:
            ConfigurationError: If a job with the same name exists
        """
        if await self.get_by_name(job.name) is not None:
            raise ConfigurationError(f"Job name already exists: {job.name}", context={"job": job.name})

        now = datetime.now(timezone.utc)
        job.created_at = job.created_at or now
        job.updated_at = job.updated_at or now
        placeholders = ", ".join(f"${i}" for i in range(1, len(_COLUMNS) + 1))
        job_id = await self.db_manager.fetchval(
            f"INSERT INTO {JOBS_TABLE} ({', '.join(_COLUMNS)}) VALUES ({placeholders}) RETURNING id",
            *_to_row(job),
        )
        job.id = int(job_id)
        self.logger.info("Job created", job_id=job.id, job_name=job.name)
        return job

    async def update(self, job: ArchivalJob) -> None:
        """Write every field of a job.

        Raises:
            DatabaseError: If the job does not exist or the write fails
        """
        if job.id is None:
            raise DatabaseError("Cannot update a job without an id", context={"job": job.name})

        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(_COLUMNS, start=2))
        status = await self.db_manager.execute(
            f"UPDATE {JOBS_TABLE} SET {assignments} WHERE id = $1",
            job.id,
            *_to_row(job),
        )
        if status.endswith(" 0"):
            raise DatabaseError(f"Job {job.id} not found", context={"job_id": job.id})

    async def delete(self, job_id: int) -> bool:
        status = await self.db_manager.execute(f"DELETE FROM {JOBS_TABLE} WHERE id = $1", job_id)
        deleted = not status.endswith(" 0")
        if deleted:
            self.logger.info("Job deleted", job_id=job_id)
        return deleted
