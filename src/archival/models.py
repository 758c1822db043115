"""Archival job aggregate and the typed records exchanged between components."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from archival.exceptions import ConfigurationError, StateTransitionError
from archival.scheduling import build_cron_trigger
from utils import is_valid_identifier, validate_filter_predicate


class JobStatus(StrEnum):
    """Outcome of the most recent invocation of a job."""

    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.NOT_STARTED: frozenset({JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.RUNNING, JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.SKIPPED}),
    JobStatus.SUCCESS: frozenset({JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.FAILED}),
    JobStatus.SKIPPED: frozenset({JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.FAILED}),
}


class MoveStrategy(StrEnum):
    """How rows are moved from the source table to the target table."""

    PARTITION_SWITCH = "PartitionSwitch"
    FILE_BULK_LOAD = "FileBulkLoad"
    STREAMING_BULK_COPY = "StreamingBulkCopy"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobSettings(BaseModel):
    """Configurable part of an archival job."""

    name: str = Field(description="Unique job name")
    description: Optional[str] = Field(default=None, description="Free-text description")
    source_datasource: str = Field(description="Name of the configured datasource holding the source table")
    source_schema: str = Field(default="public", description="Source schema name")
    source_table: str = Field(description="Source table name")
    target_schema: str = Field(default="public", description="Target schema name")
    target_table: str = Field(description="Target table name")
    filter_column: str = Field(description="Column the filter predicate applies to")
    filter_predicate: str = Field(
        description="Raw predicate fragment appended to the filter column, e.g. \"< now() - interval '10 minutes'\"",
    )
    filter_definition: Optional[str] = Field(
        default=None,
        description="Structured filter kept for editor round-trips (never evaluated)",
    )
    strategy: MoveStrategy = Field(
        default=MoveStrategy.STREAMING_BULK_COPY,
        description="Move strategy",
    )
    delete_source_rows: bool = Field(
        default=True,
        description="Delete source rows after they are copied (copy strategies only)",
    )
    batch_size: int = Field(default=10000, description="Rows per batch", gt=0)
    max_rows_per_execution: int = Field(
        default=100000,
        description="Maximum rows moved by one scheduled invocation",
        gt=0,
    )
    interval_minutes: Optional[int] = Field(default=None, description="Run interval in minutes", gt=0)
    cron_expression: Optional[str] = Field(
        default=None,
        description="Cron expression (5 or 6 fields); takes precedence over interval_minutes",
    )
    max_consecutive_failures: int = Field(
        default=5,
        description="Consecutive failed invocations before the job disables itself",
        gt=0,
    )
    batch_timeout_seconds: float = Field(default=300.0, description="Timeout for a single batch", gt=0)

    @field_validator("name", "source_datasource")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject empty or whitespace-only names."""
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("source_schema", "source_table", "target_schema", "target_table", "filter_column")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Require plain SQL identifiers for every object name."""
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        if not is_valid_identifier(v):
            raise ValueError(f"{v!r} is not a valid SQL identifier")
        return v

    @field_validator("filter_predicate")
    @classmethod
    def validate_predicate(cls, v: str) -> str:
        """Reject empty predicates and statement separators or comments."""
        return validate_filter_predicate(v)

    @field_validator("cron_expression")
    @classmethod
    def validate_cron(cls, v: Optional[str]) -> Optional[str]:
        """Normalise blank cron expressions to None and check syntax."""
        if v is None or not v.strip():
            return None
        v = " ".join(v.split())
        try:
            build_cron_trigger(v)
        except ConfigurationError as e:
            raise ValueError(e.message) from e
        return v

    @model_validator(mode="after")
    def validate_limits_and_trigger(self) -> "JobSettings":
        """Check cross-field invariants."""
        if self.max_rows_per_execution < self.batch_size:
            raise ValueError(
                f"max_rows_per_execution ({self.max_rows_per_execution}) must be >= "
                f"batch_size ({self.batch_size})"
            )
        if self.interval_minutes is None and self.cron_expression is None:
            raise ValueError("Either interval_minutes or cron_expression must be provided")
        return self


class ArchivalJob(JobSettings):
    """Persisted archival job: configuration plus runtime statistics.

    State only changes through the methods below so that the invariants of
    :class:`JobSettings` and the status transition table always hold.
    """

    id: Optional[int] = Field(default=None, description="Repository-assigned identifier")
    is_enabled: bool = Field(default=True, description="Whether scheduled firings run the job")
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_status: JobStatus = JobStatus.NOT_STARTED
    last_error: Optional[str] = None
    last_rows_moved: int = Field(default=0, ge=0)
    total_runs: int = Field(default=0, ge=0)
    total_rows_moved: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def create(cls, **fields: Any) -> "ArchivalJob":
        """Build a validated job.

        Raises:
            ConfigurationError: If any invariant is violated
        """
        try:
            job = cls(**fields)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid archival job: {e}",
                context={"job": fields.get("name")},
            ) from e
        now = _utcnow()
        job.created_at = job.created_at or now
        job.updated_at = job.updated_at or now
        return job

    def settings(self) -> JobSettings:
        """Return the configurable fields as a standalone model."""
        return JobSettings.model_validate(self.model_dump(include=set(JobSettings.model_fields)))

    def update(self, **changes: Any) -> None:
        """Apply configuration changes after validating the resulting job.

        Raises:
            ConfigurationError: On unknown fields or invariant violations
        """
        unknown = set(changes) - set(JobSettings.model_fields)
        if unknown:
            raise ConfigurationError(
                f"Cannot update non-configuration fields: {sorted(unknown)}",
                context={"job": self.name},
            )

        merged = {**self.model_dump(include=set(JobSettings.model_fields)), **changes}
        try:
            validated = JobSettings.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid archival job update: {e}", context={"job": self.name}) from e

        for name in JobSettings.model_fields:
            setattr(self, name, getattr(validated, name))
        self.updated_at = _utcnow()

    def enable(self) -> None:
        self.is_enabled = True
        self.updated_at = _utcnow()

    def disable(self) -> None:
        """Disable the job; a disabled job has no next run."""
        self.is_enabled = False
        self.next_run_at = None
        self.updated_at = _utcnow()

    def transition_to(self, status: JobStatus) -> None:
        """Move ``last_status`` along the transition table.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        if status not in ALLOWED_TRANSITIONS[self.last_status]:
            raise StateTransitionError(
                f"Cannot transition job from {self.last_status} to {status}",
                context={"job": self.name, "from": str(self.last_status), "to": str(status)},
            )
        self.last_status = status

    def update_execution_result(
        self,
        status: JobStatus,
        rows_moved: int = 0,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Record the outcome of an invocation (or its start, for Running).

        Failed outcomes count toward ``max_consecutive_failures``; reaching the
        limit disables the job. Success and Skipped reset the failure count.
        """
        now = now or _utcnow()
        self.transition_to(status)
        self.updated_at = now

        if status == JobStatus.RUNNING:
            self.last_run_at = now
            self.last_error = None
            return

        self.last_rows_moved = rows_moved

        if status == JobStatus.SUCCESS:
            self.consecutive_failures = 0
            self.total_runs += 1
            self.total_rows_moved += rows_moved
            self.last_error = None
        elif status == JobStatus.SKIPPED:
            self.consecutive_failures = 0
            self.last_error = error
        else:
            self.consecutive_failures += 1
            self.last_error = error
            if self.consecutive_failures >= self.max_consecutive_failures:
                self.disable()

    def set_next_run_time(self, next_run_at: Optional[datetime]) -> None:
        self.next_run_at = next_run_at
        self.updated_at = _utcnow()

    def reset_statistics(self) -> None:
        """Clear counters and the last outcome."""
        self.last_status = JobStatus.NOT_STARTED
        self.last_error = None
        self.last_rows_moved = 0
        self.total_runs = 0
        self.total_rows_moved = 0
        self.consecutive_failures = 0
        self.updated_at = _utcnow()


@dataclass(frozen=True)
class PartitionInfo:
    """Partitioning of a declaratively partitioned table."""

    partition_function: str
    partition_scheme: str
    column_name: str
    column_type: str
    range_direction: Optional[str]
    partition_count: int


@dataclass(frozen=True)
class PartitionDetail:
    """One leaf partition of a partitioned table."""

    partition_number: int
    schema_name: str
    table_name: str
    bound_expression: str
    lower_boundary: Optional[str]
    boundary_value: Optional[str]
    row_count: int
    size_bytes: int
    tablespace: str

    @property
    def is_default(self) -> bool:
        return self.bound_expression.strip().upper() == "DEFAULT"


@dataclass(frozen=True)
class ColumnDefinition:
    """Column as reported by the catalog."""

    name: str
    ordinal_position: int
    data_type: str
    is_nullable: bool
    max_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    datetime_precision: Optional[int] = None
    default: Optional[str] = None
    is_identity: bool = False
    identity_generation: Optional[str] = None
    identity_seed: Optional[int] = None
    identity_increment: Optional[int] = None
    is_primary_key: bool = False
    udt_name: Optional[str] = None


@dataclass(frozen=True)
class IndexDefinition:
    """Index on a table, with whether it hangs off a partitioned parent index."""

    name: str
    columns: tuple[str, ...]
    is_unique: bool
    is_primary: bool
    is_inherited: bool = False


@dataclass(frozen=True)
class ForeignKeyReference:
    """Foreign key in another table pointing at the inspected table."""

    constraint_name: str
    referencing_schema: str
    referencing_table: str


class StatisticsMethod(StrEnum):
    """How column statistics were obtained."""

    EXACT = "exact"
    PROBE = "probe"
    SAMPLE = "sample"
    UNAVAILABLE = "unavailable"


@dataclass
class ColumnStatistics:
    """Min/max/row-count facts for a column."""

    column: str
    total_rows: int
    method: StatisticsMethod
    min_value: Any = None
    max_value: Any = None
    distinct_rows: Optional[int] = None
    is_approximate: bool = False

    @property
    def is_available(self) -> bool:
        return self.method != StatisticsMethod.UNAVAILABLE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "column": self.column,
            "min": self.min_value,
            "max": self.max_value,
            "total_rows": self.total_rows,
            "distinct_rows": self.distinct_rows,
            "method": str(self.method),
            "is_approximate": self.is_approximate,
        }


@dataclass
class BatchResult:
    """Outcome of one low-level move operation."""

    success: bool
    rows_moved: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    audit: Optional[str] = None
    throughput_rows_per_second: Optional[float] = None

    @classmethod
    def failed(cls, error: str, duration_seconds: float = 0.0, audit: Optional[str] = None) -> "BatchResult":
        return cls(success=False, error=error, duration_seconds=duration_seconds, audit=audit)


@dataclass
class ExecutionSummary:
    """Aggregate result of one ``JobRunner.execute`` invocation."""

    job_id: int
    status: JobStatus
    rows_moved: int = 0
    batches: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    audits: list[str] = field(default_factory=list)
    auto_disabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "job_id": self.job_id,
            "status": str(self.status),
            "rows_moved": self.rows_moved,
            "batches": self.batches,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
            "auto_disabled": self.auto_disabled,
        }
