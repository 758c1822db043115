"""Configuration management using YAML and Pydantic."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from archival.exceptions import ConfigurationError
from archival.models import JobSettings


def _substitute_env_vars(value: str) -> str:
    """Substitute environment variables in string.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: String potentially containing env var references

    Returns:
        String with environment variables substituted
    """
    pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided")

    return re.sub(pattern, replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in nested structures."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    elif isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class DatabaseConfig(BaseModel):
    """Connection settings for one PostgreSQL database."""

    name: str = Field(description="Database name")
    host: str = Field(description="Database host")
    port: int = Field(default=5432, description="Database port", gt=0, lt=65536)
    user: str = Field(description="Database user")
    password_env: Optional[str] = Field(
        default=None,
        description="Environment variable name containing database password (preferred)",
    )
    password: Optional[str] = Field(
        default=None,
        description="Database password (development only - use password_env in production)",
    )
    connection_pool_size: int = Field(
        default=5,
        description="Connection pool size",
        gt=0,
        le=50,
    )
    command_timeout: float = Field(
        default=60.0,
        description="Default statement timeout (seconds) for queries without an explicit timeout",
        gt=0,
    )

    @model_validator(mode="after")
    def validate_password_source(self) -> "DatabaseConfig":
        """Validate that exactly one password source is provided."""
        if not self.password_env and not self.password:
            raise ValueError(
                "Either 'password_env' or 'password' must be provided. "
                "Use 'password_env' for production (recommended) or 'password' for development only."
            )
        if self.password_env and self.password:
            raise ValueError(
                "Cannot specify both 'password_env' and 'password'. "
                "Use 'password_env' for production (recommended) or 'password' for development only."
            )
        return self

    def get_password(self) -> str:
        """Get password from environment variable or config file.

        Returns:
            Database password

        Raises:
            ValueError: If password cannot be retrieved
        """
        if self.password_env:
            password = os.getenv(self.password_env)
            if not password:
                raise ValueError(f"Environment variable {self.password_env} not set")
            return password
        elif self.password:
            import warnings

            warnings.warn(
                f"Using password from config file for database '{self.name}'. "
                f"This is not recommended for production. Use 'password_env' instead.",
                UserWarning,
                stacklevel=2,
            )
            return self.password
        else:
            raise ValueError("No password source configured")


class DataSourceConfig(BaseModel):
    """A named source database, optionally paired with a separate archive server."""

    name: str = Field(description="Datasource name referenced by jobs")
    database: DatabaseConfig = Field(description="Source database connection")
    target: Optional[DatabaseConfig] = Field(
        default=None,
        description="Archive database connection (defaults to the source database)",
    )

    @property
    def uses_source_as_target(self) -> bool:
        return self.target is None

    @property
    def target_database(self) -> DatabaseConfig:
        return self.target or self.database


class IntrospectionConfig(BaseModel):
    """Adaptive column-statistics policy."""

    exact_statistics_max_rows: int = Field(
        default=1_000_000,
        description="Estimated row count up to which exact aggregates are computed",
        gt=0,
    )
    sample_statistics_min_rows: int = Field(
        default=5_000_000,
        description="Estimated row count above which only sampling is attempted",
        gt=0,
    )
    probe_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for the index-ordered min/max probe",
        gt=0,
    )
    sample_timeout_seconds: float = Field(
        default=3.0,
        description="Timeout for the random-sample estimate",
        gt=0,
    )
    sample_percent: float = Field(
        default=1.0,
        description="Percentage of pages read by TABLESAMPLE SYSTEM",
        gt=0,
        le=100,
    )

    @model_validator(mode="after")
    def validate_thresholds(self) -> "IntrospectionConfig":
        """The exact tier must end before the sampling-only tier starts."""
        if self.sample_statistics_min_rows < self.exact_statistics_max_rows:
            raise ValueError("sample_statistics_min_rows must be >= exact_statistics_max_rows")
        return self


class BulkCopyConfig(BaseModel):
    """Streaming bulk copy options."""

    copy_batch_size: int = Field(default=10000, description="Rows sent per COPY call", gt=0)
    notify_after_rows: int = Field(default=5000, description="Rows between progress notifications", gt=0)
    cursor_prefetch: int = Field(default=1000, description="Rows fetched per cursor round trip", gt=0)


class FileBulkLoadConfig(BaseModel):
    """Options for the psql-driven export/load strategy."""

    psql_path: str = Field(default="psql", description="psql executable")
    temp_directory: Optional[str] = Field(
        default=None,
        description="Directory for intermediate files (system temp dir when unset)",
    )
    native_format: bool = Field(default=True, description="Use binary COPY format instead of text")
    max_errors: int = Field(
        default=10,
        description="Rows that may be skipped on load (text format only, PostgreSQL 17+)",
        ge=0,
    )
    timeout_seconds: float = Field(default=600.0, description="Timeout for each psql process", gt=0)
    keep_temp_files: bool = Field(default=False, description="Keep intermediate files for debugging")


class ExecutionConfig(BaseModel):
    """Runner and executor options."""

    use_advisory_lock: bool = Field(
        default=True,
        description="Hold a PostgreSQL advisory lock keyed by job id while a job runs",
    )
    bulk_copy: BulkCopyConfig = Field(default_factory=BulkCopyConfig)
    file_bulk_load: FileBulkLoadConfig = Field(default_factory=FileBulkLoadConfig)
    create_missing_target: bool = Field(
        default=True,
        description="Replicate the source structure when a copy strategy finds no target table",
    )


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    metrics_enabled: bool = Field(
        default=True,
        description="Enable Prometheus metrics",
    )
    metrics_port: int = Field(
        default=8000,
        description="Port for Prometheus metrics endpoint",
        gt=0,
        lt=65536,
    )


class SchedulerConfig(BaseModel):
    """Recurring trigger options."""

    timezone: str = Field(default="UTC", description="Timezone cron expressions are evaluated in")
    misfire_grace_seconds: int = Field(default=60, description="Late-start tolerance", ge=1)
    refresh_interval_seconds: int = Field(
        default=60,
        description="How often job definitions are reloaded from the repository",
        ge=5,
    )


class EngineConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(description="Configuration version")
    repository: DatabaseConfig = Field(description="Database holding the archival_jobs table")
    datasources: list[DataSourceConfig] = Field(
        description="Databases jobs may archive from",
        min_length=1,
    )
    introspection: IntrospectionConfig = Field(default_factory=IntrospectionConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    monitoring: Optional[MonitoringConfig] = Field(
        default=None,
        description="Monitoring and metrics configuration",
    )
    jobs: list[JobSettings] = Field(
        default_factory=list,
        description="Job definitions synchronised into the repository by 'sync-jobs'",
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v != "1.0":
            raise ValueError(f"Unsupported configuration version: {v}")
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "EngineConfig":
        """Datasource and job names must be unique and jobs must reference known datasources."""
        names = [ds.name for ds in self.datasources]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate datasource names: {sorted(duplicates)}")

        job_names = [job.name for job in self.jobs]
        duplicates = {n for n in job_names if job_names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate job names: {sorted(duplicates)}")

        for job in self.jobs:
            if job.source_datasource not in names:
                raise ValueError(
                    f"Job '{job.name}' references unknown datasource '{job.source_datasource}'"
                )
        return self

    def get_datasource(self, name: str) -> DataSourceConfig:
        """Look up a datasource by name.

        Raises:
            ConfigurationError: If no datasource has that name
        """
        for datasource in self.datasources:
            if datasource.name == name:
                return datasource
        raise ConfigurationError(
            f"Unknown datasource: {name}",
            context={"available": [ds.name for ds in self.datasources]},
        )


def load_config(config_path: Path) -> EngineConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)

        if not raw_config:
            raise ConfigurationError("Configuration file is empty", context={"path": str(config_path)})

        config_data = _substitute_env_in_dict(raw_config)

        return EngineConfig.model_validate(config_data)

    except ConfigurationError:
        raise
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e
    except Exception as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e
