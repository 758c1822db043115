"""Command line interface of the table archival engine."""

import asyncio
import json
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import click
import structlog

from archival.config import EngineConfig, load_config
from archival.database import ConnectionRegistry, DatabaseManager
from archival.exceptions import ArchivalError, ConfigurationError
from archival.executor import ArchiveExecutor
from archival.introspector import SchemaIntrospector
from archival.locking import JobLockManager
from archival.metrics import ArchivalMetrics
from archival.models import ArchivalJob, JobSettings, JobStatus, MoveStrategy
from archival.replicator import StructureReplicator
from archival.repository import PostgresJobRepository
from archival.runner import DataSourceExecutorFactory, JobRunner
from archival.scheduling import TriggerScheduler, next_run_time
from utils.logging import configure_logging
from utils.output import (
    print_error,
    print_execution_summary,
    print_header,
    print_key_value,
    print_section,
    print_success,
    print_table,
    print_verdict,
    print_warning,
)


@dataclass
class CliContext:
    config: EngineConfig
    logger: structlog.BoundLogger
    json_output: bool


@dataclass
class Engine:
    """Connections and services shared by the commands."""

    repository_db: DatabaseManager
    repository: PostgresJobRepository
    registry: ConnectionRegistry


@asynccontextmanager
async def open_engine(config: EngineConfig, logger: structlog.BoundLogger) -> AsyncGenerator[Engine, None]:
    """Connect to the repository database and make sure the jobs table exists."""
    repository_db = DatabaseManager(config.repository, logger=logger)
    registry = ConnectionRegistry(config, logger=logger)
    await repository_db.connect()
    try:
        repository = PostgresJobRepository(repository_db, logger=logger)
        await repository.ensure_table()
        yield Engine(repository_db, repository, registry)
    finally:
        await registry.close()
        await repository_db.disconnect()


def build_runner(
    engine: Engine,
    config: EngineConfig,
    logger: structlog.BoundLogger,
    metrics: Optional[ArchivalMetrics] = None,
) -> JobRunner:
    lock_manager = (
        JobLockManager(engine.repository_db, logger=logger) if config.execution.use_advisory_lock else None
    )
    return JobRunner(
        engine.repository,
        DataSourceExecutorFactory(engine.registry, config, logger=logger),
        lock_manager=lock_manager,
        metrics=metrics,
        logger=logger,
    )


async def _require_job(engine: Engine, job_id: int) -> ArchivalJob:
    job = await engine.repository.get(job_id)
    if job is None:
        raise ConfigurationError(f"Job {job_id} not found", context={"job_id": job_id})
    return job


def _run(ctx: CliContext, coro: Any) -> Any:
    """Run a command coroutine, turning engine errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except ArchivalError as e:
        ctx.logger.error("Command failed", error=e.message, correlation_id=e.correlation_id)
        print_error(e.message)
        sys.exit(1)
    except Exception as e:
        ctx.logger.exception("Unexpected error", error=str(e))
        print_error(str(e))
        sys.exit(1)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]),
    help="Log level",
)
@click.option(
    "--log-format",
    default="console",
    type=click.Choice(["console", "json"], case_sensitive=False),
    help="Log format: 'console' for human-readable output, 'json' for structured logs (default: console)",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable verbose output")
@click.option("--json", "json_output", is_flag=True, default=False, help="Print results as JSON")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path,
    log_level: str,
    log_format: str,
    verbose: bool,
    json_output: bool,
) -> None:
    """Move aged rows out of live PostgreSQL tables into archive tables."""
    logger = configure_logging(log_level="DEBUG" if verbose else log_level, log_format=log_format)
    logger = logger.bind(component="cli")
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        logger.error("Configuration error", error=e.message, correlation_id=e.correlation_id)
        print_error(e.message)
        sys.exit(1)
    ctx.obj = CliContext(config=config, logger=logger, json_output=json_output)


@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
def run(ctx: CliContext, job_id: int) -> None:
    """Run one invocation of JOB_ID now."""

    async def _execute() -> dict[str, Any]:
        async with open_engine(ctx.config, ctx.logger) as engine:
            summary = await build_runner(engine, ctx.config, ctx.logger).execute(job_id)
            return summary.to_dict()

    result = _run(ctx, _execute())
    if ctx.json_output:
        click.echo(json.dumps(result, indent=2, default=str))
    else:
        print_execution_summary(result)
    if result["status"] == str(JobStatus.FAILED):
        sys.exit(1)


@cli.command()
@click.argument("job_id", type=int)
@click.option("--boundary", help="Partition boundary to check (partition switch jobs)")
@click.pass_obj
def validate(ctx: CliContext, job_id: int, boundary: Optional[str]) -> None:
    """Run the pre-flight safety checks of JOB_ID without moving data."""

    async def _validate() -> tuple[list[tuple[str, str]], list[tuple[str, str]]]:
        async with open_engine(ctx.config, ctx.logger) as engine:
            job = await _require_job(engine, job_id)
            connections = await engine.registry.get(job.source_datasource)
            executor = ArchiveExecutor(
                connections, ctx.config.execution, ctx.config.introspection, logger=ctx.logger
            )
            if job.strategy == MoveStrategy.PARTITION_SWITCH:
                partition = await executor.resolve_partition(job, boundary)
                if partition is None:
                    print_warning("No partition currently qualifies; checking structure only")
                verdict = await executor.validator.validate(executor.plan_for(job, partition))
            else:
                verdict = await executor.validator.check_append(executor.plan_for(job))
            return (
                [(str(i.code), i.message) for i in verdict.blocking_issues],
                [(str(i.code), i.message) for i in verdict.warnings],
            )

    blocking, warnings = _run(ctx, _validate())
    if ctx.json_output:
        click.echo(json.dumps({"blocking": blocking, "warnings": warnings}, indent=2))
    else:
        print_header(f"Safety validation: job {job_id}")
        print_verdict(blocking, warnings)
    if blocking:
        sys.exit(1)


@cli.command("create-target")
@click.argument("job_id", type=int)
@click.option("--tablespace", help="Tablespace for the new table")
@click.option("--dry-run", is_flag=True, default=False, help="Print the DDL without executing it")
@click.pass_obj
def create_target(ctx: CliContext, job_id: int, tablespace: Optional[str], dry_run: bool) -> None:
    """Create the target table of JOB_ID from its source table's structure."""

    async def _create() -> tuple[bool, str]:
        async with open_engine(ctx.config, ctx.logger) as engine:
            job = await _require_job(engine, job_id)
            connections = await engine.registry.get(job.source_datasource)
            replicator = StructureReplicator(logger=ctx.logger)
            if dry_run:
                source = SchemaIntrospector(connections.source, logger=ctx.logger)
                columns = await source.get_columns(job.source_schema, job.source_table)
                if not columns:
                    return False, f"Source table {job.source_schema}.{job.source_table} does not exist"
                primary_key = await source.get_primary_key(job.source_schema, job.source_table)
                return True, replicator.build_create_script(
                    columns, primary_key, job.target_schema, job.target_table, tablespace
                )
            result = await replicator.create_target_table(
                connections.source,
                connections.target,
                job.source_schema,
                job.source_table,
                job.target_schema,
                job.target_table,
                tablespace,
            )
            return result.ok, result.script if result.ok else result.reason

    ok, text = _run(ctx, _create())
    if not ok:
        print_error(text)
        sys.exit(1)
    click.echo(text)
    if not dry_run:
        print_success("Target table created")


@cli.command()
@click.option("--datasource", "-d", required=True, help="Configured datasource name")
@click.option("--schema", "schema_name", default="public", show_default=True, help="Schema name")
@click.option("--table", "-t", "table_name", required=True, help="Table name")
@click.option("--column", help="Column to collect min/max/distinct statistics for")
@click.option("--target", "use_target", is_flag=True, default=False, help="Inspect the datasource's target database")
@click.pass_obj
def inspect(
    ctx: CliContext,
    datasource: str,
    schema_name: str,
    table_name: str,
    column: Optional[str],
    use_target: bool,
) -> None:
    """Show structure, partitions and statistics of a table."""

    async def _inspect() -> dict[str, Any]:
        registry = ConnectionRegistry(ctx.config, logger=ctx.logger)
        try:
            connections = await registry.get(datasource)
            db = connections.target if use_target else connections.source
            introspector = SchemaIntrospector(db, ctx.config.introspection, logger=ctx.logger)
            if not await introspector.table_exists(schema_name, table_name):
                raise ConfigurationError(
                    f"Table {schema_name}.{table_name} does not exist", context={"datasource": datasource}
                )
            info = await introspector.get_partition_info(schema_name, table_name)
            report: dict[str, Any] = {
                "columns": await introspector.get_columns(schema_name, table_name),
                "primary_key": await introspector.get_primary_key(schema_name, table_name),
                "estimated_rows": await introspector.get_estimated_row_count(schema_name, table_name),
                "partition_info": info,
                "partitions": (
                    await introspector.get_partition_details(schema_name, table_name) if info else []
                ),
                "statistics": None,
            }
            if column:
                report["statistics"] = await introspector.get_column_statistics(schema_name, table_name, column)
            return report
        finally:
            await registry.close()

    report = _run(ctx, _inspect())
    if ctx.json_output:
        click.echo(
            json.dumps(
                {
                    "columns": [c.name for c in report["columns"]],
                    "primary_key": report["primary_key"],
                    "estimated_rows": report["estimated_rows"],
                    "partitions": [p.table_name for p in report["partitions"]],
                    "statistics": report["statistics"].to_dict() if report["statistics"] else None,
                },
                indent=2,
                default=str,
            )
        )
        return

    print_header(f"{schema_name}.{table_name}")
    print_key_value("Estimated rows", f"{report['estimated_rows']:,}")
    print_key_value("Primary key", ", ".join(report["primary_key"]) or None)

    print_section("Columns")
    print_table(
        ["#", "Name", "Type", "Nullable", "Identity"],
        [
            [c.ordinal_position, c.name, c.udt_name or c.data_type, c.is_nullable, c.identity_generation]
            for c in report["columns"]
        ],
    )

    info = report["partition_info"]
    if info:
        print_section("Partitioning")
        print_key_value("Key", info.partition_function)
        print_key_value("Partitions", info.partition_count)
        print_table(
            ["#", "Partition", "Lower", "Upper", "Rows", "Tablespace"],
            [
                [p.partition_number, p.table_name, p.lower_boundary, p.boundary_value, p.row_count, p.tablespace]
                for p in report["partitions"]
            ],
        )

    stats = report["statistics"]
    if stats:
        print_section(f"Statistics: {stats.column}")
        print_key_value("Method", str(stats.method))
        print_key_value("Rows", f"{stats.total_rows:,}")
        print_key_value("Min", stats.min_value)
        print_key_value("Max", stats.max_value)
        print_key_value("Distinct", stats.distinct_rows)
        print_key_value("Approximate", stats.is_approximate)
    click.echo()


async def sync_jobs_from_config(
    repository: Any,
    jobs: list[JobSettings],
    logger: structlog.BoundLogger,
    now: Optional[datetime] = None,
) -> tuple[int, int]:
    """Create or update repository jobs from configured job definitions.

    Returns:
        ``(created, updated)`` counts
    """
    now = now or datetime.now(timezone.utc)
    created = updated = 0
    for settings in jobs:
        fields = settings.model_dump()
        existing = await repository.get_by_name(settings.name)
        if existing is None:
            job = ArchivalJob.create(**fields)
            job.set_next_run_time(next_run_time(job, now))
            await repository.create(job)
            created += 1
            continue

        if existing.settings() == settings:
            continue
        trigger_changed = (existing.interval_minutes, existing.cron_expression) != (
            settings.interval_minutes,
            settings.cron_expression,
        )
        existing.update(**fields)
        if trigger_changed and existing.is_enabled:
            existing.set_next_run_time(next_run_time(existing, now))
        await repository.update(existing)
        logger.info("Job definition updated", job_id=existing.id, job_name=existing.name)
        updated += 1
    return created, updated


@cli.command("sync-jobs")
@click.pass_obj
def sync_jobs(ctx: CliContext) -> None:
    """Create or update the jobs defined in the configuration file."""

    async def _sync() -> tuple[int, int]:
        async with open_engine(ctx.config, ctx.logger) as engine:
            return await sync_jobs_from_config(engine.repository, ctx.config.jobs, ctx.logger)

    created, updated = _run(ctx, _sync())
    print_success(f"{created} job(s) created, {updated} job(s) updated")


@cli.command("list-jobs")
@click.pass_obj
def list_jobs(ctx: CliContext) -> None:
    """List stored jobs with their last outcome."""

    async def _list() -> list[ArchivalJob]:
        async with open_engine(ctx.config, ctx.logger) as engine:
            return await engine.repository.list_all()

    jobs = _run(ctx, _list())
    if ctx.json_output:
        click.echo(json.dumps([job.model_dump(mode="json") for job in jobs], indent=2))
        return

    print_header("Archival jobs")
    print_table(
        ["Id", "Name", "Strategy", "Enabled", "Status", "Last rows", "Total rows", "Failures", "Next run"],
        [
            [
                job.id,
                job.name,
                str(job.strategy),
                job.is_enabled,
                str(job.last_status),
                job.last_rows_moved,
                job.total_rows_moved,
                job.consecutive_failures,
                job.next_run_at.isoformat(timespec="seconds") if job.next_run_at else None,
            ]
            for job in jobs
        ],
    )


@cli.command()
@click.option("--sync/--no-sync", "sync_first", default=True, help="Sync configured jobs before scheduling")
@click.pass_obj
def schedule(ctx: CliContext, sync_first: bool) -> None:
    """Fire enabled jobs on their triggers until interrupted."""

    async def _serve() -> None:
        metrics: Optional[ArchivalMetrics] = None
        monitoring = ctx.config.monitoring
        if monitoring and monitoring.metrics_enabled:
            metrics = ArchivalMetrics(logger=ctx.logger)
            metrics.start_metrics_server(monitoring.metrics_port)

        async with open_engine(ctx.config, ctx.logger) as engine:
            if sync_first:
                await sync_jobs_from_config(engine.repository, ctx.config.jobs, ctx.logger)

            scheduler_config = ctx.config.scheduler
            scheduler = TriggerScheduler(
                build_runner(engine, ctx.config, ctx.logger, metrics),
                engine.repository,
                tz=scheduler_config.timezone,
                misfire_grace_seconds=scheduler_config.misfire_grace_seconds,
                logger=ctx.logger,
            )
            await scheduler.sync()
            # Picks up jobs enabled, disabled or edited while the scheduler runs
            scheduler.scheduler.add_job(
                scheduler.sync,
                "interval",
                seconds=scheduler_config.refresh_interval_seconds,
                id="archival_refresh",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            scheduler.start()
            try:
                await asyncio.Event().wait()
            finally:
                scheduler.shutdown()

    try:
        _run(ctx, _serve())
    except KeyboardInterrupt:
        ctx.logger.info("Scheduler interrupted")


if __name__ == "__main__":
    cli()
