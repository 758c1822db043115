"""Move strategies: each call moves at most one bounded batch of rows."""

import asyncio
import time
from collections.abc import Callable
from typing import Any, Optional

import structlog

from archival.bulk_load import PsqlBulkLoader
from archival.config import ExecutionConfig, IntrospectionConfig
from archival.database import DataSourceConnections
from archival.exceptions import ArchivalError, ExecutionError, SafetyViolationError
from archival.introspector import SchemaIntrospector
from archival.models import BatchResult, ColumnDefinition, JobSettings, MoveStrategy, PartitionDetail
from archival.replicator import StructureReplicator
from archival.validator import MovePlan, SafetyCode, SafetyValidator, SafetyVerdict
from utils import qualified_name, safe_identifier
from utils.logging import get_logger

ProgressCallback = Callable[[int], None]


def _tid_array_literal(ctids: list[Any]) -> str:
    """Render row locators as a ``tid[]`` literal usable inside a psql script."""
    return "'{" + ",".join(f'"({block},{offset})"' for block, offset in ctids) + "}'::tid[]"


def _deleted_count(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 100"
    return int(status.split()[-1])


class _Audit:
    """Collects the statements a batch issued."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def add(self, statement: str) -> None:
        self.lines.append(statement.strip())

    def text(self) -> Optional[str]:
        return "\n".join(self.lines) if self.lines else None


class ArchiveExecutor:
    """Runs one batch of a job's move strategy against one datasource."""

    def __init__(
        self,
        connections: DataSourceConnections,
        config: Optional[ExecutionConfig] = None,
        introspection: Optional[IntrospectionConfig] = None,
        loader: Optional[PsqlBulkLoader] = None,
        on_progress: Optional[ProgressCallback] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize archive executor.

        Args:
            connections: Source and target pools of the job's datasource
            config: Execution options (bulk copy and file load settings)
            introspection: Statistics policy passed to the introspectors
            loader: psql runner for file-based loads
            on_progress: Called with the running row total while streaming
            logger: Optional logger instance
        """
        self.connections = connections
        self.config = config or ExecutionConfig()
        self.logger = logger or get_logger("archive_executor")
        self.source = SchemaIntrospector(connections.source, introspection, logger=self.logger)
        self.target = SchemaIntrospector(connections.target, introspection, logger=self.logger)
        self.validator = SafetyValidator(self.source, self.target, logger=self.logger)
        self.loader = loader or PsqlBulkLoader(self.config.file_bulk_load, logger=self.logger)
        self.on_progress = on_progress
        self.replicator = StructureReplicator(logger=self.logger)

    def plan_for(self, job: JobSettings, partition: Optional[PartitionDetail] = None) -> MovePlan:
        return MovePlan(
            strategy=job.strategy,
            source_schema=job.source_schema,
            source_table=job.source_table,
            target_schema=job.target_schema,
            target_table=job.target_table,
            delete_source_rows=job.delete_source_rows,
            same_database=self.connections.shares_database,
            partition=partition,
        )

    async def preflight(self, job: JobSettings) -> SafetyVerdict:
        """Check a copy job before its first batch, creating a missing target when allowed.

        Partition switches are validated per partition inside
        :meth:`partition_switch`, so they pass here unchecked.
        """
        if job.strategy == MoveStrategy.PARTITION_SWITCH:
            return SafetyVerdict()

        if self.config.create_missing_target and not await self.target.table_exists(
            job.target_schema, job.target_table
        ):
            result = await self.replicator.create_target_table(
                self.connections.source,
                self.connections.target,
                job.source_schema,
                job.source_table,
                job.target_schema,
                job.target_table,
            )
            if not result.ok:
                verdict = SafetyVerdict()
                verdict.block(SafetyCode.MISSING_TARGET_TABLE, f"Target table could not be created: {result.reason}")
                return verdict

        return await self.validator.check_append(self.plan_for(job))

    async def run_batch(
        self,
        job: JobSettings,
        limit: Optional[int] = None,
        boundary: Optional[str] = None,
    ) -> BatchResult:
        """Run one batch of the job's configured strategy.

        Args:
            job: Job settings
            limit: Row cap for this batch (defaults to the job's batch size)
            boundary: Explicit partition boundary for partition switches

        Returns:
            BatchResult; zero rows moved means nothing currently qualifies
        """
        limit = limit or job.batch_size
        if job.strategy == MoveStrategy.PARTITION_SWITCH:
            return await self.partition_switch(job, boundary)
        if job.strategy == MoveStrategy.FILE_BULK_LOAD:
            return await self.file_bulk_load(job, limit)
        return await self.streaming_bulk_copy(job, limit)

    def _qualifying_rows(self, job: JobSettings, select_list: str, limit: int) -> str:
        column = safe_identifier(job.filter_column)
        return (
            f"SELECT {select_list} FROM {qualified_name(job.source_schema, job.source_table)} "
            f"WHERE {column} {job.filter_predicate} "
            f"ORDER BY {column} LIMIT {int(limit)} FOR UPDATE SKIP LOCKED"
        )

    def _delete_rows(self, job: JobSettings) -> str:
        return f"DELETE FROM {qualified_name(job.source_schema, job.source_table)} WHERE ctid = ANY($1::tid[])"

    async def _copy_columns(self, job: JobSettings) -> list[ColumnDefinition]:
        columns = await self.source.get_columns(job.source_schema, job.source_table)
        if not columns:
            raise ExecutionError(
                f"Source table {job.source_schema}.{job.source_table} has no readable columns",
                context={"job": job.name},
            )
        return columns

    def _failure(self, job: JobSettings, error: Exception, started: float, audit: _Audit) -> BatchResult:
        message = error.message if isinstance(error, ArchivalError) else str(error)
        self.logger.error(
            "Batch failed",
            job=job.name,
            strategy=str(job.strategy),
            error=message,
            exc_info=not isinstance(error, ArchivalError),
        )
        return BatchResult.failed(message, time.monotonic() - started, audit.text())

    async def streaming_bulk_copy(self, job: JobSettings, limit: int) -> BatchResult:
        """Stream qualifying rows into the target with COPY, deleting them from the source.

        Both transactions stay open until the target holds the rows and the
        source deleted exactly the rows it copied; any mismatch rolls back both.
        """
        started = time.monotonic()
        audit = _Audit()
        options = self.config.bulk_copy
        try:
            columns = await self._copy_columns(job)
            names = [column.name for column in columns]
            select_list = "ctid, " + ", ".join(safe_identifier(name) for name in names)
            query = self._qualifying_rows(job, select_list, limit)
            audit.add(query)

            ctids: list[Any] = []
            chunk: list[tuple[Any, ...]] = []
            copied = 0
            next_notification = options.notify_after_rows

            async with (
                self.connections.source.acquire_connection() as source_conn,
                self.connections.target.acquire_connection() as target_conn,
            ):
                # Inner (target) commits first; an error anywhere rolls back both
                async with source_conn.transaction(), target_conn.transaction():
                    async for record in source_conn.cursor(query, prefetch=options.cursor_prefetch):
                        ctids.append(record["ctid"])
                        chunk.append(tuple(record[name] for name in names))
                        if len(chunk) < options.copy_batch_size:
                            continue
                        copied += await self._copy_chunk(target_conn, job, names, chunk)
                        chunk = []
                        next_notification = self._maybe_notify(job, copied, next_notification)

                    if chunk:
                        copied += await self._copy_chunk(target_conn, job, names, chunk)
                        next_notification = self._maybe_notify(job, copied, next_notification)

                    if copied:
                        audit.add(
                            f"COPY {qualified_name(job.target_schema, job.target_table)} FROM STDIN -- {copied} rows"
                        )

                    if copied and job.delete_source_rows:
                        delete = self._delete_rows(job)
                        audit.add(delete)
                        deleted = _deleted_count(await source_conn.execute(delete, ctids))
                        if deleted != copied:
                            raise ExecutionError(
                                f"Deleted {deleted} source rows but copied {copied}; batch rolled back",
                                context={"job": job.name},
                            )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._failure(job, e, started, audit)

        duration = time.monotonic() - started
        self.logger.info("Streaming batch finished", job=job.name, rows=copied, duration_seconds=round(duration, 3))
        return BatchResult(
            success=True,
            rows_moved=copied,
            duration_seconds=duration,
            audit=audit.text(),
            throughput_rows_per_second=copied / duration if duration > 0 else None,
        )

    @staticmethod
    async def _copy_chunk(
        target_conn: Any, job: JobSettings, names: list[str], chunk: list[tuple[Any, ...]]
    ) -> int:
        await target_conn.copy_records_to_table(
            job.target_table,
            records=chunk,
            columns=names,
            schema_name=job.target_schema,
        )
        return len(chunk)

    def _maybe_notify(self, job: JobSettings, copied: int, next_notification: int) -> int:
        """Report progress each time another ``notify_after_rows`` rows were copied."""
        if copied < next_notification:
            return next_notification
        self.logger.debug("Bulk copy progress", job=job.name, rows=copied)
        if self.on_progress:
            self.on_progress(copied)
        step = self.config.bulk_copy.notify_after_rows
        while next_notification <= copied:
            next_notification += step
        return next_notification

    async def file_bulk_load(self, job: JobSettings, limit: int) -> BatchResult:
        """Export qualifying rows to a file with psql, load the file, then delete the rows.

        The selected rows stay locked by the source transaction while psql
        exports and loads them, so the delete removes exactly what was exported.
        Skipped rows are only tolerated when source rows are kept.
        """
        started = time.monotonic()
        audit = _Audit()
        file_config = self.config.file_bulk_load
        data_file = self.loader.new_data_file(job.source_table)
        try:
            columns = await self._copy_columns(job)
            column_list = ", ".join(safe_identifier(column.name) for column in columns)
            tolerate_errors = not job.delete_source_rows and await self._supports_on_error()

            async with self.connections.source.transaction() as source_conn:
                select = self._qualifying_rows(job, "ctid", limit)
                audit.add(select)
                ctids = [row["ctid"] for row in await source_conn.fetch(select)]
                if not ctids:
                    return BatchResult(
                        success=True,
                        duration_seconds=time.monotonic() - started,
                        audit=audit.text(),
                    )

                source_table = qualified_name(job.source_schema, job.source_table)
                target_table = qualified_name(job.target_schema, job.target_table)
                path = str(data_file).replace("'", "''")
                export = (
                    f"\\copy (SELECT {column_list} FROM {source_table} "
                    f"WHERE ctid = ANY({_tid_array_literal(ctids)})) "
                    f"TO '{path}' WITH {self.loader.copy_options()}"
                )
                load = (
                    f"\\copy {target_table} ({column_list}) FROM '{path}' "
                    f"WITH {self.loader.copy_options(tolerate_errors)}"
                )
                audit.add(f"\\copy (SELECT ... {len(ctids)} locked rows) TO '{path}' WITH {self.loader.copy_options()}")

                exported = await self.loader.run_script(self.connections.source.config, export, "export")
                if exported.rows != len(ctids):
                    raise ExecutionError(
                        f"Exported {exported.rows} rows but selected {len(ctids)}",
                        context={"job": job.name},
                    )

                audit.add(load)
                loaded = await self.loader.run_script(self.connections.target.config, load, "load")
                if loaded.skipped_rows > file_config.max_errors:
                    raise ExecutionError(
                        f"{loaded.skipped_rows} rows were rejected by the load, "
                        f"more than the {file_config.max_errors} tolerated",
                        context={"job": job.name},
                    )
                rows_moved = loaded.rows

                if job.delete_source_rows:
                    if loaded.rows != exported.rows:
                        raise ExecutionError(
                            f"Loaded {loaded.rows} rows but exported {exported.rows}; source rows kept",
                            context={"job": job.name},
                        )
                    delete = self._delete_rows(job)
                    audit.add(delete)
                    deleted = _deleted_count(await source_conn.execute(delete, ctids))
                    if deleted != exported.rows:
                        raise ExecutionError(
                            f"Deleted {deleted} source rows but exported {exported.rows}; delete rolled back",
                            context={"job": job.name},
                        )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._failure(job, e, started, audit)
        finally:
            self.loader.cleanup(data_file)

        duration = time.monotonic() - started
        throughput = rows_moved / duration if duration > 0 else None
        self.logger.info(
            "File bulk load finished",
            job=job.name,
            rows=rows_moved,
            duration_seconds=round(duration, 3),
            rows_per_second=round(throughput, 1) if throughput else None,
        )
        return BatchResult(
            success=True,
            rows_moved=rows_moved,
            duration_seconds=duration,
            audit=audit.text(),
            throughput_rows_per_second=throughput,
        )

    async def _supports_on_error(self) -> bool:
        if self.config.file_bulk_load.native_format or self.config.file_bulk_load.max_errors == 0:
            return False
        # COPY ... ON_ERROR arrived in PostgreSQL 17
        return await self.connections.target.get_server_version() >= 170000

    async def resolve_partition(self, job: JobSettings, boundary: Optional[str] = None) -> Optional[PartitionDetail]:
        """Pick the partition a switch should move.

        With an explicit boundary the boundary must match exactly one partition.
        Otherwise the oldest non-empty range partition whose upper boundary
        satisfies the job's filter predicate is chosen.

        Returns:
            The partition, or None when nothing qualifies

        Raises:
            ExecutionError: If the table is not switchable or the boundary is ambiguous
        """
        info = await self.source.get_partition_info(job.source_schema, job.source_table)
        if info is None:
            raise ExecutionError(
                f"Source table {job.source_schema}.{job.source_table} is not partitioned",
                context={"job": job.name},
            )

        if boundary is not None:
            matches = await self.source.find_partition_for_boundary(job.source_schema, job.source_table, boundary)
            if len(matches) != 1:
                raise ExecutionError(
                    f"Boundary {boundary!r} resolves to {len(matches)} partitions, expected exactly one",
                    context={"job": job.name},
                )
            return matches[0]

        if info.partition_scheme != "range" or info.column_name != job.filter_column:
            raise ExecutionError(
                "Automatic partition selection needs a range partition key on the filter column",
                context={"job": job.name, "partition_key": info.partition_function},
            )

        for detail in await self.source.get_partition_details(job.source_schema, job.source_table):
            if detail.is_default or detail.boundary_value is None or detail.boundary_value.upper() == "MAXVALUE":
                continue
            qualifies = await self.connections.source.fetchval(
                f"SELECT CAST($1 AS {info.column_type}) {job.filter_predicate}",
                detail.boundary_value,
            )
            if not qualifies:
                # Later partitions have larger boundaries
                break
            if await self.source.has_rows(detail.schema_name, detail.table_name):
                return detail
        return None

    async def partition_switch(self, job: JobSettings, boundary: Optional[str] = None) -> BatchResult:
        """Hand one partition over to the target without copying rows.

        A partitioned target receives the partition through ATTACH PARTITION;
        a plain target is replaced by the detached partition. The whole hand-off
        runs in one transaction, so it either happens completely or not at all.
        """
        started = time.monotonic()
        audit = _Audit()
        try:
            partition = await self.resolve_partition(job, boundary)
            if partition is None:
                return BatchResult(success=True, duration_seconds=time.monotonic() - started)

            verdict = await self.validator.validate(self.plan_for(job, partition))
            if not verdict.can_proceed:
                raise SafetyViolationError(
                    f"Partition switch blocked: {verdict.summary()}",
                    codes=verdict.blocking_codes,
                    context={"job": job.name, "partition": partition.table_name},
                )

            source_table = qualified_name(job.source_schema, job.source_table)
            target_table = qualified_name(job.target_schema, job.target_table)
            partition_table = qualified_name(partition.schema_name, partition.table_name)
            target_partitioned = await self.target.is_partitioned(job.target_schema, job.target_table)

            async with self.connections.source.transaction() as conn:
                statements = [f"LOCK TABLE {target_table} IN ACCESS EXCLUSIVE MODE"]
                await conn.execute(statements[0])
                audit.add(statements[0])

                if await conn.fetchval(f"SELECT EXISTS (SELECT 1 FROM {target_table})"):
                    raise SafetyViolationError(
                        "Target table received rows after validation",
                        codes=["TargetTableNotEmpty"],
                        context={"job": job.name},
                    )

                rows = int(await conn.fetchval(f"SELECT count(*) FROM {partition_table}"))

                statements = [f"ALTER TABLE {source_table} DETACH PARTITION {partition_table}"]
                moved_table = partition_table
                if partition.schema_name != job.target_schema:
                    statements.append(f"ALTER TABLE {partition_table} SET SCHEMA {safe_identifier(job.target_schema)}")
                    moved_table = qualified_name(job.target_schema, partition.table_name)

                if target_partitioned:
                    statements.append(
                        f"ALTER TABLE {target_table} ATTACH PARTITION {moved_table} {partition.bound_expression}"
                    )
                else:
                    statements.append(f"DROP TABLE {target_table}")
                    statements.append(f"ALTER TABLE {moved_table} RENAME TO {safe_identifier(job.target_table)}")

                for statement in statements:
                    await conn.execute(statement)
                    audit.add(statement)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._failure(job, e, started, audit)

        duration = time.monotonic() - started
        self.logger.info(
            "Partition switched",
            job=job.name,
            partition=partition.table_name,
            boundary=partition.boundary_value,
            rows=rows,
            duration_seconds=round(duration, 3),
        )
        return BatchResult(success=True, rows_moved=rows, duration_seconds=duration, audit=audit.text())
