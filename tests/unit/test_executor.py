"""Unit tests for the move strategies."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from archival.bulk_load import PsqlResult
from archival.config import BulkCopyConfig, ExecutionConfig
from archival.exceptions import ExecutionError
from archival.executor import ArchiveExecutor
from archival.models import ColumnDefinition, MoveStrategy, PartitionDetail, PartitionInfo
from archival.validator import SafetyCode, SafetyVerdict
from factories import FakeTransaction, make_job

COLUMNS = [
    ColumnDefinition(name="id", ordinal_position=1, data_type="bigint", is_nullable=False),
    ColumnDefinition(name="created_at", ordinal_position=2, data_type="timestamp", is_nullable=False),
]

RANGE_INFO = PartitionInfo(
    partition_function="RANGE (created_at)",
    partition_scheme="range",
    column_name="created_at",
    column_type="timestamp",
    range_direction="RIGHT",
    partition_count=3,
)


def _partition(name: str, lower: str, upper: str) -> PartitionDetail:
    return PartitionDetail(
        partition_number=1,
        schema_name="public",
        table_name=name,
        bound_expression=f"FOR VALUES FROM ('{lower}') TO ('{upper}')",
        lower_boundary=lower,
        boundary_value=upper,
        row_count=100,
        size_bytes=8192,
        tablespace="pg_default",
    )


@asynccontextmanager
async def _yielding(value: Any):
    yield value


async def _records(rows: list[dict]):
    for row in rows:
        yield row


def _connection(log: list[str], name: str) -> MagicMock:
    conn = MagicMock()
    conn.transaction = MagicMock(side_effect=lambda *a, **k: FakeTransaction(log, name))
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock()
    conn.copy_records_to_table = AsyncMock()
    return conn


def _executor(config: ExecutionConfig | None = None, progress: Any = None) -> ArchiveExecutor:
    connections = MagicMock()
    connections.shares_database = True
    connections.source.fetchval = AsyncMock()
    executor = ArchiveExecutor(connections, config, loader=MagicMock(), on_progress=progress)
    executor.source = MagicMock()
    executor.source.get_columns = AsyncMock(return_value=list(COLUMNS))
    executor.target = MagicMock()
    executor.validator = MagicMock()
    executor.validator.check_append = AsyncMock(return_value=SafetyVerdict())
    executor.validator.validate = AsyncMock(return_value=SafetyVerdict())
    executor.replicator = MagicMock()
    return executor


def _streaming_setup(executor: ArchiveExecutor, rows: list[dict], log: list[str]) -> tuple[MagicMock, MagicMock]:
    source_conn = _connection(log, "source")
    source_conn.cursor = MagicMock(side_effect=lambda *a, **k: _records(rows))
    target_conn = _connection(log, "target")
    executor.connections.source.acquire_connection = MagicMock(side_effect=lambda: _yielding(source_conn))
    executor.connections.target.acquire_connection = MagicMock(side_effect=lambda: _yielding(target_conn))
    return source_conn, target_conn


ROWS = [
    {"ctid": (0, 1), "id": 1, "created_at": "2024-01-01"},
    {"ctid": (0, 2), "id": 2, "created_at": "2024-01-02"},
    {"ctid": (0, 3), "id": 3, "created_at": "2024-01-03"},
]


@pytest.mark.asyncio
async def test_preflight_switch_is_checked_per_partition() -> None:
    """Test switch jobs pass preflight without catalog access."""
    executor = _executor()
    executor.target.table_exists = AsyncMock()

    verdict = await executor.preflight(make_job(strategy=MoveStrategy.PARTITION_SWITCH))

    assert verdict.can_proceed
    executor.target.table_exists.assert_not_called()


@pytest.mark.asyncio
async def test_preflight_creates_missing_target() -> None:
    """Test a missing copy target is created from the source structure."""
    executor = _executor()
    executor.target.table_exists = AsyncMock(return_value=False)
    executor.replicator.create_target_table = AsyncMock(return_value=MagicMock(ok=True))

    verdict = await executor.preflight(make_job())

    assert verdict.can_proceed
    executor.replicator.create_target_table.assert_awaited_once()
    executor.validator.check_append.assert_awaited_once()


@pytest.mark.asyncio
async def test_preflight_blocks_when_target_cannot_be_created() -> None:
    executor = _executor()
    executor.target.table_exists = AsyncMock(return_value=False)
    executor.replicator.create_target_table = AsyncMock(
        return_value=MagicMock(ok=False, reason="permission denied for schema archive")
    )

    verdict = await executor.preflight(make_job())

    assert verdict.blocking_codes == [str(SafetyCode.MISSING_TARGET_TABLE)]
    assert "permission denied" in verdict.summary()
    executor.validator.check_append.assert_not_called()


@pytest.mark.asyncio
async def test_preflight_without_target_creation() -> None:
    """Test a missing target is left to the validator when creation is off."""
    executor = _executor(ExecutionConfig(create_missing_target=False))
    executor.target.table_exists = AsyncMock(return_value=False)
    executor.replicator.create_target_table = AsyncMock()

    await executor.preflight(make_job())

    executor.replicator.create_target_table.assert_not_called()
    executor.validator.check_append.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "strategy, method",
    [
        (MoveStrategy.STREAMING_BULK_COPY, "streaming_bulk_copy"),
        (MoveStrategy.FILE_BULK_LOAD, "file_bulk_load"),
        (MoveStrategy.PARTITION_SWITCH, "partition_switch"),
    ],
)
async def test_run_batch_dispatch(strategy: MoveStrategy, method: str) -> None:
    """Test each strategy is routed to its implementation."""
    executor = _executor()
    handler = AsyncMock(return_value="result")
    setattr(executor, method, handler)
    job = make_job(strategy=strategy, batch_size=500)

    assert await executor.run_batch(job) == "result"
    expected = (job, None) if strategy == MoveStrategy.PARTITION_SWITCH else (job, 500)
    handler.assert_awaited_once_with(*expected)


@pytest.mark.asyncio
async def test_streaming_bulk_copy_moves_rows() -> None:
    """Test rows are copied in chunks and deleted by locator."""
    progress: list[int] = []
    config = ExecutionConfig(bulk_copy=BulkCopyConfig(copy_batch_size=2, notify_after_rows=2))
    executor = _executor(config, progress.append)
    log: list[str] = []
    source_conn, target_conn = _streaming_setup(executor, ROWS, log)
    source_conn.execute.return_value = "DELETE 3"

    result = await executor.streaming_bulk_copy(make_job(), 1000)

    assert result.success
    assert result.rows_moved == 3
    assert target_conn.copy_records_to_table.await_count == 2
    first = target_conn.copy_records_to_table.call_args_list[0]
    assert first.args == ("events_archive",)
    assert first.kwargs["records"] == [(1, "2024-01-01"), (2, "2024-01-02")]
    assert first.kwargs["schema_name"] == "archive"
    assert source_conn.execute.call_args.args[1] == [(0, 1), (0, 2), (0, 3)]
    assert progress == [2]
    assert log == ["source:begin", "target:begin", "target:commit", "source:commit"]
    query = source_conn.cursor.call_args.args[0]
    assert "FOR UPDATE SKIP LOCKED" in query
    assert "LIMIT 1000" in query
    assert "DELETE FROM" in result.audit


@pytest.mark.asyncio
async def test_streaming_bulk_copy_keeps_source_rows() -> None:
    """Test copy-only jobs never delete."""
    executor = _executor()
    source_conn, _ = _streaming_setup(executor, ROWS, [])

    result = await executor.streaming_bulk_copy(make_job(delete_source_rows=False), 1000)

    assert result.rows_moved == 3
    source_conn.execute.assert_not_called()


@pytest.mark.asyncio
async def test_streaming_bulk_copy_delete_mismatch_rolls_back() -> None:
    """Test a delete count that differs from the copy count fails the batch."""
    executor = _executor()
    log: list[str] = []
    source_conn, _ = _streaming_setup(executor, ROWS, log)
    source_conn.execute.return_value = "DELETE 2"

    result = await executor.streaming_bulk_copy(make_job(), 1000)

    assert not result.success
    assert "Deleted 2 source rows but copied 3" in result.error
    assert log == ["source:begin", "target:begin", "target:rollback", "source:rollback"]


@pytest.mark.asyncio
async def test_streaming_bulk_copy_no_qualifying_rows() -> None:
    executor = _executor()
    source_conn, target_conn = _streaming_setup(executor, [], [])

    result = await executor.streaming_bulk_copy(make_job(), 1000)

    assert result.success
    assert result.rows_moved == 0
    target_conn.copy_records_to_table.assert_not_called()
    source_conn.execute.assert_not_called()


def _file_setup(executor: ArchiveExecutor, tmp_path: Path, exported: int, loaded: int) -> MagicMock:
    conn = _connection([], "source")
    conn.fetch.return_value = [{"ctid": row["ctid"]} for row in ROWS]
    conn.execute.return_value = "DELETE 3"
    executor.connections.source.transaction = MagicMock(side_effect=lambda *a, **k: _yielding(conn))
    executor.loader.new_data_file.return_value = tmp_path / "events.bin"
    executor.loader.copy_options.return_value = "(FORMAT binary)"
    executor.loader.run_script = AsyncMock(
        side_effect=[PsqlResult(exported, 0, 0.1, ""), PsqlResult(loaded, 0, 0.1, "")]
    )
    return conn


@pytest.mark.asyncio
async def test_file_bulk_load_moves_rows(tmp_path: Path) -> None:
    """Test export, load and delete of the locked rows."""
    executor = _executor()
    conn = _file_setup(executor, tmp_path, 3, 3)

    result = await executor.file_bulk_load(make_job(), 1000)

    assert result.success
    assert result.rows_moved == 3
    export_script = executor.loader.run_script.call_args_list[0].args[1]
    assert export_script.startswith("\\copy (SELECT")
    assert '"(0,1)"' in export_script
    assert executor.loader.run_script.call_args_list[1].args[2] == "load"
    conn.execute.assert_awaited_once()
    executor.loader.cleanup.assert_called_once_with(tmp_path / "events.bin")


@pytest.mark.asyncio
async def test_file_bulk_load_short_load_keeps_source(tmp_path: Path) -> None:
    """Test source rows stay when fewer rows were loaded than exported."""
    executor = _executor()
    conn = _file_setup(executor, tmp_path, 3, 2)

    result = await executor.file_bulk_load(make_job(), 1000)

    assert not result.success
    assert "Loaded 2 rows but exported 3" in result.error
    conn.execute.assert_not_called()
    executor.loader.cleanup.assert_called_once()


@pytest.mark.asyncio
async def test_resolve_partition_requires_partitioned_source() -> None:
    executor = _executor()
    executor.source.get_partition_info = AsyncMock(return_value=None)

    with pytest.raises(ExecutionError, match="not partitioned"):
        await executor.resolve_partition(make_job(strategy=MoveStrategy.PARTITION_SWITCH))


@pytest.mark.asyncio
async def test_resolve_partition_ambiguous_boundary() -> None:
    """Test an explicit boundary must match exactly one partition."""
    executor = _executor()
    executor.source.get_partition_info = AsyncMock(return_value=RANGE_INFO)
    executor.source.find_partition_for_boundary = AsyncMock(return_value=[])

    with pytest.raises(ExecutionError, match="resolves to 0 partitions"):
        await executor.resolve_partition(make_job(strategy=MoveStrategy.PARTITION_SWITCH), "2024-02-01")


@pytest.mark.asyncio
async def test_resolve_partition_picks_oldest_non_empty() -> None:
    """Test the oldest qualifying partition holding rows is chosen."""
    executor = _executor()
    partitions = [
        _partition("events_2024_01", "2024-01-01", "2024-02-01"),
        _partition("events_2024_02", "2024-02-01", "2024-03-01"),
        _partition("events_2024_03", "2024-03-01", "2024-04-01"),
    ]
    executor.source.get_partition_info = AsyncMock(return_value=RANGE_INFO)
    executor.source.get_partition_details = AsyncMock(return_value=partitions)
    executor.source.has_rows = AsyncMock(side_effect=[False, True])
    executor.connections.source.fetchval = AsyncMock(return_value=True)

    chosen = await executor.resolve_partition(make_job(strategy=MoveStrategy.PARTITION_SWITCH))

    assert chosen is partitions[1]
    query = executor.connections.source.fetchval.call_args.args[0]
    assert query.startswith("SELECT CAST($1 AS timestamp) < now()")


@pytest.mark.asyncio
async def test_partition_switch_nothing_qualifies() -> None:
    """Test a switch with no qualifying partition moves nothing."""
    executor = _executor()
    executor.resolve_partition = AsyncMock(return_value=None)

    result = await executor.partition_switch(make_job(strategy=MoveStrategy.PARTITION_SWITCH))

    assert result.success
    assert result.rows_moved == 0
    executor.validator.validate.assert_not_called()


@pytest.mark.asyncio
async def test_partition_switch_replaces_plain_target() -> None:
    """Test the statement sequence for a plain target in another schema."""
    executor = _executor()
    executor.resolve_partition = AsyncMock(return_value=_partition("events_2024_01", "2024-01-01", "2024-02-01"))
    executor.target.is_partitioned = AsyncMock(return_value=False)
    conn = _connection([], "source")
    conn.fetchval = AsyncMock(side_effect=[False, 1000])
    executor.connections.source.transaction = MagicMock(side_effect=lambda *a, **k: _yielding(conn))

    result = await executor.partition_switch(make_job(strategy=MoveStrategy.PARTITION_SWITCH))

    assert result.success
    assert result.rows_moved == 1000
    statements = [c.args[0] for c in conn.execute.call_args_list]
    assert statements == [
        'LOCK TABLE "archive"."events_archive" IN ACCESS EXCLUSIVE MODE',
        'ALTER TABLE "public"."events" DETACH PARTITION "public"."events_2024_01"',
        'ALTER TABLE "public"."events_2024_01" SET SCHEMA "archive"',
        'DROP TABLE "archive"."events_archive"',
        'ALTER TABLE "archive"."events_2024_01" RENAME TO "events_archive"',
    ]


@pytest.mark.asyncio
async def test_partition_switch_attaches_to_partitioned_target() -> None:
    executor = _executor()
    partition = _partition("events_2024_01", "2024-01-01", "2024-02-01")
    executor.resolve_partition = AsyncMock(return_value=partition)
    executor.target.is_partitioned = AsyncMock(return_value=True)
    conn = _connection([], "source")
    conn.fetchval = AsyncMock(side_effect=[False, 10])
    executor.connections.source.transaction = MagicMock(side_effect=lambda *a, **k: _yielding(conn))

    result = await executor.partition_switch(make_job(strategy=MoveStrategy.PARTITION_SWITCH))

    assert result.success
    last = conn.execute.call_args_list[-1].args[0]
    assert last == (
        'ALTER TABLE "archive"."events_archive" ATTACH PARTITION "archive"."events_2024_01" '
        f"{partition.bound_expression}"
    )


@pytest.mark.asyncio
async def test_partition_switch_blocked_by_validation() -> None:
    """Test a blocking verdict fails the batch before any statement runs."""
    executor = _executor()
    executor.resolve_partition = AsyncMock(return_value=_partition("events_2024_01", "2024-01-01", "2024-02-01"))
    verdict = SafetyVerdict()
    verdict.block(SafetyCode.TARGET_TABLE_NOT_EMPTY, "Target table holds rows")
    executor.validator.validate = AsyncMock(return_value=verdict)
    executor.connections.source.transaction = MagicMock()

    result = await executor.partition_switch(make_job(strategy=MoveStrategy.PARTITION_SWITCH))

    assert not result.success
    assert result.error.startswith("Partition switch blocked: TargetTableNotEmpty")
    executor.connections.source.transaction.assert_not_called()
