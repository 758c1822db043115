"""Unit tests for schema introspection."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from archival.config import IntrospectionConfig
from archival.exceptions import DatabaseError
from archival.introspector import SchemaIntrospector, parse_partition_bound
from archival.models import StatisticsMethod


@pytest.fixture
def db() -> MagicMock:
    manager = MagicMock()
    manager.fetch = AsyncMock(return_value=[])
    manager.fetchrow = AsyncMock(return_value=None)
    manager.fetchval = AsyncMock(return_value=None)
    return manager


def _introspector(db: MagicMock, **config: int) -> SchemaIntrospector:
    return SchemaIntrospector(db, IntrospectionConfig(**config) if config else None)


def _partition_row(name: str, bound: str, rows: int = 0) -> dict:
    return {
        "schema_name": "public",
        "table_name": name,
        "bound_expression": bound,
        "row_count": rows,
        "size_bytes": 8192,
        "tablespace": "pg_default",
    }


@pytest.mark.parametrize(
    "bound, expected",
    [
        (
            "FOR VALUES FROM ('2024-01-01 00:00:00') TO ('2024-02-01 00:00:00')",
            ("2024-01-01 00:00:00", "2024-02-01 00:00:00"),
        ),
        ("FOR VALUES FROM (MINVALUE) TO (100)", ("MINVALUE", "100")),
        ("FOR VALUES IN ('eu', 'us')", (None, "eu, us")),
        ("FOR VALUES WITH (modulus 4, remainder 1)", (None, "1")),
        ("DEFAULT", (None, None)),
        ("FOR VALUES FROM ('O''Brien') TO ('P')", ("O'Brien", "P")),
    ],
)
def test_parse_partition_bound(bound: str, expected: tuple) -> None:
    """Test partition bound parsing."""
    assert parse_partition_bound(bound) == expected


@pytest.mark.asyncio
async def test_get_partition_info_not_partitioned(db: MagicMock) -> None:
    """Test plain tables report no partition info."""
    assert await _introspector(db).get_partition_info("public", "events") is None


@pytest.mark.asyncio
async def test_get_partition_info_range(db: MagicMock) -> None:
    """Test range partitioning facts."""
    db.fetchrow.return_value = {
        "partition_function": "RANGE (created_at)",
        "strategy": "r",
        "column_name": "created_at",
        "column_type": "timestamp with time zone",
        "partition_count": 13,
    }
    info = await _introspector(db).get_partition_info("public", "events")
    assert info is not None
    assert info.partition_scheme == "range"
    assert info.range_direction == "RIGHT"
    assert info.column_name == "created_at"
    assert info.partition_count == 13


@pytest.mark.asyncio
async def test_get_partition_details_sorted_default_last(db: MagicMock) -> None:
    """Test partitions are ordered by boundary with the default partition last."""
    db.fetch.return_value = [
        _partition_row("events_default", "DEFAULT"),
        _partition_row("events_2024_02", "FOR VALUES FROM ('2024-02-01') TO ('2024-03-01')", 20),
        _partition_row("events_2024_01", "FOR VALUES FROM ('2024-01-01') TO ('2024-02-01')", 10),
    ]

    details = await _introspector(db).get_partition_details("public", "events")

    assert [d.table_name for d in details] == ["events_2024_01", "events_2024_02", "events_default"]
    assert [d.partition_number for d in details] == [1, 2, 3]
    assert details[0].boundary_value == "2024-02-01"
    assert details[0].lower_boundary == "2024-01-01"
    assert details[2].is_default


@pytest.mark.asyncio
async def test_get_partition_details_without_size_access(db: MagicMock) -> None:
    """Test the catalog-only fallback when sizes cannot be read."""
    row = _partition_row("events_1", "FOR VALUES FROM (0) TO (100)")
    row["size_bytes"] = 0
    db.fetch.side_effect = [DatabaseError("permission denied"), [row]]

    details = await _introspector(db).get_partition_details("public", "events")

    assert len(details) == 1
    assert details[0].size_bytes == 0
    assert "0::bigint" in db.fetch.call_args_list[1].args[0]


@pytest.mark.asyncio
async def test_find_partition_for_boundary(db: MagicMock) -> None:
    """Test boundary lookup."""
    db.fetch.return_value = [
        _partition_row("p1", "FOR VALUES FROM (0) TO (100)"),
        _partition_row("p2", "FOR VALUES FROM (100) TO (200)"),
    ]
    matches = await _introspector(db).find_partition_for_boundary("public", "events", "200")
    assert [m.table_name for m in matches] == ["p2"]


@pytest.mark.asyncio
async def test_get_columns(db: MagicMock) -> None:
    """Test column rows are converted to definitions."""
    db.fetch.return_value = [
        {
            "column_name": "id",
            "ordinal_position": 1,
            "data_type": "bigint",
            "udt_name": "int8",
            "is_nullable": False,
            "character_maximum_length": None,
            "numeric_precision": 64,
            "numeric_scale": 0,
            "datetime_precision": None,
            "column_default": None,
            "is_identity": True,
            "identity_generation": "ALWAYS",
            "identity_start": "1",
            "identity_increment": "1",
            "is_primary_key": True,
        },
        {
            "column_name": "payload",
            "ordinal_position": 2,
            "data_type": "character varying",
            "udt_name": "varchar",
            "is_nullable": True,
            "character_maximum_length": 200,
            "numeric_precision": None,
            "numeric_scale": None,
            "datetime_precision": None,
            "column_default": None,
            "is_identity": False,
            "identity_generation": None,
            "identity_start": None,
            "identity_increment": None,
            "is_primary_key": False,
        },
    ]

    columns = await _introspector(db).get_columns("public", "events")

    assert columns[0].is_identity and columns[0].identity_seed == 1
    assert columns[0].is_primary_key
    assert columns[1].max_length == 200
    assert columns[1].identity_generation is None


@pytest.mark.asyncio
async def test_get_indexes(db: MagicMock) -> None:
    """Test index rows are converted to definitions."""
    db.fetch.return_value = [
        {
            "index_name": "events_pkey",
            "is_unique": True,
            "is_primary": True,
            "is_inherited": False,
            "columns": ["id", "created_at"],
        }
    ]
    indexes = await _introspector(db).get_indexes("public", "events")
    assert indexes[0].columns == ("id", "created_at")
    assert indexes[0].is_primary


@pytest.mark.asyncio
async def test_has_rows_quotes_table(db: MagicMock) -> None:
    """Test emptiness check."""
    db.fetchval.return_value = True
    assert await _introspector(db).has_rows("archive", "events") is True
    assert '"archive"."events"' in db.fetchval.call_args.args[0]


@pytest.mark.asyncio
async def test_column_statistics_exact(db: MagicMock) -> None:
    """Test small tables get exact statistics."""
    db.fetchval.return_value = 500
    db.fetchrow.return_value = {"min_value": 1, "max_value": 900, "total_rows": 510, "distinct_rows": 505}

    stats = await _introspector(db).get_column_statistics("public", "events", "id")

    assert stats.method == StatisticsMethod.EXACT
    assert stats.total_rows == 510
    assert stats.distinct_rows == 505
    assert stats.is_approximate is False


@pytest.mark.asyncio
async def test_column_statistics_probe(db: MagicMock) -> None:
    """Test mid-size tables get an index-ordered probe under a timeout."""
    db.fetchval.side_effect = [2_000_000, 1, 99]

    stats = await _introspector(db).get_column_statistics("public", "events", "id")

    assert stats.method == StatisticsMethod.PROBE
    assert (stats.min_value, stats.max_value) == (1, 99)
    assert stats.total_rows == 2_000_000
    assert db.fetchval.call_args.kwargs["timeout"] == 5


@pytest.mark.asyncio
async def test_column_statistics_probe_timeout_falls_back_to_sample(db: MagicMock) -> None:
    """Test a failed probe falls through to sampling."""
    db.fetchval.side_effect = [2_000_000, DatabaseError("canceling statement due to statement timeout")]
    db.fetchrow.return_value = {"min_value": 3, "max_value": 97}

    stats = await _introspector(db).get_column_statistics("public", "events", "id")

    assert stats.method == StatisticsMethod.SAMPLE
    assert stats.is_approximate is True
    assert "TABLESAMPLE SYSTEM" in db.fetchrow.call_args.args[0]


@pytest.mark.asyncio
async def test_column_statistics_large_table_only_samples(db: MagicMock) -> None:
    """Test very large tables skip exact and probe tiers."""
    db.fetchval.return_value = 50_000_000
    db.fetchrow.return_value = {"min_value": 1, "max_value": 2}

    stats = await _introspector(db).get_column_statistics("public", "events", "id")

    assert stats.method == StatisticsMethod.SAMPLE
    assert db.fetchval.await_count == 1


@pytest.mark.asyncio
async def test_column_statistics_unavailable(db: MagicMock) -> None:
    """Test sampling failure yields an unavailable result rather than an error."""
    db.fetchval.return_value = 50_000_000
    db.fetchrow.side_effect = DatabaseError("timeout")

    stats = await _introspector(db).get_column_statistics("public", "events", "id")

    assert stats.method == StatisticsMethod.UNAVAILABLE
    assert stats.is_available is False
    assert stats.total_rows == 50_000_000
