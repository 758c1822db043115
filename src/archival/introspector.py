"""Read-only catalog queries: partitioning, columns, indexes and column statistics."""

import re
from typing import Any, Optional

import structlog

from archival.config import IntrospectionConfig
from archival.database import DatabaseManager
from archival.exceptions import DatabaseError
from archival.models import (
    ColumnDefinition,
    ColumnStatistics,
    ForeignKeyReference,
    IndexDefinition,
    PartitionDetail,
    PartitionInfo,
    StatisticsMethod,
)
from utils import qualified_name, safe_identifier
from utils.logging import get_logger

# The table and, recursively, every partition below it.
_TABLE_TREE_CTE = """
    WITH RECURSIVE tree AS (
        SELECT c.oid
        FROM pg_class c
        JOIN pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = $1 AND c.relname = $2
        UNION ALL
        SELECT i.inhrelid
        FROM pg_inherits i
        JOIN tree t ON i.inhparent = t.oid
    )
"""

_PARTITION_DETAILS_QUERY = """
    SELECT
        cn.nspname AS schema_name,
        child.relname AS table_name,
        pg_get_expr(child.relpartbound, child.oid) AS bound_expression,
        greatest(child.reltuples, 0)::bigint AS row_count,
        {size_expression} AS size_bytes,
        coalesce(ts.spcname, 'pg_default') AS tablespace
    FROM pg_inherits i
    JOIN pg_class parent ON parent.oid = i.inhparent
    JOIN pg_namespace pn ON pn.oid = parent.relnamespace
    JOIN pg_class child ON child.oid = i.inhrelid
    JOIN pg_namespace cn ON cn.oid = child.relnamespace
    LEFT JOIN pg_tablespace ts ON ts.oid = child.reltablespace
    WHERE pn.nspname = $1 AND parent.relname = $2
"""

_RANGE_BOUND = re.compile(r"^FOR VALUES FROM \((?P<lower>.*)\) TO \((?P<upper>.*)\)$", re.DOTALL)
_LIST_BOUND = re.compile(r"^FOR VALUES IN \((?P<values>.*)\)$", re.DOTALL)
_HASH_BOUND = re.compile(r"^FOR VALUES WITH \(modulus (?P<modulus>\d+), remainder (?P<remainder>\d+)\)$")

_STRATEGIES = {"r": "range", "l": "list", "h": "hash"}


def _unquote(literal: str) -> str:
    """Turn a bound literal such as ``'2024-01-01 00:00:00'`` into its text."""
    literal = literal.strip()
    if len(literal) >= 2 and literal[0] == "'" and literal[-1] == "'":
        return literal[1:-1].replace("''", "'")
    return literal


def parse_partition_bound(bound_expression: str) -> tuple[Optional[str], Optional[str]]:
    """Split a partition bound into (lower boundary, boundary value).

    Range partitions report their ``TO`` value as the boundary (``FROM`` is the
    lower boundary), list partitions their value list, hash partitions their
    remainder and the default partition has no boundary.
    """
    expression = (bound_expression or "").strip()
    match = _RANGE_BOUND.match(expression)
    if match:
        return _unquote(match.group("lower")), _unquote(match.group("upper"))
    match = _LIST_BOUND.match(expression)
    if match:
        return None, ", ".join(_unquote(v) for v in match.group("values").split(","))
    match = _HASH_BOUND.match(expression)
    if match:
        return None, match.group("remainder")
    return None, None


def _boundary_sort_key(value: Optional[str]) -> tuple[int, Any]:
    if value is None or value.upper() == "MINVALUE":
        return (0, 0)
    if value.upper() == "MAXVALUE":
        return (3, 0)
    try:
        return (1, float(value))
    except ValueError:
        # ISO dates and timestamps order correctly as text
        return (2, value)


class SchemaIntrospector:
    """Catalog queries against one PostgreSQL database.

    Every catalog-specific query lives here; callers only see the typed
    records from :mod:`archival.models`.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: Optional[IntrospectionConfig] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize schema introspector.

        Args:
            db_manager: Database to inspect
            config: Statistics thresholds and timeouts
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.config = config or IntrospectionConfig()
        self.logger = logger or get_logger("schema_introspector")

    async def table_exists(self, schema_name: str, table_name: str) -> bool:
        """Check whether a regular or partitioned table exists."""
        query = """
            SELECT EXISTS (
                SELECT 1
                FROM pg_class c
                JOIN pg_namespace n ON n.oid = c.relnamespace
                WHERE n.nspname = $1 AND c.relname = $2 AND c.relkind IN ('r', 'p')
            )
        """
        return bool(await self.db_manager.fetchval(query, schema_name, table_name))

    async def is_partitioned(self, schema_name: str, table_name: str) -> bool:
        """Check whether the table is declaratively partitioned."""
        query = """
            SELECT c.relkind = 'p'
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = $1 AND c.relname = $2
        """
        return bool(await self.db_manager.fetchval(query, schema_name, table_name))

    async def get_partition_info(self, schema_name: str, table_name: str) -> Optional[PartitionInfo]:
        """Get partitioning facts of a table.

        Args:
            schema_name: Schema name
            table_name: Table name

        Returns:
            PartitionInfo, or None when the table is not partitioned
        """
        query = """
            SELECT
                pg_get_partkeydef(c.oid) AS partition_function,
                pt.partstrat AS strategy,
                a.attname AS column_name,
                format_type(a.atttypid, a.atttypmod) AS column_type,
                count(i.inhrelid) AS partition_count
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            JOIN pg_partitioned_table pt ON pt.partrelid = c.oid
            LEFT JOIN pg_attribute a ON a.attrelid = c.oid AND a.attnum = pt.partattrs[0]
            LEFT JOIN pg_inherits i ON i.inhparent = c.oid
            WHERE n.nspname = $1 AND c.relname = $2
            GROUP BY c.oid, pt.partstrat, a.attname, a.atttypid, a.atttypmod
        """
        row = await self.db_manager.fetchrow(query, schema_name, table_name)
        if row is None:
            return None

        strategy = _STRATEGIES.get(row["strategy"], row["strategy"])
        info = PartitionInfo(
            partition_function=row["partition_function"],
            partition_scheme=strategy,
            column_name=row["column_name"] or "",
            column_type=row["column_type"] or "",
            range_direction="RIGHT" if strategy == "range" else None,
            partition_count=int(row["partition_count"]),
        )
        self.logger.debug(
            "Partition info retrieved",
            schema=schema_name,
            table=table_name,
            key=info.partition_function,
            partitions=info.partition_count,
        )
        return info

    async def get_partition_details(self, schema_name: str, table_name: str) -> list[PartitionDetail]:
        """List partitions ordered by boundary (default partition last).

        Sizes need access to the partitions' storage; without it the details
        are still returned with ``size_bytes`` set to 0.
        """
        try:
            rows = await self.db_manager.fetch(
                _PARTITION_DETAILS_QUERY.format(size_expression="pg_total_relation_size(child.oid)"),
                schema_name,
                table_name,
            )
        except DatabaseError as e:
            self.logger.warning(
                "Partition sizes unavailable, falling back to catalog-only details",
                schema=schema_name,
                table=table_name,
                error=str(e),
            )
            rows = await self.db_manager.fetch(
                _PARTITION_DETAILS_QUERY.format(size_expression="0::bigint"),
                schema_name,
                table_name,
            )

        parsed = []
        for row in rows:
            lower, boundary = parse_partition_bound(row["bound_expression"])
            is_default = (row["bound_expression"] or "").strip().upper() == "DEFAULT"
            sort_value = lower if lower is not None else boundary
            parsed.append((is_default, _boundary_sort_key(sort_value), row, lower, boundary))

        parsed.sort(key=lambda item: (item[0], item[1]))

        return [
            PartitionDetail(
                partition_number=number,
                schema_name=row["schema_name"],
                table_name=row["table_name"],
                bound_expression=row["bound_expression"] or "",
                lower_boundary=lower,
                boundary_value=boundary,
                row_count=int(row["row_count"] or 0),
                size_bytes=int(row["size_bytes"] or 0),
                tablespace=row["tablespace"],
            )
            for number, (_, _, row, lower, boundary) in enumerate(parsed, start=1)
        ]

    async def find_partition_for_boundary(
        self, schema_name: str, table_name: str, boundary: str
    ) -> list[PartitionDetail]:
        """Return the partitions whose boundary value equals ``boundary``."""
        details = await self.get_partition_details(schema_name, table_name)
        return [d for d in details if d.boundary_value is not None and d.boundary_value == boundary]

    async def get_columns(self, schema_name: str, table_name: str) -> list[ColumnDefinition]:
        """Get column definitions in ordinal order."""
        query = """
            SELECT
                c.column_name,
                c.ordinal_position,
                c.data_type,
                c.udt_name,
                c.is_nullable = 'YES' AS is_nullable,
                c.character_maximum_length,
                c.numeric_precision,
                c.numeric_scale,
                c.datetime_precision,
                c.column_default,
                c.is_identity = 'YES' AS is_identity,
                c.identity_generation,
                c.identity_start,
                c.identity_increment,
                pk.attname IS NOT NULL AS is_primary_key
            FROM information_schema.columns c
            LEFT JOIN (
                SELECT a.attname
                FROM pg_index ix
                JOIN pg_class t ON t.oid = ix.indrelid
                JOIN pg_namespace ns ON ns.oid = t.relnamespace
                JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
                WHERE ix.indisprimary AND ns.nspname = $1 AND t.relname = $2
            ) pk ON pk.attname = c.column_name
            WHERE c.table_schema = $1 AND c.table_name = $2
            ORDER BY c.ordinal_position
        """
        rows = await self.db_manager.fetch(query, schema_name, table_name)
        columns = [self._to_column(row) for row in rows]
        self.logger.debug("Columns retrieved", schema=schema_name, table=table_name, count=len(columns))
        return columns

    @staticmethod
    def _to_column(row: Any) -> ColumnDefinition:
        def as_int(value: Any) -> Optional[int]:
            return int(value) if value is not None else None

        is_identity = bool(row["is_identity"])
        return ColumnDefinition(
            name=row["column_name"],
            ordinal_position=int(row["ordinal_position"]),
            data_type=row["data_type"],
            udt_name=row["udt_name"],
            is_nullable=bool(row["is_nullable"]),
            max_length=as_int(row["character_maximum_length"]),
            numeric_precision=as_int(row["numeric_precision"]),
            numeric_scale=as_int(row["numeric_scale"]),
            datetime_precision=as_int(row["datetime_precision"]),
            default=row["column_default"],
            is_identity=is_identity,
            identity_generation=row["identity_generation"] if is_identity else None,
            identity_seed=as_int(row["identity_start"]) if is_identity else None,
            identity_increment=as_int(row["identity_increment"]) if is_identity else None,
            is_primary_key=bool(row["is_primary_key"]),
        )

    async def get_primary_key(self, schema_name: str, table_name: str) -> list[str]:
        """Get primary key columns in key order (empty when there is none)."""
        query = """
            SELECT a.attname
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_namespace ns ON ns.oid = t.relnamespace
            CROSS JOIN LATERAL unnest(ix.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord)
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum
            WHERE ix.indisprimary AND ns.nspname = $1 AND t.relname = $2
            ORDER BY k.ord
        """
        rows = await self.db_manager.fetch(query, schema_name, table_name)
        return [row["attname"] for row in rows]

    async def get_indexes(self, schema_name: str, table_name: str) -> list[IndexDefinition]:
        """Get indexes with their key columns.

        ``is_inherited`` marks partition indexes attached to an index of the
        partitioned parent. Expression columns are omitted from ``columns``.
        """
        query = """
            SELECT
                i.relname AS index_name,
                ix.indisunique AS is_unique,
                ix.indisprimary AS is_primary,
                EXISTS (SELECT 1 FROM pg_inherits inh WHERE inh.inhrelid = i.oid) AS is_inherited,
                coalesce(
                    array_agg(a.attname ORDER BY k.ord) FILTER (WHERE a.attname IS NOT NULL),
                    '{}'
                ) AS columns
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_namespace ns ON ns.oid = t.relnamespace
            JOIN pg_class i ON i.oid = ix.indexrelid
            CROSS JOIN LATERAL unnest(ix.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord)
            LEFT JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum
            WHERE ns.nspname = $1 AND t.relname = $2
            GROUP BY i.oid, i.relname, ix.indisunique, ix.indisprimary
            ORDER BY i.relname
        """
        rows = await self.db_manager.fetch(query, schema_name, table_name)
        return [
            IndexDefinition(
                name=row["index_name"],
                columns=tuple(row["columns"]),
                is_unique=bool(row["is_unique"]),
                is_primary=bool(row["is_primary"]),
                is_inherited=bool(row["is_inherited"]),
            )
            for row in rows
        ]

    async def get_referencing_foreign_keys(
        self, schema_name: str, table_name: str
    ) -> list[ForeignKeyReference]:
        """Foreign keys of other tables that reference this table or its partitions."""
        query = (
            _TABLE_TREE_CTE
            + """
            SELECT con.conname, rn.nspname AS referencing_schema, rc.relname AS referencing_table
            FROM pg_constraint con
            JOIN pg_class rc ON rc.oid = con.conrelid
            JOIN pg_namespace rn ON rn.oid = rc.relnamespace
            WHERE con.contype = 'f'
              AND con.conparentid = 0
              AND con.confrelid IN (SELECT oid FROM tree)
              AND con.conrelid NOT IN (SELECT oid FROM tree)
            ORDER BY rn.nspname, rc.relname, con.conname
            """
        )
        rows = await self.db_manager.fetch(query, schema_name, table_name)
        return [
            ForeignKeyReference(
                constraint_name=row["conname"],
                referencing_schema=row["referencing_schema"],
                referencing_table=row["referencing_table"],
            )
            for row in rows
        ]

    async def get_triggers(self, schema_name: str, table_name: str) -> list[str]:
        """Get names of user-defined triggers."""
        query = """
            SELECT tg.tgname
            FROM pg_trigger tg
            JOIN pg_class c ON c.oid = tg.tgrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = $1 AND c.relname = $2 AND NOT tg.tgisinternal
            ORDER BY tg.tgname
        """
        rows = await self.db_manager.fetch(query, schema_name, table_name)
        return [row["tgname"] for row in rows]

    async def has_rows(self, schema_name: str, table_name: str) -> bool:
        """Check whether the table holds at least one row."""
        query = f"SELECT EXISTS (SELECT 1 FROM {qualified_name(schema_name, table_name)})"
        return bool(await self.db_manager.fetchval(query))

    async def get_estimated_row_count(self, schema_name: str, table_name: str) -> int:
        """Estimated rows from planner statistics, summed over all partitions."""
        query = (
            _TABLE_TREE_CTE
            + """
            SELECT coalesce(sum(greatest(c.reltuples, 0)), 0)::bigint
            FROM tree
            JOIN pg_class c ON c.oid = tree.oid
            """
        )
        return int(await self.db_manager.fetchval(query, schema_name, table_name) or 0)

    async def get_column_statistics(
        self, schema_name: str, table_name: str, column_name: str
    ) -> ColumnStatistics:
        """Get min/max/row-count statistics for a column, bounding cost by table size.

        Small tables get exact aggregates. Mid-size tables get an index-ordered
        min/max probe, then a random-sample estimate. Large tables only get the
        sample. Every fallback path runs under a short timeout and ends in an
        ``unavailable`` result instead of an error.

        Args:
            schema_name: Schema name
            table_name: Table name
            column_name: Column to summarise

        Returns:
            Column statistics; ``total_rows`` always comes from the catalog
            estimate except in the exact tier
        """
        estimated_rows = await self.get_estimated_row_count(schema_name, table_name)
        table = qualified_name(schema_name, table_name)
        column = safe_identifier(column_name)
        log = self.logger.bind(schema=schema_name, table=table_name, column=column_name)

        if estimated_rows <= self.config.exact_statistics_max_rows:
            row = await self.db_manager.fetchrow(
                f"SELECT min({column}) AS min_value, max({column}) AS max_value, "
                f"count(*) AS total_rows, count(DISTINCT {column}) AS distinct_rows FROM {table}"
            )
            log.debug("Exact column statistics computed", estimated_rows=estimated_rows)
            return ColumnStatistics(
                column=column_name,
                total_rows=int(row["total_rows"]),
                method=StatisticsMethod.EXACT,
                min_value=row["min_value"],
                max_value=row["max_value"],
                distinct_rows=int(row["distinct_rows"]),
            )

        if estimated_rows <= self.config.sample_statistics_min_rows:
            try:
                min_value = await self.db_manager.fetchval(
                    f"SELECT {column} FROM {table} WHERE {column} IS NOT NULL ORDER BY {column} ASC LIMIT 1",
                    timeout=self.config.probe_timeout_seconds,
                )
                max_value = await self.db_manager.fetchval(
                    f"SELECT {column} FROM {table} WHERE {column} IS NOT NULL ORDER BY {column} DESC LIMIT 1",
                    timeout=self.config.probe_timeout_seconds,
                )
                log.debug("Probed column bounds", estimated_rows=estimated_rows)
                return ColumnStatistics(
                    column=column_name,
                    total_rows=estimated_rows,
                    method=StatisticsMethod.PROBE,
                    min_value=min_value,
                    max_value=max_value,
                )
            except DatabaseError as e:
                log.warning("Column bound probe failed, falling back to sampling", error=str(e))

        return await self._sample_statistics(table, column, column_name, estimated_rows, log)

    async def _sample_statistics(
        self,
        table: str,
        column: str,
        column_name: str,
        estimated_rows: int,
        log: structlog.BoundLogger,
    ) -> ColumnStatistics:
        query = (
            f"SELECT min({column}) AS min_value, max({column}) AS max_value "
            f"FROM {table} TABLESAMPLE SYSTEM ($1)"
        )
        try:
            row = await self.db_manager.fetchrow(
                query,
                self.config.sample_percent,
                timeout=self.config.sample_timeout_seconds,
            )
        except DatabaseError as e:
            log.warning("Sampled column statistics unavailable", error=str(e))
            return ColumnStatistics(
                column=column_name,
                total_rows=estimated_rows,
                method=StatisticsMethod.UNAVAILABLE,
            )

        log.debug("Sampled column statistics", estimated_rows=estimated_rows)
        return ColumnStatistics(
            column=column_name,
            total_rows=estimated_rows,
            method=StatisticsMethod.SAMPLE,
            min_value=row["min_value"] if row else None,
            max_value=row["max_value"] if row else None,
            is_approximate=True,
        )
