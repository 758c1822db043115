"""Target table creation mirroring a source table's structure."""

from dataclasses import dataclass
from typing import Optional

import structlog

from archival.database import DatabaseManager
from archival.exceptions import DatabaseError
from archival.introspector import SchemaIntrospector
from archival.models import ColumnDefinition
from utils import qualified_name, safe_identifier
from utils.logging import get_logger

DEFAULT_SCHEMA = "public"

# PostgreSQL truncates identifiers beyond this length
_MAX_IDENTIFIER_LENGTH = 63

_LENGTH_TYPES = ("character varying", "character", "bit varying", "bit")
_APPROXIMATE_NUMERIC_TYPES = ("real", "double precision")
_DATETIME_TYPES = (
    "timestamp without time zone",
    "timestamp with time zone",
    "time without time zone",
    "time with time zone",
    "interval",
)


@dataclass
class ReplicationResult:
    """Outcome of :meth:`StructureReplicator.create_target_table`."""

    ok: bool
    script: Optional[str] = None
    column_count: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class ColumnDifference:
    """One incompatibility between a source and a target column list."""

    kind: str
    column: Optional[str]
    message: str


def render_column_type(column: ColumnDefinition) -> str:
    """Render the declared type of a column as DDL.

    Length-bearing types without a length are the unbounded variant.
    Approximate numerics are rendered as ``float(p)`` which PostgreSQL maps
    back onto ``real`` or ``double precision``.
    """
    data_type = column.data_type

    if data_type in _LENGTH_TYPES:
        if column.max_length is not None:
            return f"{data_type}({column.max_length})"
        return data_type

    if data_type == "numeric":
        if column.numeric_precision is not None:
            return f"numeric({column.numeric_precision},{column.numeric_scale or 0})"
        return "numeric"

    if data_type in _APPROXIMATE_NUMERIC_TYPES:
        if column.numeric_precision is not None:
            return f"float({column.numeric_precision})"
        return data_type

    if data_type in _DATETIME_TYPES:
        if column.datetime_precision is None:
            return data_type
        head, _, tail = data_type.partition(" ")
        rendered = f"{head}({column.datetime_precision})"
        return f"{rendered} {tail}" if tail else rendered

    if data_type == "ARRAY" and column.udt_name:
        return f"{column.udt_name.lstrip('_')}[]"

    if data_type == "USER-DEFINED" and column.udt_name:
        return safe_identifier(column.udt_name)

    return data_type


def render_column(column: ColumnDefinition) -> str:
    """Render one column definition line."""
    parts = [safe_identifier(column.name), render_column_type(column)]

    if column.is_identity:
        seed = column.identity_seed if column.identity_seed is not None else 1
        increment = column.identity_increment if column.identity_increment is not None else 1
        # BY DEFAULT so archived rows keep their original identity values
        parts.append(f"GENERATED BY DEFAULT AS IDENTITY (START WITH {seed} INCREMENT BY {increment})")
    elif column.default and not column.default.lower().startswith("nextval("):
        parts.append(f"DEFAULT {column.default}")

    parts.append("NULL" if column.is_nullable else "NOT NULL")
    return " ".join(parts)


def primary_key_name(table_name: str) -> str:
    return f"pk_{table_name}"[:_MAX_IDENTIFIER_LENGTH]


def compare_columns(
    source: list[ColumnDefinition], target: list[ColumnDefinition]
) -> list[ColumnDifference]:
    """Compare two column lists by name.

    ``count`` and ``type`` differences make a target unusable, while
    ``nullability`` and ``identity`` differences are reported for review.
    """
    differences: list[ColumnDifference] = []
    if len(source) != len(target):
        differences.append(
            ColumnDifference(
                kind="count",
                column=None,
                message=f"Source has {len(source)} columns, target has {len(target)}",
            )
        )

    target_by_name = {column.name: column for column in target}
    for column in source:
        counterpart = target_by_name.get(column.name)
        if counterpart is None:
            differences.append(
                ColumnDifference(kind="type", column=column.name, message=f"Column {column.name} missing in target")
            )
            continue

        source_type = render_column_type(column)
        target_type = render_column_type(counterpart)
        if source_type != target_type:
            differences.append(
                ColumnDifference(
                    kind="type",
                    column=column.name,
                    message=f"Column {column.name}: source {source_type}, target {target_type}",
                )
            )
        if column.is_nullable != counterpart.is_nullable:
            differences.append(
                ColumnDifference(
                    kind="nullability",
                    column=column.name,
                    message=(
                        f"Column {column.name}: source "
                        f"{'NULL' if column.is_nullable else 'NOT NULL'}, target "
                        f"{'NULL' if counterpart.is_nullable else 'NOT NULL'}"
                    ),
                )
            )
        if column.is_identity != counterpart.is_identity:
            differences.append(
                ColumnDifference(
                    kind="identity",
                    column=column.name,
                    message=f"Column {column.name}: identity differs between source and target",
                )
            )

    source_names = {column.name for column in source}
    for column in target:
        if column.name not in source_names:
            differences.append(
                ColumnDifference(kind="type", column=column.name, message=f"Column {column.name} missing in source")
            )
    return differences


class StructureReplicator:
    """Creates target tables whose columns mirror a source table."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.logger = logger or get_logger("structure_replicator")

    async def table_exists(self, db_manager: DatabaseManager, schema_name: str, table_name: str) -> bool:
        return await SchemaIntrospector(db_manager, logger=self.logger).table_exists(schema_name, table_name)

    def build_create_script(
        self,
        columns: list[ColumnDefinition],
        primary_key: list[str],
        target_schema: str,
        target_table: str,
        tablespace: Optional[str] = None,
    ) -> str:
        """Build the CREATE TABLE script for a target table.

        Args:
            columns: Source columns in ordinal order
            primary_key: Source primary key columns in key order
            target_schema: Target schema name
            target_table: Target table name
            tablespace: Optional tablespace for the new table

        Returns:
            DDL script (CREATE TABLE plus CLUSTER ON for the primary key)
        """
        table = qualified_name(target_schema, target_table)
        lines = [f"    {render_column(column)}" for column in columns]

        pk_name = primary_key_name(target_table)
        if primary_key:
            key = ", ".join(safe_identifier(name) for name in primary_key)
            lines.append(f"    CONSTRAINT {safe_identifier(pk_name)} PRIMARY KEY ({key})")

        statement = f"CREATE TABLE {table} (\n" + ",\n".join(lines) + "\n)"
        if tablespace:
            statement += f" TABLESPACE {safe_identifier(tablespace)}"
        statements = [statement + ";"]

        if primary_key:
            statements.append(f"ALTER TABLE {table} CLUSTER ON {safe_identifier(pk_name)};")

        return "\n".join(statements)

    async def create_target_table(
        self,
        source_db: DatabaseManager,
        target_db: DatabaseManager,
        source_schema: str,
        source_table: str,
        target_schema: str,
        target_table: str,
        tablespace: Optional[str] = None,
    ) -> ReplicationResult:
        """Create a target table matching the source table's columns and primary key.

        Args:
            source_db: Database holding the source table
            target_db: Database the target table is created in
            source_schema: Source schema name
            source_table: Source table name
            target_schema: Target schema name (created when missing)
            target_table: Target table name
            tablespace: Optional tablespace for the new table

        Returns:
            ReplicationResult with the executed script, or the failure reason
        """
        source = SchemaIntrospector(source_db, logger=self.logger)
        target = SchemaIntrospector(target_db, logger=self.logger)
        log = self.logger.bind(
            source=f"{source_schema}.{source_table}",
            target=f"{target_schema}.{target_table}",
        )

        try:
            if not await source.table_exists(source_schema, source_table):
                return ReplicationResult(ok=False, reason=f"Source table {source_schema}.{source_table} does not exist")

            columns = await source.get_columns(source_schema, source_table)
            if not columns:
                return ReplicationResult(
                    ok=False, reason=f"Source table {source_schema}.{source_table} has no readable columns"
                )

            if await target.table_exists(target_schema, target_table):
                return ReplicationResult(
                    ok=False, reason=f"Target table {target_schema}.{target_table} already exists"
                )

            primary_key = await source.get_primary_key(source_schema, source_table)
            script = self.build_create_script(columns, primary_key, target_schema, target_table, tablespace)

            async with target_db.transaction() as conn:
                if target_schema != DEFAULT_SCHEMA:
                    await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {safe_identifier(target_schema)}")
                await conn.execute(script)

        except (DatabaseError, ValueError) as e:
            log.error("Target table creation failed", error=str(e))
            return ReplicationResult(ok=False, reason=str(e))
        except Exception as e:
            log.error("Target table creation failed", error=str(e), exc_info=True)
            return ReplicationResult(ok=False, reason=f"Failed to create target table: {e}")

        log.info("Target table created", columns=len(columns), primary_key=primary_key)
        return ReplicationResult(ok=True, script=script, column_count=len(columns))
