"""Pre-flight safety checks run before rows are moved."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Optional

import structlog

from archival.introspector import SchemaIntrospector
from archival.models import IndexDefinition, MoveStrategy, PartitionDetail
from archival.replicator import compare_columns
from utils.logging import get_logger


class SafetyCode(StrEnum):
    """Issue codes reported by :class:`SafetyValidator`."""

    TARGET_TABLE_NOT_EMPTY = "TargetTableNotEmpty"
    COLUMN_TYPE_MISMATCH = "ColumnTypeMismatch"
    MISSING_TARGET_TABLE = "MissingTargetTable"
    INDEX_NOT_ALIGNED = "IndexNotAligned"
    EXTERNAL_FOREIGN_KEY_REFERENCE = "ExternalForeignKeyReference"
    COLUMN_COUNT_MISMATCH = "ColumnCountMismatch"
    MISSING_SOURCE_TABLE = "MissingSourceTable"
    SOURCE_NOT_PARTITIONED = "SourceNotPartitioned"
    CROSS_DATABASE_SWITCH = "CrossDatabaseSwitch"
    TARGET_HAS_TRIGGERS = "TargetHasTriggers"
    TARGET_INDEXES_REPLACED = "TargetIndexesReplaced"
    NULLABILITY_DIFFERENCE = "NullabilityDifference"
    IDENTITY_DIFFERENCE = "IdentityDifference"


@dataclass(frozen=True)
class SafetyIssue:
    code: SafetyCode
    message: str


@dataclass
class SafetyVerdict:
    """Result of a pre-flight check; any blocking issue forbids the move."""

    blocking_issues: list[SafetyIssue] = field(default_factory=list)
    warnings: list[SafetyIssue] = field(default_factory=list)

    @property
    def can_proceed(self) -> bool:
        return not self.blocking_issues

    @property
    def blocking_codes(self) -> list[str]:
        return [str(issue.code) for issue in self.blocking_issues]

    def block(self, code: SafetyCode, message: str) -> None:
        self.blocking_issues.append(SafetyIssue(code, message))

    def warn(self, code: SafetyCode, message: str) -> None:
        self.warnings.append(SafetyIssue(code, message))

    def summary(self) -> str:
        """One-line description of the blocking issues."""
        return "; ".join(f"{issue.code}: {issue.message}" for issue in self.blocking_issues)


@dataclass
class MovePlan:
    """What a move would do, as seen by the validator."""

    strategy: MoveStrategy
    source_schema: str
    source_table: str
    target_schema: str
    target_table: str
    delete_source_rows: bool = True
    same_database: bool = True
    partition: Optional[PartitionDetail] = None


class SafetyValidator:
    """Combines catalog facts from both sides of a move into a verdict.

    Holds no state of its own between calls.
    """

    def __init__(
        self,
        source: SchemaIntrospector,
        target: SchemaIntrospector,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize safety validator.

        Args:
            source: Introspector for the source database
            target: Introspector for the target database
            logger: Optional logger instance
        """
        self.source = source
        self.target = target
        self.logger = logger or get_logger("safety_validator")

    async def validate(self, plan: MovePlan) -> SafetyVerdict:
        """Full pre-flight check requiring an empty, structurally identical target.

        A non-empty target always blocks, whatever else is found.

        Args:
            plan: Planned move

        Returns:
            SafetyVerdict
        """
        verdict = SafetyVerdict()
        if not await self._check_tables(plan, verdict):
            return self._log(plan, verdict)

        if await self.target.has_rows(plan.target_schema, plan.target_table):
            verdict.block(
                SafetyCode.TARGET_TABLE_NOT_EMPTY,
                f"Target table {plan.target_schema}.{plan.target_table} contains rows",
            )

        await self._check_columns(plan, verdict)

        if plan.strategy == MoveStrategy.PARTITION_SWITCH:
            await self._check_switch(plan, verdict)
            await self._check_foreign_keys(plan, verdict)
        elif plan.delete_source_rows:
            await self._check_foreign_keys(plan, verdict)

        await self._check_triggers(plan, verdict)
        return self._log(plan, verdict)

    async def check_append(self, plan: MovePlan) -> SafetyVerdict:
        """Pre-flight check for copy strategies, whose target accumulates rows across runs."""
        verdict = SafetyVerdict()
        if not await self._check_tables(plan, verdict):
            return self._log(plan, verdict)

        await self._check_columns(plan, verdict)
        if plan.delete_source_rows:
            await self._check_foreign_keys(plan, verdict)
        await self._check_triggers(plan, verdict)
        return self._log(plan, verdict)

    def _log(self, plan: MovePlan, verdict: SafetyVerdict) -> SafetyVerdict:
        self.logger.info(
            "Safety validation finished",
            source=f"{plan.source_schema}.{plan.source_table}",
            target=f"{plan.target_schema}.{plan.target_table}",
            strategy=str(plan.strategy),
            can_proceed=verdict.can_proceed,
            blocking=verdict.blocking_codes,
            warnings=[str(w.code) for w in verdict.warnings],
        )
        return verdict

    async def _check_tables(self, plan: MovePlan, verdict: SafetyVerdict) -> bool:
        if not await self.source.table_exists(plan.source_schema, plan.source_table):
            verdict.block(
                SafetyCode.MISSING_SOURCE_TABLE,
                f"Source table {plan.source_schema}.{plan.source_table} does not exist",
            )
        if not await self.target.table_exists(plan.target_schema, plan.target_table):
            verdict.block(
                SafetyCode.MISSING_TARGET_TABLE,
                f"Target table {plan.target_schema}.{plan.target_table} does not exist",
            )
        return verdict.can_proceed

    async def _check_columns(self, plan: MovePlan, verdict: SafetyVerdict) -> None:
        source_columns = await self.source.get_columns(plan.source_schema, plan.source_table)
        target_columns = await self.target.get_columns(plan.target_schema, plan.target_table)

        for difference in compare_columns(source_columns, target_columns):
            if difference.kind == "count":
                verdict.block(SafetyCode.COLUMN_COUNT_MISMATCH, difference.message)
            elif difference.kind == "type":
                verdict.block(SafetyCode.COLUMN_TYPE_MISMATCH, difference.message)
            elif difference.kind == "nullability":
                verdict.warn(SafetyCode.NULLABILITY_DIFFERENCE, difference.message)
            else:
                verdict.warn(SafetyCode.IDENTITY_DIFFERENCE, difference.message)

    async def _check_switch(self, plan: MovePlan, verdict: SafetyVerdict) -> None:
        if not plan.same_database:
            verdict.block(
                SafetyCode.CROSS_DATABASE_SWITCH,
                "Partition switch requires source and target in the same database",
            )

        info = await self.source.get_partition_info(plan.source_schema, plan.source_table)
        if info is None:
            verdict.block(
                SafetyCode.SOURCE_NOT_PARTITIONED,
                f"Source table {plan.source_schema}.{plan.source_table} is not partitioned",
            )
            return

        if plan.partition is not None:
            indexes = await self.source.get_indexes(plan.partition.schema_name, plan.partition.table_name)
            self._check_alignment(indexes, info.column_name, plan.partition.table_name, verdict)

        if await self.target.is_partitioned(plan.target_schema, plan.target_table):
            target_indexes = await self.target.get_indexes(plan.target_schema, plan.target_table)
            self._check_alignment(target_indexes, info.column_name, plan.target_table, verdict)
        else:
            replaced = [
                index.name
                for index in await self.target.get_indexes(plan.target_schema, plan.target_table)
                if not index.is_primary
            ]
            if replaced:
                verdict.warn(
                    SafetyCode.TARGET_INDEXES_REPLACED,
                    f"Target indexes {replaced} are replaced by the switched partition's indexes",
                )

    @staticmethod
    def _check_alignment(
        indexes: list[IndexDefinition],
        partition_column: str,
        table_name: str,
        verdict: SafetyVerdict,
    ) -> None:
        for index in indexes:
            if index.is_primary or index.is_inherited or partition_column in index.columns:
                continue
            message = f"Index {index.name} on {table_name} does not include partition column {partition_column}"
            if index.is_unique:
                verdict.block(SafetyCode.INDEX_NOT_ALIGNED, message)
            else:
                verdict.warn(SafetyCode.INDEX_NOT_ALIGNED, message)

    async def _check_foreign_keys(self, plan: MovePlan, verdict: SafetyVerdict) -> None:
        references = await self.source.get_referencing_foreign_keys(plan.source_schema, plan.source_table)
        for reference in references:
            verdict.block(
                SafetyCode.EXTERNAL_FOREIGN_KEY_REFERENCE,
                f"{reference.referencing_schema}.{reference.referencing_table} references "
                f"{plan.source_schema}.{plan.source_table} via {reference.constraint_name}",
            )

    async def _check_triggers(self, plan: MovePlan, verdict: SafetyVerdict) -> None:
        triggers = await self.target.get_triggers(plan.target_schema, plan.target_table)
        if triggers:
            verdict.warn(
                SafetyCode.TARGET_HAS_TRIGGERS,
                f"Target table has triggers {triggers}; bulk loads fire them",
            )
