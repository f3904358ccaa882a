from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from loguru import logger

from dbclone.errors import CloneError, DependencyCycleError
from dbclone.models.schema import ColumnSchema, DatabaseSchema, TableSchema
from dbclone.schema.inspectors.factory import SchemaInspectorFactory
from dbclone.services.dependency_resolver import get_processing_order

# visitor(table_name, event, message, level)
ReplicationVisitor = Callable[[str, str, str, str], None]


@dataclass
class TableDiff:
    missing_columns: List[ColumnSchema] = field(default_factory=list)
    extra_columns: List[ColumnSchema] = field(default_factory=list)
    modified_columns: List[ColumnSchema] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.missing_columns or self.extra_columns or self.modified_columns)


@dataclass
class ReplicationResult:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


class SchemaReplicator:
    """创建或更新目标表，使其与源表结构一致"""

    async def replicate_database(
        self,
        source,
        target,
        source_schema: Optional[DatabaseSchema] = None,
        tables: Optional[List[str]] = None,
        visitor: Optional[ReplicationVisitor] = None,
        enforce_column_types: Optional[Dict[str, bool]] = None,
    ) -> ReplicationResult:
        """
        将源库的所有表结构复制到目标库

        失败的表会被记录并跳过，
        其余表继续处理

        Args:
            source: 源库连接，未提供 source_schema 时从中读取
            target: 目标库连接
            source_schema: 已读取的源库结构
            tables: 需要复制的表及其顺序
            visitor: 接收 table_started / table_completed / table_failed 事件
            enforce_column_types: 需要修改不一致列定义的表

        Returns:
            ReplicationResult
        """
        if source_schema is None:
            source_schema = await SchemaInspectorFactory.for_connection(source).get_database_schema(source)
        enforce_column_types = enforce_column_types or {}

        if tables is None:
            try:
                tables = get_processing_order(source_schema)["insert_order"]
            except DependencyCycleError as e:
                logger.warning(f"{str(e)}, replicating tables in name order")
                tables = sorted(source_schema.table_names)

        target_inspector = SchemaInspectorFactory.for_connection(target)
        existing = set(await target_inspector.get_table_names(target))

        result = ReplicationResult()
        for table_name in tables:
            table = source_schema.get_table(table_name)
            if table is None:
                continue
            self._notify(visitor, table_name, "table_started", f"Replicating schema of {table_name}", "info")
            try:
                target_table = None
                if table_name in existing:
                    target_table = await target_inspector.get_table_schema(target, table_name)
                outcome = await self.replicate_table(
                    target, table, target_table, enforce_column_types.get(table_name, False)
                )
                getattr(result, outcome).append(table_name)
                existing.add(table_name)
                self._notify(visitor, table_name, "table_completed", f"Schema of {table_name} replicated", "success")
            except CloneError as e:
                logger.error(f"Failed to replicate table {table_name}: {str(e)}")
                result.failed[table_name] = str(e)
                self._notify(visitor, table_name, "table_failed", f"Schema of {table_name} failed: {e}", "error")
        return result

    async def replicate_table(
        self,
        target,
        table: TableSchema,
        target_table: Optional[TableSchema] = None,
        enforce_column_types: bool = False,
    ) -> str:
        """创建或更新单个表，返回 created、updated 或 unchanged"""
        builder = target.builder

        if target_table is None:
            await self._execute(target, builder.build_create_table(table))
            for index in builder.secondary_indexes(table):
                await self._execute(target, builder.build_create_index(table.name, index))
            if not builder.embeds_foreign_keys:
                for foreign_key in table.foreign_keys:
                    await self._execute(target, builder.build_add_foreign_key(table.name, foreign_key))
            logger.info(f"Created table {table.name} on {target.config.name}")
            return "created"

        diff = self.get_table_diff(table, target_table)
        statements = [builder.build_add_column(table.name, column) for column in diff.missing_columns]
        if enforce_column_types:
            statements += [builder.build_modify_column(table.name, column) for column in diff.modified_columns]
        if not statements:
            return "unchanged"

        for statement in statements:
            await self._execute(target, statement)
        logger.info(f"Updated table {table.name} on {target.config.name}")
        return "updated"

    def get_table_diff(self, source_table: TableSchema, target_table: TableSchema) -> TableDiff:
        diff = TableDiff()
        for column in source_table.columns:
            target_column = target_table.get_column(column.name)
            if target_column is None:
                diff.missing_columns.append(column)
            elif self._column_signature(column) != self._column_signature(target_column):
                diff.modified_columns.append(column)
        diff.extra_columns = [column for column in target_table.columns if not source_table.has_column(column.name)]
        return diff

    @staticmethod
    def _column_signature(column: ColumnSchema):
        return column.type, column.length, column.scale, column.nullable

    @staticmethod
    async def _execute(target, sql: str) -> None:
        # 构建器可能返回多条以 ";\n" 连接的语句
        for statement in sql.split(";\n"):
            if statement.strip():
                await target.execute(statement)

    @staticmethod
    def _notify(visitor: Optional[ReplicationVisitor], table_name: str, event: str, message: str, level: str):
        if visitor is not None:
            visitor(table_name, event, message, level)
