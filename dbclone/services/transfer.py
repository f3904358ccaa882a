import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Collection, List, Optional, Tuple

from loguru import logger

from dbclone.errors import DatabaseConnectionError, ErrorCategory, QueryError
from dbclone.models.config import RowSelection, RowSelectionStrategy, SynchronizationOptions, TableAnonymizationOptions
from dbclone.models.schema import RowFilter, TableSchema
from dbclone.schema.inspectors.factory import SchemaInspectorFactory
from dbclone.services.anonymizer import Anonymizer
from dbclone.services.error_classifier import error_classifier
from dbclone.services.run_log import RunLogger

PROGRESS_STEP = 5


@dataclass
class TransferResult:
    table: str
    rows: int = 0
    chunk_sizes: List[int] = field(default_factory=list)
    cancelled: bool = False
    duration: float = 0.0


def order_columns(table: TableSchema) -> List[str]:
    """按主键顺序返回主键列，没有主键时返回第一列"""
    primary_key = table.primary_key
    if primary_key is not None:
        return list(primary_key.columns)
    return [table.columns[0].name]


def selection_order(table: TableSchema, row_selection: Optional[RowSelection]) -> Tuple[List[str], bool, Optional[int]]:
    """读取表时使用的排序列、方向和行数限制"""
    if row_selection is None or not row_selection.is_limited:
        return order_columns(table), False, None
    columns = [row_selection.sort_column or order_columns(table)[0]]
    return columns, row_selection.strategy == RowSelectionStrategy.LAST_X, row_selection.limit


class TableTransferEngine:
    """
    按顺序分块将单个表的数据从源库复制到目标库

    每个分块读取后逐行脱敏，再批量插入。
    临时性错误会重试该分块，其他错误终止该表的传输，
    已写入的分块保留
    """

    def __init__(
        self,
        anonymizer: Optional[Anonymizer] = None,
        run_logger: Optional[RunLogger] = None,
        retry_times: int = 3,
        retry_interval: float = 2,
    ):
        self.anonymizer = anonymizer or Anonymizer()
        self.run_logger = run_logger
        self.retry_times = max(1, retry_times)
        self.retry_interval = retry_interval

    async def transfer_table(
        self,
        source,
        target,
        table_name: str,
        chunk_size: int,
        options: Optional[TableAnonymizationOptions] = None,
        disable_foreign_keys: bool = False,
        is_cancelled: Optional[Callable[[], bool]] = None,
        filters: Optional[List[RowFilter]] = None,
    ) -> TransferResult:
        result = TransferResult(table=table_name)
        start_time = time.time()

        table = await self._require_table(source, table_name, "source")
        await self._require_table(target, table_name, "target", inspect=False)

        columns, descending, limit = selection_order(table, options.row_selection if options else None)

        total = await source.get_row_count(table_name, filters)
        if limit is not None:
            total = min(total, limit)
        next_progress = PROGRESS_STEP

        offset = 0
        while True:
            if is_cancelled is not None and is_cancelled():
                result.cancelled = True
                logger.warning(f"Transfer of {table_name} cancelled after {result.rows} rows")
                break

            page_size = chunk_size if limit is None else min(chunk_size, limit - offset)
            if page_size <= 0:
                break

            written = await self._transfer_chunk(
                source, target, table_name, columns, offset, page_size, descending, options, disable_foreign_keys,
                filters,
            )
            if written == 0:
                break
            result.rows += written
            result.chunk_sizes.append(written)
            offset += written

            if total:
                percent = int(result.rows * 100 / total)
                if percent >= next_progress:
                    self._log_progress(table_name, result.rows, total, percent)
                    next_progress = (percent // PROGRESS_STEP + 1) * PROGRESS_STEP
            if written < page_size:
                break

        result.duration = time.time() - start_time
        rate = result.rows / result.duration if result.duration > 0 else 0
        logger.info(
            f"Table {table_name}: {result.rows} rows in {len(result.chunk_sizes)} chunks, "
            f"{result.duration:.2f}s, {rate:.2f} rows/s"
        )
        return result

    async def _transfer_chunk(
        self, source, target, table_name, columns, offset, page_size, descending, options, disable_foreign_keys,
        filters=None,
    ) -> int:
        attempt = 0
        while True:
            attempt += 1
            try:
                rows = await self._read_chunk(source, table_name, columns, offset, page_size, descending, filters)
                if not rows:
                    return 0
                rows = [self.anonymizer.anonymize_row(row, options) for row in rows]
                return await target.write_data(table_name, rows, disable_foreign_keys=disable_foreign_keys)
            except (QueryError, DatabaseConnectionError) as e:
                if not error_classifier.is_retryable(e) or attempt >= self.retry_times:
                    self._log("error", "chunk_failed", f"Chunk at offset {offset} failed: {e}", table_name,
                              {"offset": offset, "attempts": attempt})
                    raise
                delay = self.retry_interval * attempt
                self._log(
                    "warning",
                    "chunk_retry",
                    f"Chunk at offset {offset} failed: {e}, retry {attempt + 1}/{self.retry_times} in {delay}s",
                    table_name,
                    {"offset": offset, "attempt": attempt},
                )
                await asyncio.sleep(delay)

    async def _read_chunk(self, source, table_name, columns, offset, page_size, descending, filters=None):
        try:
            return await source.read_chunk(table_name, columns, offset, page_size, descending, filters)
        except QueryError as e:
            if e.category == ErrorCategory.PERMISSION_DENIED:
                self._log("error", "data_read_permission_denied", f"No permission to read {table_name}: {e}", table_name)
            raise

    async def foreign_key_filters(
        self, source, table_name: str, options: SynchronizationOptions, tables: Collection[str]
    ) -> List[RowFilter]:
        """
        父表限制了行数时，子表只保留引用已传输父表行的数据

        对于父表使用 FIRST_X 或 LAST_X 传输的外键，
        从源库读取该选择范围内的父表键值，
        并按外键的第一列过滤子表

        Args:
            source: 源库连接
            table_name: 子表名
            options: 包含各表行选择规则的同步选项
            tables: 本次运行传输的表

        Returns:
            每个生效外键对应一个 RowFilter，没有时返回空列表
        """
        limited_parents = {
            name for name, table_options in options.table_anonymization_options.items()
            if name != table_name and name in tables
            and table_options.row_selection is not None and table_options.row_selection.is_limited
        }
        if not limited_parents:
            return []

        inspector = SchemaInspectorFactory.for_connection(source)
        table = await inspector.get_table_schema(source, table_name)

        filters = []
        for foreign_key in table.foreign_keys:
            parent_name = foreign_key.referenced_table
            if parent_name not in limited_parents:
                continue
            row_selection = options.anonymization_options_for(parent_name).row_selection

            parent = await inspector.get_table_schema(source, parent_name)
            columns, descending, limit = selection_order(parent, row_selection)
            rows = await source.read_chunk(parent_name, columns, 0, limit, descending)
            referenced = foreign_key.referenced_columns[0]
            filters.append(RowFilter(column=foreign_key.columns[0], values=[row[referenced] for row in rows]))

        if filters:
            self._log(
                "debug",
                "fk_filters",
                f"Applied {len(filters)} foreign key filter(s)",
                table_name,
                {"columns": [row_filter.column for row_filter in filters]},
            )
        return filters

    async def _require_table(self, connection, table_name: str, side: str, inspect: bool = True) -> Optional[TableSchema]:
        inspector = SchemaInspectorFactory.for_connection(connection)
        if not await inspector.table_exists(connection, table_name):
            message = f"Table {table_name} does not exist on {side} {connection.config.name}"
            self._log("error", "table_not_found", message, table_name)
            raise QueryError(message, category=ErrorCategory.TABLE_NOT_FOUND)
        if not inspect:
            return None
        return await inspector.get_table_schema(connection, table_name)

    def _log_progress(self, table_name: str, rows: int, total: int, percent: int) -> None:
        self._log(
            "info",
            "table_transfer_progress",
            f"{rows}/{total} rows ({min(percent, 100)}%)",
            table_name,
            {"rows": rows, "total": total, "percent": min(percent, 100)},
        )

    def _log(self, level: str, event_type: str, message: str, table_name: str, data=None) -> None:
        if self.run_logger is None:
            logger.log(level.upper(), f"[Table: {table_name}] [{event_type}] {message}")
            return
        self.run_logger.log(level, event_type, message, {"table": table_name, **(data or {})})
