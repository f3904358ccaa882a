import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from dbclone.db.connection import ConnectionManager
from dbclone.errors import DatabaseConnectionError, DependencyCycleError, JobCancelledError, QueryError
from dbclone.models.config import ConnectionDescriptor, SynchronizationOptions, SynchronizeTableSchema
from dbclone.schema.inspectors.factory import SchemaInspectorFactory
from dbclone.services.audit import AuditSigner
from dbclone.services.dependency_resolver import get_processing_order
from dbclone.services.replicator import SchemaReplicator
from dbclone.services.run_log import RunLogger, RunRepository, RunStatus
from dbclone.services.transfer import TableTransferEngine
from dbclone.sync.batch import BatchHandle, BatchState, JobState


@dataclass
class JobContext:
    """任务执行所需的上下文，在调度时传入"""
    run_id: str
    options: SynchronizationOptions
    connections: ConnectionManager
    run_logger: RunLogger
    run_repository: RunRepository
    replicator: SchemaReplicator
    engine: TableTransferEngine
    batch: BatchHandle
    audit_signer: Optional[AuditSigner] = None


class TransferJob(ABC):
    # 临时性错误允许的尝试次数
    tries = 1
    # 只要求前置任务结束（不要求成功）时为 False
    requires_success = True

    def __init__(self, source: ConnectionDescriptor, target: Optional[ConnectionDescriptor], run_id: str):
        self.id = uuid.uuid4().hex
        self.source = source
        self.target = target
        self.run_id = run_id
        self.batch_id: Optional[str] = None
        self.state = JobState.PENDING
        self.attempts = 0
        self.error: Optional[str] = None
        self.skip_reason: Optional[str] = None

    @property
    def name(self) -> str:
        target = f"@{self.target.name}" if self.target else ""
        return f"{type(self).__name__}{target}"

    @property
    def table(self) -> Optional[str]:
        return None

    def log_data(self, **extra: Any) -> Dict[str, Any]:
        data = {"job": self.name}
        if self.table:
            data["table"] = self.table
        data.update(extra)
        return data

    @abstractmethod
    async def handle(self, context: JobContext) -> None:
        pass

    async def run(self, context: JobContext) -> None:
        try:
            await self.handle(context)
        except JobCancelledError:
            raise
        except DatabaseConnectionError as e:
            context.run_logger.error("connection_lost", f"{self.name}: {e}", self.log_data())
            raise
        except QueryError as e:
            context.run_logger.error(
                "database_error", f"{self.name}: {e}", self.log_data(category=e.category.value, sqlstate=e.sqlstate)
            )
            raise
        except Exception as e:
            context.run_logger.error("unexpected_error", f"{self.name}: {e}", self.log_data(error_type=type(e).__name__))
            raise

    def __repr__(self) -> str:
        return f"<{self.name} {self.state.value}>"


class DisableForeignKeysJob(TransferJob):
    tries = 2

    async def handle(self, context: JobContext) -> None:
        target = await context.connections.get_connection(self.target)
        await target.disable_foreign_keys()
        context.run_logger.info("foreign_keys_disabled", f"Foreign key checks disabled on {self.target.name}")


class EnableForeignKeysJob(TransferJob):
    tries = 2
    requires_success = False

    async def handle(self, context: JobContext) -> None:
        target = await context.connections.get_connection(self.target)
        await target.enable_foreign_keys()
        context.run_logger.info("foreign_keys_enabled", f"Foreign key checks enabled on {self.target.name}")


class CloneSchemaAndPrepareJob(TransferJob):
    """
    在传输数据之前使目标库结构与源库一致

    按配置删除目标库中多余的表，然后执行配置的结构同步策略：
    TRUNCATE 清空与源库同名的表，DROP_CREATE 删除后重建。
    最后总是执行结构复制，
    创建缺失的表和列
    """

    tries = 2

    async def handle(self, context: JobContext) -> None:
        options = context.options
        run_logger = context.run_logger
        run_logger.debug("phase_started", f"Preparing schema on {self.target.name}", self.log_data())

        source = await context.connections.get_connection(self.source)
        target = await context.connections.get_connection(self.target)
        target_inspector = SchemaInspectorFactory.for_connection(target)

        source_schema = await SchemaInspectorFactory.for_connection(source).get_database_schema(source)
        source_schema = source_schema.without(options.migration_table_name)
        target_tables = await target_inspector.get_table_names(target)

        try:
            delete_order = get_processing_order(source_schema)["delete_order"]
        except DependencyCycleError as e:
            logger.warning(f"{str(e)}, falling back to name order")
            delete_order = sorted(source_schema.table_names, reverse=True)

        if not options.keep_unknown_tables_on_target:
            unknown = [
                name for name in target_tables
                if name not in source_schema.tables and name != options.migration_table_name
            ]
            for table_name in unknown:
                await target.drop_tables([table_name])
                run_logger.info("table_dropped", f"Dropped table {table_name} missing on source", {"table": table_name})

        existing = [name for name in delete_order if name in target_tables]
        if options.synchronize_table_schema == SynchronizeTableSchema.TRUNCATE:
            for table_name in existing:
                await target.delete_all_rows(table_name)
                run_logger.info("table_emptied", f"Deleted all rows of {table_name}", {"table": table_name})
        elif options.synchronize_table_schema == SynchronizeTableSchema.DROP_CREATE:
            await target.drop_tables(existing)
            logger.info(f"Dropped {len(existing)} tables on {self.target.name} before recreating them")

        result = await context.replicator.replicate_database(
            source,
            target,
            source_schema=source_schema,
            visitor=self._visitor(run_logger),
            enforce_column_types=options.enforce_column_types_map(),
        )
        if not result.success:
            run_logger.warning(
                "schema_replication_incomplete",
                f"{len(result.failed)} tables could not be replicated on {self.target.name}",
                {"failed_tables": result.failed},
            )

    @staticmethod
    def _visitor(run_logger: RunLogger):
        def visit(table_name: str, event: str, message: str, level: str) -> None:
            run_logger.log(level, event, message, {"table": table_name})
        return visit


class TransferTableJob(TransferJob):
    def __init__(
        self,
        source: ConnectionDescriptor,
        target: ConnectionDescriptor,
        run_id: str,
        table_name: str,
        tables: Optional[List[str]] = None,
    ):
        super().__init__(source, target, run_id)
        self.table_name = table_name
        # 本次运行的所有表，不在其中的父表不会限制本表
        self.tables = tables or []

    @property
    def name(self) -> str:
        return f"{super().name}:{self.table_name}"

    @property
    def table(self) -> Optional[str]:
        return self.table_name

    async def handle(self, context: JobContext) -> None:
        run_logger = context.run_logger
        run_logger.info("table_started", f"Transferring {self.table_name}", self.log_data())

        source = await context.connections.get_connection(self.source)
        target = await context.connections.get_connection(self.target)

        filters = await context.engine.foreign_key_filters(source, self.table_name, context.options, self.tables)
        run_logger.debug("data_copy_started", f"Copying rows of {self.table_name}", self.log_data())
        result = await context.engine.transfer_table(
            source,
            target,
            self.table_name,
            context.options.chunk_size,
            options=context.options.anonymization_options_for(self.table_name),
            disable_foreign_keys=context.options.disable_foreign_key_constraints,
            is_cancelled=context.batch.is_cancelled,
            filters=filters,
        )
        if result.cancelled:
            raise JobCancelledError(f"Transfer of {self.table_name} cancelled after {result.rows} rows")

        run_logger.success(
            "data_copy_completed",
            f"Copied {result.rows} rows of {self.table_name}",
            self.log_data(rows_processed=result.rows, chunks=len(result.chunk_sizes),
                          duration_seconds=round(result.duration, 3)),
        )


class FinalizeJob(TransferJob):
    """写入最终运行状态，签名并关闭连接"""

    EVENTS = {
        BatchState.COMPLETED: ("success", "batch_completed"),
        BatchState.FAILED: ("error", "batch_failed"),
        BatchState.CANCELLED: ("warning", "batch_cancelled"),
    }
    STATUSES = {
        BatchState.COMPLETED: RunStatus.COMPLETED,
        BatchState.FAILED: RunStatus.FAILED,
        BatchState.CANCELLED: RunStatus.CANCELLED,
    }

    def __init__(self, source: ConnectionDescriptor, targets: List[ConnectionDescriptor], run_id: str):
        super().__init__(source, None, run_id)
        self.targets = targets

    async def handle(self, context: JobContext) -> None:
        progress = context.batch.progress()
        if progress.cancelled:
            state = BatchState.CANCELLED
        elif context.batch.has_failures():
            state = BatchState.FAILED
        else:
            state = BatchState.COMPLETED

        try:
            run = context.run_repository.update_status(
                self.run_id, self.STATUSES[state], progress.percent, progress.processed, progress.total
            )
            level, event_type = self.EVENTS[state]
            context.run_logger.log(
                level,
                event_type,
                f"Batch finished: {progress.processed}/{progress.total} jobs, {progress.failed} failed",
                {"batch_id": context.batch.batch_id, "processed": progress.processed,
                 "failed": progress.failed, "total": progress.total},
            )

            if context.audit_signer is not None:
                try:
                    context.audit_signer.sign(run)
                    context.run_repository.save(run)
                except Exception as e:
                    logger.error(f"Failed to sign run {self.run_id}: {str(e)}")
        finally:
            await context.connections.close_all()
