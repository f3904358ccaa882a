import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from loguru import logger

from dbclone.db.connection import ConnectionManager
from dbclone.errors import CloneError, DatabaseConnectionError, DependencyCycleError, QueryError
from dbclone.models.config import ConnectionDescriptor, SyncConfig
from dbclone.models.schema import DatabaseSchema
from dbclone.schema.inspectors.factory import SchemaInspectorFactory
from dbclone.services.anonymizer import Anonymizer
from dbclone.services.audit import AuditSigner
from dbclone.services.dependency_resolver import get_processing_order
from dbclone.services.replicator import SchemaReplicator
from dbclone.services.run_log import (
    InMemoryRunLog, InMemoryRunRepository, Run, RunLogger, RunLogSink, RunRepository, RunStatus,
)
from dbclone.services.transfer import TableTransferEngine
from dbclone.sync.batch import Batch, BatchHandle
from dbclone.sync.jobs import (
    CloneSchemaAndPrepareJob,
    DisableForeignKeysJob,
    EnableForeignKeysJob,
    FinalizeJob,
    JobContext,
    TransferTableJob,
)
from dbclone.sync.orchestrator import BatchOrchestrator, ProgressCallback


class DatabaseSynchronizer:
    """
    运行入口：根据 SyncConfig 构建批次并执行

    Usage:
        synchronizer = DatabaseSynchronizer(config)
        run = await synchronizer.run()
    """

    def __init__(
        self,
        config: SyncConfig,
        run_id: Optional[str] = None,
        log_sink: Optional[RunLogSink] = None,
        run_repository: Optional[RunRepository] = None,
        anonymizer: Optional[Anonymizer] = None,
    ):
        self.config = config
        self.run_id = run_id or uuid.uuid4().hex
        self.log_sink = log_sink or InMemoryRunLog()
        self.run_repository = run_repository or InMemoryRunRepository()
        self.run_logger = RunLogger(self.run_id, self.log_sink)
        self.connections = ConnectionManager(self.run_id)
        self.engine = TableTransferEngine(
            anonymizer=anonymizer,
            run_logger=self.run_logger,
            retry_times=config.retry_times,
            retry_interval=config.retry_interval,
        )
        self.batch: Optional[Batch] = None

        self.run_repository.save(
            Run(
                id=self.run_id,
                source=config.source.name,
                targets=[target.name for target in config.targets],
                config_snapshot=self._config_snapshot(),
            )
        )

    def _config_snapshot(self) -> Dict[str, Any]:
        # 审计记录中不包含密码
        def describe(descriptor: ConnectionDescriptor) -> Dict[str, Any]:
            return {
                "name": descriptor.name,
                "driver": descriptor.driver.value,
                "host": descriptor.host,
                "port": descriptor.port,
                "database": descriptor.database,
            }

        options = asdict(self.config.options)
        return {
            "source": describe(self.config.source),
            "targets": [describe(target) for target in self.config.targets],
            "options": options,
        }

    async def build_batch(self) -> Optional[Batch]:
        """
        读取源库结构，为每个目标库生成任务

        源库无法连接或读取时返回 None，
        并将运行标记为 FAILED
        """
        options = self.config.options
        source = self.config.source
        try:
            connection = await self.connections.get_connection(source)
            schema = await SchemaInspectorFactory.for_connection(connection).get_database_schema(connection)
            tables = await self._tables_to_transfer(connection, schema.without(options.migration_table_name))
        except CloneError as e:
            self._log_build_error(e)
            self.run_repository.update_status(self.run_id, RunStatus.FAILED)
            self.run_logger.error("batch_failed", f"Run {self.run_id} failed before any job was dispatched")
            await self.connections.close_all()
            return None

        batch = Batch(self.run_id)
        for target in self.config.targets:
            self._add_target_jobs(batch, target, tables, schema)
        batch.set_finalizer(FinalizeJob(source, list(self.config.targets), self.run_id))

        logger.info(
            f"Built batch {batch.id}: {batch.total_jobs} jobs for {len(self.config.targets)} targets, "
            f"{len(tables)} tables"
        )
        self.batch = batch
        return batch

    def _log_build_error(self, error: CloneError) -> None:
        source = self.config.source
        if isinstance(error, DatabaseConnectionError):
            self.run_logger.error(
                "connection_failed", f"Could not connect to source {source.name}: {error}", {"connection": source.name}
            )
        elif isinstance(error, QueryError):
            self.run_logger.error(
                "database_error",
                f"Could not read source {source.name}: {error}",
                {"connection": source.name, "category": error.category.value, "sqlstate": error.sqlstate},
            )
        else:
            self.run_logger.error(
                "unexpected_error",
                f"Could not plan the run on {source.name}: {error}",
                {"connection": source.name, "error_type": type(error).__name__},
            )

    async def _tables_to_transfer(self, connection, schema: DatabaseSchema) -> List[str]:
        try:
            ordered = get_processing_order(schema)["insert_order"]
        except DependencyCycleError as e:
            logger.warning(f"{str(e)}, transferring tables in name order")
            ordered = sorted(schema.table_names)

        tables = []
        for table_name in ordered:
            if await connection.get_row_count(table_name) == 0:
                self.run_logger.success(
                    "table_done", f"Skipped table {table_name} because it has no records", {"table": table_name}
                )
                continue
            tables.append(table_name)
        return tables

    def _add_target_jobs(self, batch: Batch, target: ConnectionDescriptor, tables: List[str], schema: DatabaseSchema):
        source = self.config.source
        disable_foreign_keys = self.config.options.disable_foreign_key_constraints

        prerequisites = []
        if disable_foreign_keys:
            prerequisites.append(batch.add(DisableForeignKeysJob(source, target, self.run_id)))
        prepare = batch.add(CloneSchemaAndPrepareJob(source, target, self.run_id), depends_on=prerequisites)

        transfers: Dict[str, TransferTableJob] = {}
        for table_name in tables:
            depends_on = [prepare]
            if not disable_foreign_keys:
                # 外键约束生效时，必须先写入父表
                for foreign_key in schema.get_table(table_name).foreign_keys:
                    parent = transfers.get(foreign_key.referenced_table)
                    if parent is not None and parent not in depends_on:
                        depends_on.append(parent)
            transfers[table_name] = batch.add(
                TransferTableJob(source, target, self.run_id, table_name, tables), depends_on=depends_on
            )

        if disable_foreign_keys:
            batch.add(EnableForeignKeysJob(source, target, self.run_id), depends_on=[prepare, *transfers.values()])

    def cancel(self) -> None:
        """停止调度任务，正在传输的表在下一个分块处停止"""
        if self.batch is None:
            logger.warning(f"Run {self.run_id} has no batch to cancel")
            return
        self.batch.cancel()
        logger.warning(f"Run {self.run_id} cancellation requested")

    async def run(self, on_progress: Optional[ProgressCallback] = None) -> Run:
        batch = self.batch or await self.build_batch()
        if batch is None:
            return self.run_repository.get(self.run_id)

        context = JobContext(
            run_id=self.run_id,
            options=self.config.options,
            connections=self.connections,
            run_logger=self.run_logger,
            run_repository=self.run_repository,
            replicator=SchemaReplicator(),
            engine=self.engine,
            batch=BatchHandle(batch),
            audit_signer=AuditSigner(self.config.audit_secret, self.log_sink),
        )
        orchestrator = BatchOrchestrator(
            batch,
            context,
            max_concurrent_tasks=self.config.max_concurrent_tasks,
            job_backoff=self.config.job_backoff,
            job_timeout=self.config.job_timeout,
            on_progress=on_progress,
        )
        await orchestrator.run()
        return self.run_repository.get(self.run_id)
