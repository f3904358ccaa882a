import os
import sqlite3
import tempfile
import unittest
from unittest import mock

from dbclone.connectors.base import BaseConnector
from dbclone.connectors.factory import ConnectorFactory
from dbclone.errors import DatabaseConnectionError, ErrorCategory, QueryError
from dbclone.models.config import (
    ColumnMutation,
    ColumnMutationOptions,
    ColumnMutationStrategy,
    ConnectionDescriptor,
    RowSelection,
    RowSelectionStrategy,
    SyncConfig,
    SynchronizationOptions,
    SynchronizeTableSchema,
    TableAnonymizationOptions,
)
from dbclone.services.audit import AuditSigner
from dbclone.services.replicator import SchemaReplicator
from dbclone.services.run_log import InMemoryRunLog, RunStatus
from dbclone.sync.batch import JobState
from dbclone.sync.jobs import TransferTableJob
from dbclone.sync.synchronizer import DatabaseSynchronizer

SOURCE_SCHEMA = """
CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, email VARCHAR(255) NOT NULL, name TEXT);
CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER NOT NULL REFERENCES users(id), title VARCHAR(100));
CREATE TABLE comments (
    id INTEGER PRIMARY KEY,
    post_id INTEGER NOT NULL REFERENCES posts(id),
    user_id INTEGER REFERENCES users(id),
    body TEXT
);
CREATE TABLE tags (id INTEGER PRIMARY KEY, label TEXT);
CREATE TABLE migrations (id INTEGER PRIMARY KEY, migration TEXT);
INSERT INTO users (id, email, name) VALUES (1, 'alice@example.com', 'Alice'), (2, 'bob@example.com', 'Bob'),
    (3, 'carol@example.com', 'Carol');
INSERT INTO posts (id, user_id, title) VALUES (1, 1, 'Hello'), (2, 3, 'World');
INSERT INTO comments (id, post_id, user_id, body) VALUES (1, 2, 2, 'Nice');
INSERT INTO migrations (id, migration) VALUES (1, '2024_01_01_create_users');
"""


class TestSQLiteClone(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.source_path = os.path.join(tmp.name, "source.db")
        self.target_path = os.path.join(tmp.name, "target.db")

        with sqlite3.connect(self.source_path) as conn:
            conn.executescript(SOURCE_SCHEMA)
        with sqlite3.connect(self.target_path) as conn:
            conn.execute("CREATE TABLE legacy_audit (id INTEGER PRIMARY KEY, note TEXT)")
        self.sink = InMemoryRunLog()

    def config(self, max_concurrent_tasks=1, **option_overrides) -> SyncConfig:
        options = {
            "chunk_size": 2,
            "keep_unknown_tables_on_target": False,
            "migration_table_name": "migrations",
            "table_anonymization_options": {
                "users": TableAnonymizationOptions(column_mutations=[
                    ColumnMutation(
                        column_name="email",
                        strategy=ColumnMutationStrategy.MASK,
                        options=ColumnMutationOptions(visible_chars=2, mask_char="#"),
                    )
                ])
            },
        }
        options.update(option_overrides)
        return SyncConfig(
            source=ConnectionDescriptor(name="source", driver="sqlite", database=self.source_path),
            targets=[ConnectionDescriptor(name="target", driver="sqlite", database=self.target_path)],
            options=SynchronizationOptions(**options),
            max_concurrent_tasks=max_concurrent_tasks,
            retry_interval=0,
            job_backoff=0,
            audit_secret="s3cret",
        )

    def query(self, sql):
        with sqlite3.connect(self.target_path) as conn:
            return conn.execute(sql).fetchall()

    def columns(self, path, table):
        with sqlite3.connect(path) as conn:
            return [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]

    def target_tables(self):
        rows = self.query("SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'")
        return sorted(row[0] for row in rows)

    def entries(self, synchronizer, event_type):
        return [entry for entry in self.sink.entries(synchronizer.run_id) if entry.event_type == event_type]

    async def test_zero_row_and_migration_tables_get_no_transfer_job(self):
        synchronizer = DatabaseSynchronizer(self.config(), log_sink=self.sink)
        batch = await synchronizer.build_batch()
        self.addAsyncCleanup(synchronizer.connections.close_all)

        tables = [job.table_name for job in batch.jobs if isinstance(job, TransferTableJob)]
        self.assertEqual(tables, ["users", "posts", "comments"])
        skipped = [entry.data["table"] for entry in self.entries(synchronizer, "table_done")]
        self.assertEqual(skipped, ["tags"])
        # DisableForeignKeys, CloneSchemaAndPrepare, 3 transfers, EnableForeignKeys
        self.assertEqual(batch.total_jobs, 6)

    async def test_clone_copies_rows_in_chunks_and_masks_emails(self):
        synchronizer = DatabaseSynchronizer(self.config(), log_sink=self.sink)
        progress = []
        run = await synchronizer.run(on_progress=progress.append)

        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(self.target_tables(), ["comments", "posts", "tags", "users"])
        self.assertEqual(
            self.query("SELECT id, email, name FROM users ORDER BY id"),
            [(1, "al" + "#" * 15, "Alice"), (2, "bo" + "#" * 13, "Bob"), (3, "ca" + "#" * 15, "Carol")],
        )
        self.assertEqual(self.query("SELECT id, user_id, title FROM posts ORDER BY id"), [(1, 1, "Hello"), (2, 3, "World")])
        self.assertEqual(self.query("SELECT COUNT(*) FROM comments"), [(1,)])

        users_copy = [e for e in self.entries(synchronizer, "data_copy_completed") if e.data["table"] == "users"][0]
        self.assertEqual(users_copy.data["rows_processed"], 3)
        self.assertEqual(users_copy.data["chunks"], 2)

        dropped = self.entries(synchronizer, "table_dropped")
        self.assertEqual([entry.data["table"] for entry in dropped], ["legacy_audit"])

        for snapshot in progress:
            self.assertEqual(snapshot.processed + snapshot.pending, snapshot.total)
        self.assertEqual(run.progress, 100)
        self.assertTrue(AuditSigner("s3cret", self.sink).verify(run))

    async def test_truncate_rerun_replaces_rows(self):
        await DatabaseSynchronizer(self.config(), log_sink=self.sink).run()

        synchronizer = DatabaseSynchronizer(
            self.config(synchronize_table_schema=SynchronizeTableSchema.TRUNCATE), log_sink=self.sink
        )
        run = await synchronizer.run()

        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(self.query("SELECT COUNT(*) FROM users"), [(3,)])
        emptied = [entry.data["table"] for entry in self.entries(synchronizer, "table_emptied")]
        self.assertEqual(emptied, ["comments", "posts", "users", "tags"])
        self.assertNotIn("migrations", emptied)

    async def test_cancel_after_first_table(self):
        synchronizer = DatabaseSynchronizer(self.config(), log_sink=self.sink)

        def cancel_on_first_copy(entry):
            if entry.event_type == "data_copy_completed":
                synchronizer.cancel()

        self.sink.subscribe(cancel_on_first_copy)
        batch = await synchronizer.build_batch()
        run = await synchronizer.run()

        transfers = [job for job in batch.jobs if isinstance(job, TransferTableJob)]
        self.assertEqual([job.state for job in transfers], [JobState.SUCCEEDED, JobState.SKIPPED, JobState.SKIPPED])
        self.assertEqual(run.status, RunStatus.CANCELLED)
        self.assertIn("batch_cancelled", self.sink.events(synchronizer.run_id))
        cancelled = [entry.data.get("table") for entry in self.entries(synchronizer, "table_cancelled")]
        self.assertIn("posts", cancelled)
        self.assertIn("comments", cancelled)
        self.assertEqual(self.query("SELECT COUNT(*) FROM users"), [(3,)])
        self.assertEqual(self.query("SELECT COUNT(*) FROM posts"), [(0,)])

    async def test_unreachable_source_fails_the_run(self):
        config = self.config()
        config.source = ConnectionDescriptor(name="source", driver="sqlite", database="/nonexistent/dir/source.db")
        synchronizer = DatabaseSynchronizer(config, log_sink=self.sink)

        run = await synchronizer.run()

        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertIn("connection_failed", self.sink.events(synchronizer.run_id))

    async def test_source_read_error_while_planning_fails_the_run(self):
        count_rows = BaseConnector.get_row_count

        async def get_row_count(connector, table_name, filters=None):
            if table_name == "tags":
                raise QueryError("permission denied for table tags", category=ErrorCategory.PERMISSION_DENIED)
            return await count_rows(connector, table_name, filters)

        synchronizer = DatabaseSynchronizer(self.config(), log_sink=self.sink)
        with mock.patch.object(BaseConnector, "get_row_count", get_row_count):
            run = await synchronizer.run()

        self.assertEqual(run.status, RunStatus.FAILED)
        events = self.sink.events(synchronizer.run_id)
        self.assertIn("database_error", events)
        self.assertEqual(events[-1], "batch_failed")
        self.assertFalse(synchronizer.connections.is_open(synchronizer.config.source))
        self.assertEqual(self.target_tables(), ["legacy_audit"])

    async def test_failed_connect_releases_the_engine(self):
        connector = ConnectorFactory.get_connector(
            ConnectionDescriptor(name="missing", driver="sqlite", database="/nonexistent/dir/source.db")
        )

        with self.assertRaises(DatabaseConnectionError):
            await connector.connect()
        self.assertIsNone(connector._engine)

    async def test_last_x_parent_restricts_child_rows(self):
        config = self.config(table_anonymization_options={
            "users": TableAnonymizationOptions(
                row_selection=RowSelection(strategy=RowSelectionStrategy.LAST_X, limit=1, sort_column="id")
            ),
        })
        synchronizer = DatabaseSynchronizer(config, log_sink=self.sink)

        run = await synchronizer.run()

        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(self.query("SELECT id, name FROM users"), [(3, "Carol")])
        # only the post of the kept user, the comment belongs to user 2
        self.assertEqual(self.query("SELECT id, user_id FROM posts"), [(2, 3)])
        self.assertEqual(self.query("SELECT COUNT(*) FROM comments"), [(0,)])
        self.assertIn("fk_filters", self.sink.events(synchronizer.run_id))

    async def test_first_x_selection_copies_the_lowest_keys(self):
        config = self.config(table_anonymization_options={
            "posts": TableAnonymizationOptions(
                row_selection=RowSelection(strategy=RowSelectionStrategy.FIRST_X, limit=1)
            ),
        })
        synchronizer = DatabaseSynchronizer(config, log_sink=self.sink)

        run = await synchronizer.run()

        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(self.query("SELECT COUNT(*) FROM users"), [(3,)])
        self.assertEqual(self.query("SELECT id, title FROM posts"), [(1, "Hello")])
        self.assertEqual(self.query("SELECT COUNT(*) FROM comments"), [(0,)])

    async def test_default_concurrency_clone_matches_source_columns(self):
        synchronizer = DatabaseSynchronizer(
            self.config(max_concurrent_tasks=SyncConfig.max_concurrent_tasks), log_sink=self.sink
        )

        run = await synchronizer.run()

        self.assertEqual(run.status, RunStatus.COMPLETED)
        for table in ("users", "posts", "comments", "tags"):
            self.assertEqual(self.columns(self.target_path, table), self.columns(self.source_path, table))
        self.assertEqual(self.query("SELECT COUNT(*) FROM posts"), [(2,)])
        self.assertEqual(self.query("SELECT COUNT(*) FROM comments"), [(1,)])

    async def test_replication_continues_after_a_failing_table(self):
        with sqlite3.connect(self.target_path) as conn:
            conn.execute("CREATE VIEW posts AS SELECT 1 AS id")
        config = self.config()
        source = ConnectorFactory.get_connector(config.source)
        target = ConnectorFactory.get_connector(config.targets[0])
        for connector in (source, target):
            await connector.connect()
            self.addAsyncCleanup(connector.disconnect)

        calls = []
        result = await SchemaReplicator().replicate_database(
            source, target, visitor=lambda *args: calls.append(args)
        )

        self.assertEqual(list(result.failed), ["posts"])
        self.assertIn("comments", result.created)
        self.assertIn("tags", result.created)
        failed = [(table, level) for table, event, _, level in calls if event == "table_failed"]
        self.assertEqual(failed, [("posts", "error")])
        completed = [table for table, event, _, _ in calls if event == "table_completed"]
        self.assertIn("comments", completed)
        self.assertNotIn("posts", completed)


if __name__ == '__main__':
    unittest.main()
