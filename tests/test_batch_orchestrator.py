import asyncio
import unittest

from dbclone.db.connection import ConnectionManager
from dbclone.errors import ErrorCategory, QueryError
from dbclone.models.config import ConnectionDescriptor, SynchronizationOptions
from dbclone.services.run_log import InMemoryRunLog, InMemoryRunRepository, Run, RunLogger, RunStatus
from dbclone.sync.batch import Batch, BatchHandle, BatchState, JobState
from dbclone.sync.jobs import FinalizeJob, JobContext, TransferJob
from dbclone.sync.orchestrator import BatchOrchestrator

SOURCE = ConnectionDescriptor(name="source", driver="sqlite", database=":memory:")
TARGET = ConnectionDescriptor(name="target", driver="sqlite", database=":memory:")


class ScriptedJob(TransferJob):
    """Runs a list of outcomes, one per attempt: None succeeds, an exception is raised"""

    def __init__(self, label, outcomes=(None,), tries=1, requires_success=True, delay=0, tracker=None):
        super().__init__(SOURCE, TARGET, "run-1")
        self.label = label
        self.outcomes = list(outcomes)
        self.tries = tries
        self.requires_success = requires_success
        self.delay = delay
        self.tracker = tracker

    @property
    def name(self):
        return self.label

    async def handle(self, context):
        if self.tracker is not None:
            self.tracker.enter(self.label)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else None
            if outcome is not None:
                raise outcome
        finally:
            if self.tracker is not None:
                self.tracker.leave()


class Tracker:
    def __init__(self):
        self.running = 0
        self.peak = 0
        self.order = []

    def enter(self, label):
        self.running += 1
        self.peak = max(self.peak, self.running)
        self.order.append(label)

    def leave(self):
        self.running -= 1


class TestBatchOrchestrator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.sink = InMemoryRunLog()
        self.repository = InMemoryRunRepository()
        self.repository.save(Run(id="run-1"))
        self.batch = Batch("run-1")
        self.progress = []

    def orchestrator(self, max_concurrent_tasks=5, job_timeout=5):
        context = JobContext(
            run_id="run-1",
            options=SynchronizationOptions(),
            connections=ConnectionManager("run-1"),
            run_logger=RunLogger("run-1", self.sink),
            run_repository=self.repository,
            replicator=None,
            engine=None,
            batch=BatchHandle(self.batch),
        )
        self.batch.set_finalizer(FinalizeJob(SOURCE, [TARGET], "run-1"))
        return BatchOrchestrator(
            self.batch, context, max_concurrent_tasks=max_concurrent_tasks, job_backoff=0,
            job_timeout=job_timeout, on_progress=self.progress.append,
        )

    async def test_dependencies_run_first_and_progress_adds_up(self):
        tracker = Tracker()
        first = self.batch.add(ScriptedJob("first", tracker=tracker))
        second = self.batch.add(ScriptedJob("second", tracker=tracker), depends_on=[first])
        self.batch.add(ScriptedJob("third", tracker=tracker), depends_on=[first, second])

        state = await self.orchestrator().run()

        self.assertEqual(state, BatchState.COMPLETED)
        self.assertEqual(tracker.order, ["first", "second", "third"])
        self.assertEqual(len(self.progress), 3)
        for progress in self.progress:
            self.assertEqual(progress.processed + progress.pending, progress.total)
            self.assertEqual(progress.total, 3)
        self.assertEqual(self.progress[-1].processed, 3)

        run = self.repository.get("run-1")
        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(run.progress, 100)
        self.assertIsNotNone(run.started_at)
        self.assertIsNotNone(run.finished_at)
        self.assertEqual(self.sink.events("run-1")[0], "batch_started")
        self.assertEqual(self.sink.events("run-1")[-1], "batch_completed")

    async def test_failed_prerequisite_skips_dependents(self):
        failing = self.batch.add(ScriptedJob("prepare", outcomes=[QueryError("boom")]))
        dependent = self.batch.add(ScriptedJob("transfer"), depends_on=[failing])
        cleanup = self.batch.add(ScriptedJob("cleanup", requires_success=False), depends_on=[failing, dependent])

        state = await self.orchestrator().run()

        self.assertEqual(state, BatchState.FAILED)
        self.assertEqual(failing.state, JobState.FAILED)
        self.assertEqual(dependent.state, JobState.SKIPPED)
        self.assertEqual(dependent.skip_reason, "dependency_failed")
        self.assertEqual(cleanup.state, JobState.SUCCEEDED)
        self.assertEqual(self.repository.get("run-1").status, RunStatus.FAILED)
        self.assertIn("database_error", self.sink.events("run-1"))
        self.assertIn("batch_failed", self.sink.events("run-1"))

    async def test_failing_table_does_not_stop_its_siblings(self):
        prepare = self.batch.add(ScriptedJob("prepare"))
        denied = QueryError("permission denied", category=ErrorCategory.PERMISSION_DENIED)
        users = self.batch.add(ScriptedJob("users", outcomes=[denied]), depends_on=[prepare])
        posts = self.batch.add(ScriptedJob("posts"), depends_on=[prepare])
        tags = self.batch.add(ScriptedJob("tags"), depends_on=[prepare])

        state = await self.orchestrator(max_concurrent_tasks=1).run()

        self.assertEqual(state, BatchState.FAILED)
        self.assertEqual(users.state, JobState.FAILED)
        self.assertEqual(posts.state, JobState.SUCCEEDED)
        self.assertEqual(tags.state, JobState.SUCCEEDED)
        self.assertEqual(self.progress[-1].processed, 4)
        self.assertEqual(self.progress[-1].failed, 1)
        self.assertEqual(self.repository.get("run-1").status, RunStatus.FAILED)
        self.assertEqual(self.sink.events("run-1")[-1], "batch_failed")

    async def test_transient_errors_are_retried(self):
        transient = QueryError("deadlock", category=ErrorCategory.TRANSIENT)
        job = self.batch.add(ScriptedJob("flaky", outcomes=[transient, None], tries=2))

        await self.orchestrator().run()

        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertEqual(job.attempts, 2)

    async def test_non_transient_errors_are_not_retried(self):
        error = QueryError("denied", category=ErrorCategory.PERMISSION_DENIED)
        job = self.batch.add(ScriptedJob("denied", outcomes=[error, None], tries=2))

        await self.orchestrator().run()

        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.attempts, 1)

    async def test_retries_are_bounded_by_tries(self):
        transient = QueryError("deadlock", category=ErrorCategory.TRANSIENT)
        job = self.batch.add(ScriptedJob("flaky", outcomes=[transient, transient, None], tries=2))

        await self.orchestrator().run()

        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.attempts, 2)

    async def test_timeout_fails_the_job(self):
        job = self.batch.add(ScriptedJob("slow", delay=1))

        await self.orchestrator(job_timeout=0.05).run()

        self.assertEqual(job.state, JobState.FAILED)
        self.assertIn("timed out", job.error)

    async def test_concurrency_is_bounded(self):
        tracker = Tracker()
        for idx in range(6):
            self.batch.add(ScriptedJob(f"job{idx}", delay=0.01, tracker=tracker))

        await self.orchestrator(max_concurrent_tasks=2).run()

        self.assertEqual(tracker.peak, 2)
        self.assertEqual(len(tracker.order), 6)

    async def test_cancelled_batch_skips_jobs(self):
        jobs = [self.batch.add(ScriptedJob(f"job{idx}")) for idx in range(2)]
        self.batch.cancel()

        state = await self.orchestrator().run()

        self.assertEqual(state, BatchState.CANCELLED)
        self.assertTrue(all(job.state == JobState.SKIPPED for job in jobs))
        self.assertEqual(self.sink.events("run-1").count("table_cancelled"), 2)
        self.assertIn("batch_cancelled", self.sink.events("run-1"))
        self.assertEqual(self.repository.get("run-1").status, RunStatus.CANCELLED)

    async def test_cancellation_after_failure_is_quiet(self):
        self.batch.add(ScriptedJob("broken", outcomes=[QueryError("boom")]))
        self.batch.record_failure()
        self.batch.cancel()

        await self.orchestrator().run()

        self.assertNotIn("table_cancelled", self.sink.events("run-1"))
        self.assertEqual(self.repository.get("run-1").status, RunStatus.CANCELLED)


class TestBatch(unittest.TestCase):
    def test_dependency_must_be_added_first(self):
        batch = Batch("run-1")
        with self.assertRaises(ValueError):
            batch.add(ScriptedJob("child"), depends_on=[ScriptedJob("parent")])

    def test_finalizer_is_not_counted(self):
        batch = Batch("run-1")
        batch.add(ScriptedJob("only"))
        batch.set_finalizer(FinalizeJob(SOURCE, [TARGET], "run-1"))
        self.assertEqual(batch.total_jobs, 1)
        self.assertEqual(batch.progress().pending, 1)


if __name__ == '__main__':
    unittest.main()
