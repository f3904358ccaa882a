import asyncio
import time
from typing import Callable, Optional, Set

from loguru import logger

from dbclone.errors import JobCancelledError
from dbclone.services.error_classifier import error_classifier
from dbclone.services.run_log import RunRepository, RunStatus
from dbclone.sync.batch import Batch, BatchProgress, BatchState, JobState
from dbclone.sync.jobs import JobContext, TransferJob

ProgressCallback = Callable[[BatchProgress], None]


class BatchOrchestrator:
    """
    使用有并发上限的 asyncio 任务池执行批次中的任务

    任务的前置任务全部结束后才会被调度，
    最多同时运行 ``max_concurrent_tasks`` 个任务；每完成一个任务
    就重新计算可执行的任务并补充空闲位置。
    所有任务结束后执行收尾任务
    """

    def __init__(
        self,
        batch: Batch,
        context: JobContext,
        max_concurrent_tasks: int = 5,
        job_backoff: float = 30,
        job_timeout: float = 3600,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.batch = batch
        self.context = context
        self.max_concurrent_tasks = max(1, max_concurrent_tasks)
        self.job_backoff = job_backoff
        self.job_timeout = job_timeout
        self.on_progress = on_progress

    @property
    def run_repository(self) -> RunRepository:
        return self.context.run_repository

    async def run(self) -> BatchState:
        run_logger = self.context.run_logger
        self.run_repository.update_status(self.batch.run_id, RunStatus.QUEUED, 0, 0, self.batch.total_jobs)
        self.batch.state = BatchState.RUNNING
        run_logger.info(
            "batch_started",
            f"Batch {self.batch.id} started with {self.batch.total_jobs} jobs",
            {"batch_id": self.batch.id, "total": self.batch.total_jobs},
        )
        start_time = time.time()

        active_tasks: Set[asyncio.Task] = set()
        first_dispatch = True
        while True:
            for job in self.batch.ready_jobs():
                if len(active_tasks) >= self.max_concurrent_tasks:
                    break
                if first_dispatch:
                    self._update_run(RunStatus.PROCESSING)
                    first_dispatch = False
                job.state = JobState.RUNNING
                active_tasks.add(asyncio.create_task(self._process(job), name=job.name))

            if not active_tasks:
                break

            done, active_tasks = await asyncio.wait(active_tasks, return_when=asyncio.FIRST_COMPLETED)
            for completed_task in done:
                # 结果由 _process 记录在任务上
                if completed_task.exception() is not None:
                    logger.error(f"Task {completed_task.get_name()} crashed: {completed_task.exception()}")

        self.batch.finished = True
        self.batch.state = self.batch.terminal_state()
        logger.info(f"Batch {self.batch.id} finished as {self.batch.state.value} in {time.time() - start_time:.2f}s")

        if self.batch.finalizer is not None:
            await self._run_finalizer(self.batch.finalizer)
        return self.batch.state

    async def _process(self, job: TransferJob) -> None:
        try:
            if self.batch.cancelled:
                self._skip_cancelled(job)
                return

            failed = [
                dependency for dependency in self.batch.dependencies_of(job)
                if dependency.state != JobState.SUCCEEDED
            ]
            if failed and job.requires_success:
                self._skip(job, "dependency_failed")
                logger.warning(f"Skipping {job.name}: prerequisite {failed[0].name} did not succeed")
                return

            await self._attempt(job)
        except Exception as e:
            job.state = JobState.FAILED
            job.error = str(e)
            self.batch.record_failure()
            logger.exception(f"Job {job.name} crashed")
        finally:
            self._report_progress()

    async def _attempt(self, job: TransferJob) -> None:
        while True:
            job.attempts += 1
            try:
                await asyncio.wait_for(job.run(self.context), timeout=self.job_timeout)
                job.state = JobState.SUCCEEDED
                return
            except JobCancelledError as e:
                logger.warning(f"Job {job.name} stopped: {str(e)}")
                self._skip_cancelled(job)
                return
            except asyncio.TimeoutError:
                self._fail(job, f"timed out after {self.job_timeout}s")
                return
            except Exception as e:
                if error_classifier.is_retryable(e) and job.attempts < job.tries and not self.batch.cancelled:
                    logger.warning(
                        f"Job {job.name} failed: {str(e)}, retry {job.attempts + 1}/{job.tries} in {self.job_backoff}s"
                    )
                    await asyncio.sleep(self.job_backoff)
                    continue
                self._fail(job, str(e))
                return

    def _skip_cancelled(self, job: TransferJob) -> None:
        self._skip(job, "cancelled")
        if self.batch.has_failures:
            logger.debug(f"Batch {self.batch.id} cancelled after a failure, skipping {job.name}")
            return
        self.context.run_logger.warning(
            "table_cancelled", f"{job.name} skipped, batch was cancelled", job.log_data()
        )

    @staticmethod
    def _skip(job: TransferJob, reason: str) -> None:
        job.state = JobState.SKIPPED
        job.skip_reason = reason

    def _fail(self, job: TransferJob, error: str) -> None:
        job.state = JobState.FAILED
        job.error = error
        self.batch.record_failure()
        self.context.run_logger.error(
            "job_failed", f"{job.name} failed after {job.attempts} attempts: {error}", job.log_data(attempts=job.attempts)
        )

    def _report_progress(self) -> None:
        progress = self.batch.progress()
        if self.on_progress is not None:
            self.on_progress(progress)
        self._update_run(RunStatus.PROCESSING, progress)

    def _update_run(self, status: RunStatus, progress: Optional[BatchProgress] = None) -> None:
        progress = progress or self.batch.progress()
        self.run_repository.update_status(
            self.batch.run_id, status, progress.percent, progress.processed, progress.total
        )

    async def _run_finalizer(self, finalizer: TransferJob) -> None:
        finalizer.state = JobState.RUNNING
        finalizer.attempts += 1
        try:
            await finalizer.run(self.context)
            finalizer.state = JobState.SUCCEEDED
        except Exception as e:
            finalizer.state = JobState.FAILED
            finalizer.error = str(e)
            logger.error(f"Finalizer of batch {self.batch.id} failed: {str(e)}")
