import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


class BatchState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BatchProgress:
    processed: int
    pending: int
    failed: int
    total: int
    finished: bool
    cancelled: bool

    @property
    def percent(self) -> int:
        if not self.total:
            return 100 if self.finished else 0
        return int(self.processed * 100 / self.total)


class Batch:
    """
    一次运行的所有任务及其依赖关系

    收尾任务属于批次，但不计入任何统计
    """

    def __init__(self, run_id: str):
        self.id = uuid.uuid4().hex
        self.run_id = run_id
        self.state = BatchState.CREATED
        self.cancelled = False
        self.failed_jobs = 0
        self.finished = False
        self.finalizer = None
        self._jobs: Dict[str, object] = {}
        self._dependencies: Dict[str, List[str]] = {}

    def add(self, job, depends_on: Iterable = ()):
        for dependency in depends_on:
            if dependency.id not in self._jobs:
                raise ValueError(f"Job {dependency.name} must be added before {job.name}")
        job.batch_id = self.id
        self._jobs[job.id] = job
        self._dependencies[job.id] = [dependency.id for dependency in depends_on]
        return job

    def set_finalizer(self, job):
        job.batch_id = self.id
        self.finalizer = job
        return job

    @property
    def jobs(self) -> List:
        return list(self._jobs.values())

    def dependencies_of(self, job) -> List:
        return [self._jobs[job_id] for job_id in self._dependencies.get(job.id, [])]

    def ready_jobs(self) -> List:
        """前置任务都已结束的待执行任务"""
        return [
            job for job in self._jobs.values()
            if job.state == JobState.PENDING
            and all(dependency.state.is_terminal for dependency in self.dependencies_of(job))
        ]

    def cancel(self) -> None:
        self.cancelled = True

    def record_failure(self) -> None:
        self.failed_jobs += 1

    @property
    def has_failures(self) -> bool:
        return self.failed_jobs > 0

    @property
    def total_jobs(self) -> int:
        return len(self._jobs)

    @property
    def processed_jobs(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state.is_terminal)

    @property
    def pending_jobs(self) -> int:
        return self.total_jobs - self.processed_jobs

    def progress(self) -> BatchProgress:
        processed = self.processed_jobs
        return BatchProgress(
            processed=processed,
            pending=self.total_jobs - processed,
            failed=self.failed_jobs,
            total=self.total_jobs,
            finished=self.finished,
            cancelled=self.cancelled,
        )

    def terminal_state(self) -> BatchState:
        if self.cancelled:
            return BatchState.CANCELLED
        if self.has_failures:
            return BatchState.FAILED
        return BatchState.COMPLETED


class BatchHandle:
    """运行中的任务可以访问的批次信息"""

    def __init__(self, batch: Batch):
        self._batch = batch

    def is_cancelled(self) -> bool:
        return self._batch.cancelled

    def has_failures(self) -> bool:
        return self._batch.has_failures

    def progress(self) -> BatchProgress:
        return self._batch.progress()

    @property
    def batch_id(self) -> Optional[str]:
        return self._batch.id
