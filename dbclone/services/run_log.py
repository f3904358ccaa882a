import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"
    DEBUG = "debug"


class RunStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class LogEntry:
    run_id: str
    level: LogLevel
    event_type: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "level": self.level.value,
            "message": self.message,
            "data": self.data,
            "created_at": self.created_at,
        }


@dataclass
class Run:
    id: str
    status: RunStatus = RunStatus.QUEUED
    progress: int = 0
    current_step: int = 0
    total_steps: int = 0
    source: Optional[str] = None
    targets: List[str] = field(default_factory=list)
    config_snapshot: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    audit_hash: Optional[str] = None
    audit_signature: Optional[str] = None


class RunLogSink(ABC):
    """只追加的运行事件存储"""

    @abstractmethod
    def append(self, entry: LogEntry) -> None:
        pass

    @abstractmethod
    def entries(self, run_id: str) -> List[LogEntry]:
        pass


class InMemoryRunLog(RunLogSink):
    def __init__(self):
        self._entries: List[LogEntry] = []
        self._listeners: List[Callable[[LogEntry], None]] = []

    def subscribe(self, listener: Callable[[LogEntry], None]) -> None:
        """之后每追加一条日志都会同步调用 ``listener``"""
        self._listeners.append(listener)

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)
        for listener in list(self._listeners):
            listener(entry)

    def entries(self, run_id: str) -> List[LogEntry]:
        return [entry for entry in self._entries if entry.run_id == run_id]

    def events(self, run_id: str) -> List[str]:
        return [entry.event_type for entry in self.entries(run_id)]


class RunRepository(ABC):
    """运行状态存储"""

    @abstractmethod
    def get(self, run_id: str) -> Optional[Run]:
        pass

    @abstractmethod
    def save(self, run: Run) -> None:
        pass

    def update_status(
        self,
        run_id: str,
        status: RunStatus,
        progress: Optional[int] = None,
        current_step: Optional[int] = None,
        total_steps: Optional[int] = None,
    ) -> Run:
        run = self.get(run_id) or Run(id=run_id)
        run.status = status
        if progress is not None:
            run.progress = progress
        if current_step is not None:
            run.current_step = current_step
        if total_steps is not None:
            run.total_steps = total_steps
        if status == RunStatus.PROCESSING and run.started_at is None:
            run.started_at = time.time()
        if status.is_terminal:
            run.finished_at = time.time()
        self.save(run)
        return run


class InMemoryRunRepository(RunRepository):
    def __init__(self):
        self._runs: Dict[str, Run] = {}

    def get(self, run_id: str) -> Optional[Run]:
        return self._runs.get(run_id)

    def save(self, run: Run) -> None:
        self._runs[run.id] = run


class RunLogger:
    """
    将运行事件写入存储，并同时输出到 loguru

    Args:
        run_id: 事件所属的运行
        sink: 事件存储，默认使用 InMemoryRunLog
    """

    def __init__(self, run_id: str, sink: Optional[RunLogSink] = None):
        self.run_id = run_id
        self.sink = sink or InMemoryRunLog()

    def log(self, level: LogLevel, event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> LogEntry:
        level = LogLevel(level)
        entry = LogEntry(run_id=self.run_id, level=level, event_type=event_type, message=message, data=dict(data or {}))

        table = entry.data.get("table")
        prefix = f"[Table: {table}] " if table else ""
        logger.log(level.value.upper(), f"{prefix}[{event_type}] {message}")

        self.sink.append(entry)
        return entry

    def info(self, event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self.log(LogLevel.INFO, event_type, message, data)

    def success(self, event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self.log(LogLevel.SUCCESS, event_type, message, data)

    def warning(self, event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self.log(LogLevel.WARNING, event_type, message, data)

    def error(self, event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self.log(LogLevel.ERROR, event_type, message, data)

    def debug(self, event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self.log(LogLevel.DEBUG, event_type, message, data)
