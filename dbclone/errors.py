from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    PERMISSION_DENIED = "permission_denied"
    TABLE_NOT_FOUND = "table_not_found"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class CloneError(Exception):
    """dbclone 所有异常的基类"""


class ConfigurationError(CloneError, ValueError):
    pass


class DatabaseConnectionError(CloneError):
    """无法建立连接或认证失败"""

    def __init__(self, message: str, connection_name: Optional[str] = None):
        super().__init__(message)
        self.connection_name = connection_name


class QueryError(CloneError):
    """已建立的连接上执行语句失败"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        sqlstate: Optional[str] = None,
        statement: Optional[str] = None,
    ):
        super().__init__(message)
        self.category = category
        self.sqlstate = sqlstate
        self.statement = statement

    @property
    def is_transient(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT


class UnsupportedOperationError(CloneError):
    """目标方言不支持所请求的 DDL"""


class SchemaValidationError(CloneError, ValueError):
    """表结构对象不满足约束"""


class DependencyCycleError(CloneError):
    """表之间的外键形成环，无法得到插入顺序"""

    def __init__(self, message: str, tables=None):
        super().__init__(message)
        self.tables = list(tables or [])


class JobCancelledError(CloneError):
    """批次已取消，任务在分块边界处停止"""
