from typing import Optional, Tuple

from dbclone.errors import DatabaseConnectionError, ErrorCategory, QueryError

FOREIGN_KEY_PATTERNS = ("foreign key constraint", "foreign key")
PERMISSION_PATTERNS = ("access denied", "permission denied", "insufficient privileges", "not authorized")
TABLE_NOT_FOUND_PATTERNS = ("doesn't exist", "does not exist", "no such table", "invalid object name")
TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "deadlock",
    "connection lost",
    "lost connection",
    "server has gone away",
    "connection reset",
    "database is locked",
    "connection refused",
    "terminating connection",
)

FOREIGN_KEY_CODES = {"23503", "23000", "1451", "1452", "547"}
PERMISSION_CODES = {"42501", "42000", "28000", "1044", "1045", "1142", "1143", "229"}
TABLE_NOT_FOUND_CODES = {"42S02", "42P01", "1146", "208"}
TRANSIENT_CODES = {
    "40001", "40P01", "57P01", "HYT00", "HYT01", "08S01", "08001", "08003", "08006",
    "1205", "1213", "2006", "2013",
}


def extract_error_details(error: BaseException) -> Tuple[str, Optional[str]]:
    """
    从异常中提取错误信息和 SQLSTATE/驱动错误码

    SQLAlchemy 将 DBAPI 异常保存在 ``orig`` 中；psycopg2 的 SQLSTATE 在 ``pgcode``，
    pymysql 和 pyodbc 的错误码在 ``args[0]``
    """
    if isinstance(error, QueryError) and error.sqlstate:
        return str(error), error.sqlstate

    original = getattr(error, "orig", None) or error
    code = getattr(original, "pgcode", None) or getattr(original, "sqlstate", None)
    if code is None:
        args = getattr(original, "args", ())
        if args and isinstance(args[0], (int, str)) and len(args) > 1:
            code = str(args[0])
    return str(error), (str(code) if code is not None else None)


class ErrorClassifier:
    """将驱动原始错误归类为 ErrorCategory"""

    def classify(self, error: BaseException) -> ErrorCategory:
        if isinstance(error, QueryError) and error.category != ErrorCategory.UNKNOWN:
            return error.category
        if isinstance(error, DatabaseConnectionError):
            return ErrorCategory.TRANSIENT

        message, code = extract_error_details(error)
        message = message.lower()

        if self.is_foreign_key_error(message, code):
            return ErrorCategory.FOREIGN_KEY_VIOLATION
        if self.is_permission_error(message, code):
            return ErrorCategory.PERMISSION_DENIED
        if self.is_table_not_found_error(message, code):
            return ErrorCategory.TABLE_NOT_FOUND
        if self.is_temporary_error(message, code):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.UNKNOWN

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error) == ErrorCategory.TRANSIENT

    @staticmethod
    def is_foreign_key_error(message: str, code: Optional[str]) -> bool:
        return any(p in message for p in FOREIGN_KEY_PATTERNS) or code in FOREIGN_KEY_CODES

    @staticmethod
    def is_permission_error(message: str, code: Optional[str]) -> bool:
        return any(p in message for p in PERMISSION_PATTERNS) or code in PERMISSION_CODES

    @staticmethod
    def is_table_not_found_error(message: str, code: Optional[str]) -> bool:
        return any(p in message for p in TABLE_NOT_FOUND_PATTERNS) or code in TABLE_NOT_FOUND_CODES

    @staticmethod
    def is_temporary_error(message: str, code: Optional[str]) -> bool:
        if code and code.startswith("08"):
            return True
        return any(p in message for p in TRANSIENT_PATTERNS) or code in TRANSIENT_CODES


error_classifier = ErrorClassifier()
