from sqlalchemy.engine import URL
from sqlalchemy.pool import StaticPool

from dbclone.connectors.base import BaseConnector


class SQLiteConnector(BaseConnector):
    disable_foreign_keys_sql = "PRAGMA foreign_keys = OFF"
    enable_foreign_keys_sql = "PRAGMA foreign_keys = ON"

    @property
    def in_memory(self) -> bool:
        return self.config.database in ("", ":memory:")

    def build_url(self) -> URL:
        return URL.create("sqlite", database=None if self.in_memory else self.config.database)

    def engine_options(self):
        # 连接会在线程池中使用
        options = {"connect_args": {"check_same_thread": False}}
        if self.in_memory:
            options["poolclass"] = StaticPool
        return options

    def paginate(self, sql: str, offset: int, limit: int) -> str:
        return f"{sql} LIMIT {int(limit)} OFFSET {int(offset)}"
