from sqlalchemy.engine import URL

from dbclone.connectors.base import BaseConnector


class PostgreSQLConnector(BaseConnector):
    # 仅对声明为 DEFERRABLE 的约束生效，且只在当前事务内有效
    disable_foreign_keys_sql = "SET CONSTRAINTS ALL DEFERRED"
    enable_foreign_keys_sql = "SET CONSTRAINTS ALL IMMEDIATE"

    @property
    def schema(self) -> str:
        return self.config.param("schema", "public")

    def build_url(self) -> URL:
        query = {}
        # 模式搜索路径
        if self.schema != "public":
            query["options"] = f"-csearch_path={self.schema}"
        if self.config.param("sslmode"):
            query["sslmode"] = self.config.param("sslmode")
        return URL.create(
            "postgresql+psycopg2",
            username=self.config.username,
            password=self.config.password,
            host=self.config.host or "localhost",
            port=self.config.port or 5432,
            database=self.config.database,
            query=query,
        )

    def paginate(self, sql: str, offset: int, limit: int) -> str:
        return f"{sql} LIMIT {int(limit)} OFFSET {int(offset)}"

    def _before_insert(self, conn, table_name: str) -> None:
        # 可延迟约束在提交时统一检查
        conn.exec_driver_sql(self.disable_foreign_keys_sql)
