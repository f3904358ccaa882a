from sqlalchemy import text
from sqlalchemy.engine import URL

from dbclone.connectors.base import BaseConnector


class SQLServerConnector(BaseConnector):
    disable_foreign_keys_sql = 'EXEC sp_msforeachtable "ALTER TABLE ? NOCHECK CONSTRAINT all"'
    enable_foreign_keys_sql = 'EXEC sp_msforeachtable "ALTER TABLE ? WITH CHECK CHECK CONSTRAINT all"'
    session_scoped_foreign_keys = False

    def build_url(self) -> URL:
        driver = self.config.param("odbc_driver", "ODBC Driver 17 for SQL Server")
        trust_cert = "yes" if self.config.param("trust_server_certificate", False) else "no"
        return URL.create(
            "mssql+pyodbc",
            username=self.config.username,
            password=self.config.password,
            host=self.config.host or "localhost",
            port=self.config.port or 1433,
            database=self.config.database,
            query={"driver": driver, "TrustServerCertificate": trust_cert},
        )

    def engine_options(self):
        options = super().engine_options()
        options["fast_executemany"] = True
        return options

    def paginate(self, sql: str, offset: int, limit: int) -> str:
        return f"{sql} OFFSET {int(offset)} ROWS FETCH NEXT {int(limit)} ROWS ONLY"

    def _has_identity(self, conn, table_name: str) -> bool:
        result = conn.execute(
            text("SELECT OBJECTPROPERTY(OBJECT_ID(:table), 'TableHasIdentity')"),
            {"table": table_name},
        )
        return bool(result.scalar())

    def _before_insert(self, conn, table_name: str) -> None:
        # 未按表开启时，IDENTITY 列不接受显式值
        if self._has_identity(conn, table_name):
            conn.exec_driver_sql(f"SET IDENTITY_INSERT {self.quote(table_name)} ON")

    def _after_insert(self, conn, table_name: str) -> None:
        if self._has_identity(conn, table_name):
            conn.exec_driver_sql(f"SET IDENTITY_INSERT {self.quote(table_name)} OFF")
