from sqlalchemy.engine import URL

from dbclone.connectors.base import BaseConnector


class MySQLConnector(BaseConnector):
    drivername = "mysql+pymysql"
    disable_foreign_keys_sql = "SET FOREIGN_KEY_CHECKS=0"
    enable_foreign_keys_sql = "SET FOREIGN_KEY_CHECKS=1"

    def build_url(self) -> URL:
        return URL.create(
            self.drivername,
            username=self.config.username,
            password=self.config.password,
            host=self.config.host or "localhost",
            port=self.config.port or 3306,
            database=self.config.database,
            query={"charset": self.config.param("charset", "utf8mb4")},
        )

    def engine_options(self):
        options = super().engine_options()
        options["pool_recycle"] = 3600
        return options

    def paginate(self, sql: str, offset: int, limit: int) -> str:
        return f"{sql} LIMIT {int(limit)} OFFSET {int(offset)}"


class MariaDBConnector(MySQLConnector):
    drivername = "mariadb+pymysql"
