from typing import Dict, Optional, Type

from dbclone.connectors.base import BaseConnector
from dbclone.connectors.mysql import MySQLConnector, MariaDBConnector
from dbclone.connectors.sqlserver import SQLServerConnector
from dbclone.connectors.postgresql import PostgreSQLConnector
from dbclone.connectors.sqlite import SQLiteConnector
from dbclone.errors import ConfigurationError
from dbclone.models.config import ConnectionDescriptor, DriverKind


class ConnectorFactory:
    _connectors: Dict[DriverKind, Type[BaseConnector]] = {
        DriverKind.MYSQL: MySQLConnector,
        DriverKind.MARIADB: MariaDBConnector,
        DriverKind.SQLSERVER: SQLServerConnector,
        DriverKind.POSTGRES: PostgreSQLConnector,
        DriverKind.SQLITE: SQLiteConnector,
    }

    @classmethod
    def get_connector(cls, config: ConnectionDescriptor, connection_name: Optional[str] = None) -> BaseConnector:
        """
        根据连接配置创建未连接的连接器

        Raises:
            ConfigurationError: 该驱动没有注册连接器
        """
        connector_class = cls._connectors.get(config.driver)
        if not connector_class:
            raise ConfigurationError(f"Unsupported database type: {config.driver}")

        return connector_class(config, connection_name)

    @classmethod
    def register_connector(cls, driver, connector_class: Type[BaseConnector]) -> None:
        cls._connectors[DriverKind.parse(driver)] = connector_class
