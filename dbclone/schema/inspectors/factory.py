from typing import Dict, Type

from dbclone.errors import ConfigurationError
from dbclone.models.config import DriverKind
from dbclone.schema.inspectors.base import BaseSchemaInspector
from dbclone.schema.inspectors.mysql import MySQLSchemaInspector
from dbclone.schema.inspectors.postgresql import PostgreSQLSchemaInspector
from dbclone.schema.inspectors.sqlserver import SQLServerSchemaInspector
from dbclone.schema.inspectors.sqlite import SQLiteSchemaInspector


class SchemaInspectorFactory:
    _inspectors: Dict[DriverKind, Type[BaseSchemaInspector]] = {
        DriverKind.MYSQL: MySQLSchemaInspector,
        DriverKind.MARIADB: MySQLSchemaInspector,
        DriverKind.POSTGRES: PostgreSQLSchemaInspector,
        DriverKind.SQLSERVER: SQLServerSchemaInspector,
        DriverKind.SQLITE: SQLiteSchemaInspector,
    }

    @classmethod
    def create(cls, driver) -> BaseSchemaInspector:
        inspector_class = cls._inspectors.get(DriverKind.parse(driver))
        if inspector_class is None:
            raise ConfigurationError(f"No schema inspector for database type: {driver}")
        return inspector_class()

    @classmethod
    def for_connection(cls, connection) -> BaseSchemaInspector:
        return cls.create(connection.driver)
