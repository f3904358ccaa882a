from typing import Dict, Type

from dbclone.errors import ConfigurationError
from dbclone.models.config import DriverKind
from dbclone.schema.builders.base import BaseSchemaBuilder
from dbclone.schema.builders.mysql import MySQLSchemaBuilder
from dbclone.schema.builders.postgresql import PostgreSQLSchemaBuilder
from dbclone.schema.builders.sqlserver import SQLServerSchemaBuilder
from dbclone.schema.builders.sqlite import SQLiteSchemaBuilder

_builders: Dict[DriverKind, Type[BaseSchemaBuilder]] = {
    DriverKind.MYSQL: MySQLSchemaBuilder,
    DriverKind.MARIADB: MySQLSchemaBuilder,
    DriverKind.POSTGRES: PostgreSQLSchemaBuilder,
    DriverKind.SQLSERVER: SQLServerSchemaBuilder,
    DriverKind.SQLITE: SQLiteSchemaBuilder,
}


def get_schema_builder(driver) -> BaseSchemaBuilder:
    """根据驱动名称或 DriverKind 获取 DDL 构建器"""
    builder_class = _builders.get(DriverKind.parse(driver))
    if builder_class is None:
        raise ConfigurationError(f"No schema builder for database type: {driver}")
    return builder_class()
