import re
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from loguru import logger

from dbclone.models.schema import (
    ColumnSchema, DatabaseSchema, ForeignKeySchema, IndexSchema, TableSchema,
    INTEGER_TYPES, DECIMAL_TYPES, LOGICAL_TYPES,
)

# 多个方言共用的原生类型名
COMMON_TYPE_MAP = {
    "integer": "int",
    "int2": "smallint",
    "int4": "int",
    "int8": "bigint",
    "numeric": "decimal",
    "money": "decimal",
    "smallmoney": "decimal",
    "real": "float",
    "float4": "float",
    "float8": "double",
    "double precision": "double",
    "bool": "boolean",
    "bit": "boolean",
    "character varying": "varchar",
    "character": "char",
    "nvarchar": "varchar",
    "nchar": "char",
    "ntext": "text",
    "clob": "text",
    "bytea": "blob",
    "image": "blob",
    "datetime2": "datetime",
    "smalldatetime": "datetime",
    "datetimeoffset": "timestamptz",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "time without time zone": "time",
    "time with time zone": "time",
    "jsonb": "json",
    "uniqueidentifier": "uuid",
    "serial": "int",
    "bigserial": "bigint",
    "smallserial": "smallint",
}

NOW_EXPRESSIONS = {"now()", "getdate()", "current_timestamp()", "sysdatetime()", "localtimestamp"}
NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


class BaseSchemaInspector(ABC):
    """
    读取数据库结构，转换为与方言无关的表结构模型

    每个方法都接收要检查的连接，
    同一个检查器实例可以服务该方言的任意连接
    """

    # 需要保留长度的逻辑类型，其余类型长度由类型本身决定
    length_types = frozenset({"char", "varchar", "binary", "varbinary", "decimal"})

    @abstractmethod
    async def get_table_names(self, connection) -> List[str]:
        pass

    @abstractmethod
    async def get_columns(self, connection, table_name: str) -> List[ColumnSchema]:
        pass

    @abstractmethod
    async def get_indexes(self, connection, table_name: str) -> List[IndexSchema]:
        pass

    @abstractmethod
    async def get_foreign_keys(self, connection, table_name: str) -> List[ForeignKeySchema]:
        pass

    @abstractmethod
    async def get_database_metadata(self, connection) -> Dict[str, Any]:
        pass

    async def get_table_metadata(self, connection, table_name: str) -> Dict[str, Any]:
        return {}

    async def get_table_schema(self, connection, table_name: str) -> TableSchema:
        return TableSchema(
            name=table_name,
            columns=await self.get_columns(connection, table_name),
            indexes=await self.get_indexes(connection, table_name),
            foreign_keys=await self.get_foreign_keys(connection, table_name),
            metadata=await self.get_table_metadata(connection, table_name),
        )

    async def get_database_schema(self, connection, database_name: Optional[str] = None) -> DatabaseSchema:
        tables = {}
        for table_name in await self.get_table_names(connection):
            tables[table_name] = await self.get_table_schema(connection, table_name)

        metadata = await self.get_database_metadata(connection)
        metadata["database"] = database_name or connection.config.database
        logger.debug(f"Inspected {len(tables)} tables on {connection.config.name}")
        return DatabaseSchema(tables=tables, metadata=metadata)

    async def table_exists(self, connection, table_name: str) -> bool:
        return table_name in await self.get_table_names(connection)

    def normalize_type(self, native_type: str) -> str:
        """将原生类型名映射为逻辑类型"""
        name = re.sub(r"\(.*\)", "", (native_type or "").lower()).replace("unsigned", "").strip()
        name = COMMON_TYPE_MAP.get(name, name) or "text"
        if name not in LOGICAL_TYPES:
            logger.debug(f"Unknown column type {native_type}, passing it through")
        return name

    def strip_default(self, value: str) -> str:
        return value

    def parse_default(self, raw: Any, logical_type: str) -> Any:
        if raw is None:
            return None
        value = self.strip_default(str(raw).strip())
        if value.upper() == "NULL":
            return None
        if value.lower() in NOW_EXPRESSIONS:
            return "CURRENT_TIMESTAMP"
        if len(value) >= 2 and value[0] == value[-1] == "'":
            return value[1:-1].replace("''", "'")
        if logical_type == "boolean" and value.lower() in ("true", "false", "1", "0"):
            return value.lower() in ("true", "1")
        if logical_type in INTEGER_TYPES and NUMBER.match(value) and "." not in value:
            return int(value)
        if logical_type in DECIMAL_TYPES and NUMBER.match(value):
            try:
                return Decimal(value)
            except InvalidOperation:
                return value
        return value

    def build_column(
        self,
        name: str,
        native_type: str,
        nullable: bool,
        default: Any = None,
        length: Optional[int] = None,
        scale: Optional[int] = None,
        unsigned: bool = False,
        auto_increment: bool = False,
        comment: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ColumnSchema:
        logical_type = self.normalize_type(native_type)
        if logical_type not in self.length_types or length is None:
            length, scale = None, None
        return ColumnSchema(
            name=name,
            type=logical_type,
            nullable=nullable,
            default=None if auto_increment else self.parse_default(default, logical_type),
            length=length,
            scale=scale,
            unsigned=unsigned,
            auto_increment=auto_increment and logical_type in INTEGER_TYPES,
            comment=comment or None,
            metadata=metadata or {},
        )

    @staticmethod
    def group_rows(rows: List[Dict[str, Any]], key: str) -> Dict[str, List[Dict[str, Any]]]:
        """按键对有序的行分组，保持首次出现的顺序"""
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(row[key], []).append(row)
        return grouped
