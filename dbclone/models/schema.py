"""
与方言无关的表结构模型

检查器使用下面的逻辑类型生成这些对象，
构建器再将其转换为对应方言的 DDL
"""
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field

from dbclone.errors import SchemaValidationError

INTEGER_TYPES = {"tinyint", "smallint", "mediumint", "int", "bigint"}
DECIMAL_TYPES = {"decimal", "float", "double"}
STRING_TYPES = {"char", "varchar", "tinytext", "text", "mediumtext", "longtext"}
BINARY_TYPES = {"binary", "varbinary", "tinyblob", "blob", "mediumblob", "longblob"}
TEMPORAL_TYPES = {"date", "time", "datetime", "timestamp", "timestamptz", "year"}
OTHER_TYPES = {"boolean", "json", "uuid", "enum", "set"}

LOGICAL_TYPES = INTEGER_TYPES | DECIMAL_TYPES | STRING_TYPES | BINARY_TYPES | TEMPORAL_TYPES | OTHER_TYPES

INDEX_TYPES = ("index", "unique", "primary", "fulltext", "spatial")

FOREIGN_KEY_ACTIONS = {
    "CASCADE": "CASCADE",
    "SET NULL": "SET NULL",
    "SET_NULL": "SET NULL",
    "SET DEFAULT": "SET DEFAULT",
    "SET_DEFAULT": "SET DEFAULT",
    "RESTRICT": "RESTRICT",
    "NO ACTION": "NO ACTION",
    "NO_ACTION": "NO ACTION",
}


def normalize_action(action: Optional[str]) -> str:
    if not action:
        return "NO ACTION"
    return FOREIGN_KEY_ACTIONS.get(action.strip().upper(), action.strip().upper())


@dataclass(frozen=True)
class ColumnSchema:
    name: str
    type: str
    nullable: bool = True
    default: Any = None
    length: Optional[int] = None
    scale: Optional[int] = None
    unsigned: bool = False
    auto_increment: bool = False
    comment: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "type", self.type.lower())
        if self.auto_increment and self.type not in INTEGER_TYPES:
            raise SchemaValidationError(
                f"Column {self.name} is auto-increment but has non-integer type {self.type}"
            )
        if self.scale is not None and self.length is None:
            raise SchemaValidationError(f"Column {self.name} has a scale but no length")

    @property
    def is_integer(self) -> bool:
        return self.type in INTEGER_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "nullable": self.nullable,
            "default": self.default,
            "length": self.length,
            "scale": self.scale,
            "unsigned": self.unsigned,
            "auto_increment": self.auto_increment,
            "comment": self.comment,
        }


@dataclass(frozen=True)
class IndexSchema:
    name: str
    columns: List[str]
    type: str = "index"

    def __post_init__(self):
        if self.type not in INDEX_TYPES:
            raise SchemaValidationError(f"Unknown index type {self.type} for index {self.name}")
        if not self.columns:
            raise SchemaValidationError(f"Index {self.name} has no columns")

    @property
    def primary(self) -> bool:
        return self.type == "primary"

    @property
    def unique(self) -> bool:
        return self.type in ("unique", "primary")


@dataclass(frozen=True)
class ForeignKeySchema:
    name: str
    columns: List[str]
    referenced_table: str
    referenced_columns: List[str]
    on_update: str = "NO ACTION"
    on_delete: str = "NO ACTION"

    def __post_init__(self):
        object.__setattr__(self, "on_update", normalize_action(self.on_update))
        object.__setattr__(self, "on_delete", normalize_action(self.on_delete))
        if len(self.columns) != len(self.referenced_columns):
            raise SchemaValidationError(
                f"Foreign key {self.name} has {len(self.columns)} columns "
                f"but references {len(self.referenced_columns)}"
            )


@dataclass(frozen=True)
class RowFilter:
    """只保留 column 取值在 values 中的行，values 为空时不保留任何行"""
    column: str
    values: List[Any]


@dataclass(frozen=True)
class TableSchema:
    name: str
    columns: List[ColumnSchema]
    indexes: List[IndexSchema] = field(default_factory=list)
    foreign_keys: List[ForeignKeySchema] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        seen = set()
        for column in self.columns:
            if column.name in seen:
                raise SchemaValidationError(f"Duplicate column {column.name} in table {self.name}")
            seen.add(column.name)

        primary = [index for index in self.indexes if index.primary]
        if len(primary) > 1:
            raise SchemaValidationError(f"Table {self.name} has more than one primary key")

        for index in self.indexes:
            for column_name in index.columns:
                if column_name not in seen:
                    raise SchemaValidationError(
                        f"Index {index.name} on table {self.name} references unknown column {column_name}"
                    )

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    @property
    def primary_key(self) -> Optional[IndexSchema]:
        for index in self.indexes:
            if index.primary:
                return index
        return None

    def has_column(self, name: str) -> bool:
        return any(column.name == name for column in self.columns)

    def get_column(self, name: str) -> Optional[ColumnSchema]:
        for column in self.columns:
            if column.name == name:
                return column
        return None


@dataclass(frozen=True)
class DatabaseSchema:
    tables: Dict[str, TableSchema]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def table_names(self) -> List[str]:
        return list(self.tables.keys())

    def has_table(self, name: str) -> bool:
        return name in self.tables

    def get_table(self, name: str) -> Optional[TableSchema]:
        return self.tables.get(name)

    def without(self, table_name: Optional[str]) -> "DatabaseSchema":
        if not table_name or table_name not in self.tables:
            return self
        tables = {name: table for name, table in self.tables.items() if name != table_name}
        return DatabaseSchema(tables=tables, metadata=dict(self.metadata))
