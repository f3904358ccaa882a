import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, List

from dbclone.models.schema import ColumnSchema, ForeignKeySchema, IndexSchema, TableSchema

DEFAULT_EXPRESSION = re.compile(
    r"^(CURRENT_TIMESTAMP|CURRENT_DATE|CURRENT_TIME|LOCALTIMESTAMP|NOW|GETDATE|SYSDATETIME|NULL)"
    r"(\(\d*\))?(\s+ON\s+UPDATE\s+.+)?$",
    re.IGNORECASE,
)


class BaseSchemaBuilder(ABC):
    """
    将与方言无关的表结构对象渲染为 DDL 字符串

    构建器不访问数据库，调用之间也不保存状态
    """

    quote_open = '"'
    quote_close = '"'
    # 外键只能在 CREATE TABLE 中声明时为 True
    embeds_foreign_keys = False
    # 可以带 (length[,scale]) 后缀的逻辑类型
    length_types: frozenset = frozenset()

    def quote_identifier(self, name: str) -> str:
        escaped = name.replace(self.quote_close, self.quote_close * 2)
        return f"{self.quote_open}{escaped}{self.quote_close}"

    def quote_list(self, names: List[str]) -> str:
        return ", ".join(self.quote_identifier(name) for name in names)

    def quote_string(self, value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def format_boolean(self, value: bool) -> str:
        return "1" if value else "0"

    def format_default(self, value: Any) -> str:
        if isinstance(value, bool):
            return self.format_boolean(value)
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        value = str(value)
        if DEFAULT_EXPRESSION.match(value.strip()):
            return value.strip()
        return self.quote_string(value)

    def format_length(self, column: ColumnSchema) -> str:
        if column.length is None or column.type not in self.length_types:
            return ""
        if column.scale is not None:
            return f"({column.length},{column.scale})"
        return f"({column.length})"

    def format_action(self, action: str) -> str:
        return action

    def secondary_indexes(self, table: TableSchema) -> List[IndexSchema]:
        """CREATE TABLE 之后还需要单独创建的索引"""
        return [index for index in table.indexes if not index.primary]

    @abstractmethod
    def build_create_table(self, table: TableSchema) -> str:
        pass

    @abstractmethod
    def build_column_definition(self, column: ColumnSchema) -> str:
        pass

    @abstractmethod
    def build_data_type(self, column: ColumnSchema) -> str:
        pass

    @abstractmethod
    def build_modify_column(self, table_name: str, column: ColumnSchema) -> str:
        pass

    def build_create_index(self, table_name: str, index: IndexSchema) -> str:
        unique = "UNIQUE " if index.unique else ""
        return (
            f"CREATE {unique}INDEX {self.quote_identifier(index.name)} "
            f"ON {self.quote_identifier(table_name)} ({self.quote_list(index.columns)})"
        )

    def build_foreign_key_clause(self, foreign_key: ForeignKeySchema) -> str:
        return (
            f"FOREIGN KEY ({self.quote_list(foreign_key.columns)}) "
            f"REFERENCES {self.quote_identifier(foreign_key.referenced_table)} "
            f"({self.quote_list(foreign_key.referenced_columns)}) "
            f"ON UPDATE {self.format_action(foreign_key.on_update)} "
            f"ON DELETE {self.format_action(foreign_key.on_delete)}"
        )

    def build_add_foreign_key(self, table_name: str, foreign_key: ForeignKeySchema) -> str:
        return (
            f"ALTER TABLE {self.quote_identifier(table_name)} "
            f"ADD CONSTRAINT {self.quote_identifier(foreign_key.name)} "
            f"{self.build_foreign_key_clause(foreign_key)}"
        )

    def build_add_column(self, table_name: str, column: ColumnSchema) -> str:
        return f"ALTER TABLE {self.quote_identifier(table_name)} ADD COLUMN {self.build_column_definition(column)}"

    def build_drop_table(self, table_name: str) -> str:
        return f"DROP TABLE IF EXISTS {self.quote_identifier(table_name)}"

    def _render_create_table(self, table_name: str, definitions: List[str], suffix: str = "") -> str:
        body = ",\n  ".join(definitions)
        return f"CREATE TABLE {self.quote_identifier(table_name)} (\n  {body}\n){suffix}"
