from dbclone.models.schema import (
    ColumnSchema, IndexSchema, TableSchema, INTEGER_TYPES, DECIMAL_TYPES, TEMPORAL_TYPES,
)
from dbclone.schema.builders.base import BaseSchemaBuilder

TYPE_MAP = {
    "boolean": "TINYINT(1)",
    "timestamptz": "TIMESTAMP",
    "uuid": "CHAR(36)",
}


class MySQLSchemaBuilder(BaseSchemaBuilder):
    quote_open = "`"
    quote_close = "`"
    length_types = frozenset(INTEGER_TYPES | DECIMAL_TYPES | {"char", "varchar", "binary", "varbinary"})

    def build_create_table(self, table: TableSchema) -> str:
        definitions = [self.build_column_definition(column) for column in table.columns]

        primary_key = table.primary_key
        if primary_key:
            definitions.append(f"PRIMARY KEY ({self.quote_list(primary_key.columns)})")
        for index in table.indexes:
            if index.type == "unique":
                definitions.append(f"UNIQUE KEY {self.quote_identifier(index.name)} ({self.quote_list(index.columns)})")

        suffix = ""
        engine = table.metadata.get("engine")
        charset = table.metadata.get("charset")
        collation = table.metadata.get("collation")
        if engine:
            suffix += f" ENGINE={engine}"
        if charset:
            suffix += f" DEFAULT CHARSET={charset}"
        if collation:
            suffix += f" COLLATE={collation}"
        return self._render_create_table(table.name, definitions, suffix)

    def secondary_indexes(self, table: TableSchema):
        return [index for index in table.indexes if index.type not in ("primary", "unique")]

    def build_create_index(self, table_name: str, index: IndexSchema) -> str:
        if index.type in ("fulltext", "spatial"):
            return (
                f"CREATE {index.type.upper()} INDEX {self.quote_identifier(index.name)} "
                f"ON {self.quote_identifier(table_name)} ({self.quote_list(index.columns)})"
            )
        return super().build_create_index(table_name, index)

    def build_modify_column(self, table_name: str, column: ColumnSchema) -> str:
        return f"ALTER TABLE {self.quote_identifier(table_name)} MODIFY COLUMN {self.build_column_definition(column)}"

    def build_column_definition(self, column: ColumnSchema) -> str:
        definition = f"{self.quote_identifier(column.name)} {self.build_data_type(column)}"

        if column.unsigned and column.type in INTEGER_TYPES | DECIMAL_TYPES:
            definition += " UNSIGNED"

        definition += " NULL" if column.nullable else " NOT NULL"

        if column.default is not None and not column.auto_increment:
            definition += f" DEFAULT {self.format_default(column.default)}"

        if column.auto_increment:
            definition += " AUTO_INCREMENT"

        if column.comment:
            definition += f" COMMENT {self.quote_string(column.comment)}"

        return definition

    def build_data_type(self, column: ColumnSchema) -> str:
        if column.type in ("enum", "set"):
            # 完整声明（如 enum('a','b')）只有 MySQL 源库才有
            column_type = column.metadata.get("column_type")
            return column_type if column_type else "VARCHAR(255)"
        if column.type in TYPE_MAP:
            return TYPE_MAP[column.type]
        if column.type == "varchar" and column.length is None:
            return "VARCHAR(255)"
        if column.type in TEMPORAL_TYPES:
            return column.type.upper()
        return column.type.upper() + self.format_length(column)
