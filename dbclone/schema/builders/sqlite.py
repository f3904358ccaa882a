from dbclone.errors import UnsupportedOperationError
from dbclone.models.schema import ColumnSchema, ForeignKeySchema, TableSchema
from dbclone.schema.builders.base import BaseSchemaBuilder

TYPE_MAP = {
    "boolean": "INTEGER",
    "enum": "VARCHAR(255)",
    "set": "VARCHAR(255)",
}


class SQLiteSchemaBuilder(BaseSchemaBuilder):
    embeds_foreign_keys = True
    length_types = frozenset({"decimal", "char", "varchar", "binary", "varbinary"})

    def build_create_table(self, table: TableSchema) -> str:
        primary_key = table.primary_key
        inline_key = self._inline_primary_key(table)

        definitions = []
        for column in table.columns:
            if column.name == inline_key:
                definitions.append(f"{self.quote_identifier(column.name)} INTEGER PRIMARY KEY AUTOINCREMENT")
            else:
                definitions.append(self.build_column_definition(column))

        if primary_key and inline_key is None:
            definitions.append(f"PRIMARY KEY ({self.quote_list(primary_key.columns)})")

        for foreign_key in table.foreign_keys:
            definitions.append(self.build_foreign_key_clause(foreign_key))

        return self._render_create_table(table.name, definitions)

    def build_add_foreign_key(self, table_name: str, foreign_key: ForeignKeySchema) -> str:
        raise UnsupportedOperationError(
            f"SQLite cannot add foreign key {foreign_key.name} to existing table {table_name}"
        )

    def build_modify_column(self, table_name: str, column: ColumnSchema) -> str:
        raise UnsupportedOperationError(
            f"SQLite cannot modify column {column.name} of existing table {table_name}"
        )

    def build_column_definition(self, column: ColumnSchema) -> str:
        definition = f"{self.quote_identifier(column.name)} {self.build_data_type(column)}"

        if not column.nullable:
            definition += " NOT NULL"

        if column.default is not None:
            definition += f" DEFAULT {self.format_default(column.default)}"

        return definition

    def build_data_type(self, column: ColumnSchema) -> str:
        if column.type in TYPE_MAP:
            return TYPE_MAP[column.type]
        return column.type.upper() + self.format_length(column)

    @staticmethod
    def _inline_primary_key(table: TableSchema):
        """需要生成 INTEGER PRIMARY KEY AUTOINCREMENT 的列名，没有则返回 None"""
        primary_key = table.primary_key
        if primary_key is None or len(primary_key.columns) != 1:
            return None
        column = table.get_column(primary_key.columns[0])
        if column is not None and column.auto_increment:
            return column.name
        return None
