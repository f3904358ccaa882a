from dbclone.models.schema import ColumnSchema, TableSchema
from dbclone.schema.builders.base import BaseSchemaBuilder

TYPE_MAP = {
    "tinyint": "TINYINT",
    "smallint": "SMALLINT",
    "mediumint": "INT",
    "int": "INT",
    "bigint": "BIGINT",
    "decimal": "DECIMAL",
    "float": "FLOAT",
    "double": "FLOAT",
    "boolean": "BIT",
    "char": "CHAR",
    "varchar": "VARCHAR",
    "tinytext": "VARCHAR(255)",
    "text": "VARCHAR(MAX)",
    "mediumtext": "VARCHAR(MAX)",
    "longtext": "VARCHAR(MAX)",
    "binary": "BINARY",
    "varbinary": "VARBINARY",
    "tinyblob": "VARBINARY(255)",
    "blob": "VARBINARY(MAX)",
    "mediumblob": "VARBINARY(MAX)",
    "longblob": "VARBINARY(MAX)",
    "date": "DATE",
    "time": "TIME",
    "datetime": "DATETIME2",
    "timestamp": "DATETIME2",
    "timestamptz": "DATETIMEOFFSET",
    "year": "SMALLINT",
    "json": "NVARCHAR(MAX)",
    "uuid": "UNIQUEIDENTIFIER",
    "enum": "VARCHAR(255)",
    "set": "VARCHAR(255)",
}

# CHAR/VARCHAR/BINARY 超过该长度时必须使用 MAX
MAX_INLINE_LENGTH = 8000


class SQLServerSchemaBuilder(BaseSchemaBuilder):
    quote_open = "["
    quote_close = "]"
    length_types = frozenset({"decimal", "char", "varchar", "binary", "varbinary"})

    def format_action(self, action: str) -> str:
        return "NO ACTION" if action == "RESTRICT" else action

    def build_create_table(self, table: TableSchema) -> str:
        definitions = [self.build_column_definition(column) for column in table.columns]

        primary_key = table.primary_key
        if primary_key:
            definitions.append(f"PRIMARY KEY ({self.quote_list(primary_key.columns)})")

        return self._render_create_table(table.name, definitions)

    def build_add_column(self, table_name: str, column: ColumnSchema) -> str:
        return f"ALTER TABLE {self.quote_identifier(table_name)} ADD {self.build_column_definition(column)}"

    def build_modify_column(self, table_name: str, column: ColumnSchema) -> str:
        # ALTER COLUMN 不支持 IDENTITY 和 DEFAULT
        definition = f"{self.quote_identifier(column.name)} {self.build_data_type(column)}"
        definition += " NULL" if column.nullable else " NOT NULL"
        return f"ALTER TABLE {self.quote_identifier(table_name)} ALTER COLUMN {definition}"

    def build_column_definition(self, column: ColumnSchema) -> str:
        definition = f"{self.quote_identifier(column.name)} {self.build_data_type(column)}"

        if column.auto_increment:
            definition += " IDENTITY(1,1)"

        if not column.nullable:
            definition += " NOT NULL"

        if column.default is not None and not column.auto_increment:
            definition += f" DEFAULT {self.format_default(column.default)}"

        return definition

    def build_data_type(self, column: ColumnSchema) -> str:
        data_type = TYPE_MAP.get(column.type, column.type.upper())
        if "MAX" in data_type or "(" in data_type:
            return data_type
        if column.type in ("char", "varchar", "binary", "varbinary") and column.length is not None:
            if column.length > MAX_INLINE_LENGTH:
                return f"{data_type}(MAX)"
        if column.type == "varchar" and column.length is None:
            return "VARCHAR(255)"
        return data_type + self.format_length(column)
