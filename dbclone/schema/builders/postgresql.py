from dbclone.models.schema import ColumnSchema, TableSchema
from dbclone.schema.builders.base import BaseSchemaBuilder

TYPE_MAP = {
    "tinyint": "SMALLINT",
    "smallint": "SMALLINT",
    "mediumint": "INTEGER",
    "int": "INTEGER",
    "bigint": "BIGINT",
    "decimal": "NUMERIC",
    "float": "REAL",
    "double": "DOUBLE PRECISION",
    "boolean": "BOOLEAN",
    "char": "CHAR",
    "varchar": "VARCHAR",
    "tinytext": "TEXT",
    "text": "TEXT",
    "mediumtext": "TEXT",
    "longtext": "TEXT",
    "binary": "BYTEA",
    "varbinary": "BYTEA",
    "tinyblob": "BYTEA",
    "blob": "BYTEA",
    "mediumblob": "BYTEA",
    "longblob": "BYTEA",
    "date": "DATE",
    "time": "TIME",
    "datetime": "TIMESTAMP",
    "timestamp": "TIMESTAMP",
    "timestamptz": "TIMESTAMPTZ",
    "year": "SMALLINT",
    "json": "JSON",
    "uuid": "UUID",
    "enum": "VARCHAR(255)",
    "set": "VARCHAR(255)",
}

SERIAL_TYPES = {"tinyint": "SMALLSERIAL", "smallint": "SMALLSERIAL", "bigint": "BIGSERIAL"}


class PostgreSQLSchemaBuilder(BaseSchemaBuilder):
    length_types = frozenset({"decimal", "char", "varchar"})

    def format_boolean(self, value: bool) -> str:
        return "TRUE" if value else "FALSE"

    def build_create_table(self, table: TableSchema) -> str:
        definitions = [self.build_column_definition(column) for column in table.columns]

        primary_key = table.primary_key
        if primary_key:
            definitions.append(f"PRIMARY KEY ({self.quote_list(primary_key.columns)})")

        return self._render_create_table(table.name, definitions)

    def build_modify_column(self, table_name: str, column: ColumnSchema) -> str:
        # PostgreSQL 每个属性需要单独的 ALTER
        prefix = f"ALTER TABLE {self.quote_identifier(table_name)} ALTER COLUMN {self.quote_identifier(column.name)}"
        statements = [f"{prefix} TYPE {self.build_data_type(column)}"]
        statements.append(f"{prefix} DROP NOT NULL" if column.nullable else f"{prefix} SET NOT NULL")
        if column.default is not None:
            statements.append(f"{prefix} SET DEFAULT {self.format_default(column.default)}")
        return ";\n".join(statements)

    def build_column_definition(self, column: ColumnSchema) -> str:
        definition = f"{self.quote_identifier(column.name)} {self.build_data_type(column)}"

        if not column.nullable:
            definition += " NOT NULL"

        if column.default is not None and not column.auto_increment:
            definition += f" DEFAULT {self.format_default(column.default)}"

        return definition

    def build_data_type(self, column: ColumnSchema) -> str:
        if column.auto_increment:
            return SERIAL_TYPES.get(column.type, "SERIAL")
        return TYPE_MAP.get(column.type, column.type.upper()) + self.format_length(column)

    def build_drop_table(self, table_name: str) -> str:
        return f"DROP TABLE IF EXISTS {self.quote_identifier(table_name)} CASCADE"
