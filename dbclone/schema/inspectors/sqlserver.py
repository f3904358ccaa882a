from typing import Any, Dict, List

from dbclone.models.schema import ColumnSchema, ForeignKeySchema, IndexSchema
from dbclone.schema.inspectors.base import BaseSchemaInspector


class SQLServerSchemaInspector(BaseSchemaInspector):
    @staticmethod
    def _schema(connection) -> str:
        return connection.config.param("schema", "dbo")

    def _qualified(self, connection, table_name: str) -> str:
        return f"{self._schema(connection)}.{table_name}"

    def strip_default(self, value: str) -> str:
        # ((0)) -> 0, ('abc') -> 'abc', (getdate()) -> getdate()
        while value.startswith("(") and value.endswith(")"):
            value = value[1:-1].strip()
        if value.startswith("N'"):
            value = value[1:]
        return value

    async def get_table_names(self, connection) -> List[str]:
        rows = await connection.fetch_all(
            """
            SELECT TABLE_NAME AS table_name
            FROM INFORMATION_SCHEMA.TABLES
            WHERE TABLE_TYPE = 'BASE TABLE' AND TABLE_SCHEMA = :schema
            ORDER BY TABLE_NAME
            """,
            {"schema": self._schema(connection)},
        )
        return sorted(row["table_name"] for row in rows)

    async def get_database_metadata(self, connection) -> Dict[str, Any]:
        row = await connection.fetch_one(
            "SELECT @@VERSION AS version, CAST(DATABASEPROPERTYEX(DB_NAME(), 'Collation') AS NVARCHAR(128)) AS collation"
        ) or {}
        return {"version": row.get("version"), "collation": row.get("collation"), "schema": self._schema(connection)}

    async def get_columns(self, connection, table_name: str) -> List[ColumnSchema]:
        rows = await connection.fetch_all(
            """
            SELECT c.COLUMN_NAME AS name, c.DATA_TYPE AS data_type, c.IS_NULLABLE AS is_nullable,
                c.COLUMN_DEFAULT AS default_value, c.CHARACTER_MAXIMUM_LENGTH AS max_length,
                c.NUMERIC_PRECISION AS numeric_precision, c.NUMERIC_SCALE AS numeric_scale,
                COLUMNPROPERTY(OBJECT_ID(c.TABLE_SCHEMA + '.' + c.TABLE_NAME), c.COLUMN_NAME, 'IsIdentity') AS is_identity
            FROM INFORMATION_SCHEMA.COLUMNS c
            WHERE c.TABLE_SCHEMA = :schema AND c.TABLE_NAME = :table
            ORDER BY c.ORDINAL_POSITION
            """,
            {"schema": self._schema(connection), "table": table_name},
        )

        columns = []
        for row in rows:
            native_type = row["data_type"]
            if native_type in ("decimal", "numeric"):
                length, scale = row["numeric_precision"], row["numeric_scale"]
            else:
                length, scale = row["max_length"], None
                # varchar(max) 等类型的长度为 -1
                if length == -1:
                    native_type = "blob" if "binary" in native_type else "text"
                    length = None

            columns.append(self.build_column(
                name=row["name"],
                native_type=native_type,
                nullable=row["is_nullable"] == "YES",
                default=row["default_value"],
                length=int(length) if length is not None else None,
                scale=int(scale) if scale is not None else None,
                auto_increment=bool(row["is_identity"]),
                metadata={"data_type": row["data_type"]},
            ))
        return columns

    async def get_indexes(self, connection, table_name: str) -> List[IndexSchema]:
        rows = await connection.fetch_all(
            """
            SELECT i.name AS index_name, i.is_primary_key, i.is_unique, c.name AS column_name
            FROM sys.indexes i
            JOIN sys.index_columns ic ON i.object_id = ic.object_id AND i.index_id = ic.index_id
            JOIN sys.columns c ON ic.object_id = c.object_id AND ic.column_id = c.column_id
            WHERE i.object_id = OBJECT_ID(:qualified)
            AND i.name IS NOT NULL
            AND ic.is_included_column = 0
            ORDER BY i.name, ic.key_ordinal
            """,
            {"qualified": self._qualified(connection, table_name)},
        )

        indexes = []
        for name, index_rows in self.group_rows(rows, "index_name").items():
            first = index_rows[0]
            if first["is_primary_key"]:
                index_type = "primary"
            elif first["is_unique"]:
                index_type = "unique"
            else:
                index_type = "index"
            indexes.append(IndexSchema(
                name=name, columns=[row["column_name"] for row in index_rows], type=index_type
            ))
        return indexes

    async def get_foreign_keys(self, connection, table_name: str) -> List[ForeignKeySchema]:
        rows = await connection.fetch_all(
            """
            SELECT fk.name AS name, pc.name AS column_name, rt.name AS referenced_table,
                rc.name AS referenced_column,
                fk.update_referential_action_desc AS on_update,
                fk.delete_referential_action_desc AS on_delete
            FROM sys.foreign_keys fk
            JOIN sys.foreign_key_columns fkc ON fk.object_id = fkc.constraint_object_id
            JOIN sys.columns pc ON fkc.parent_object_id = pc.object_id AND fkc.parent_column_id = pc.column_id
            JOIN sys.tables rt ON fkc.referenced_object_id = rt.object_id
            JOIN sys.columns rc ON fkc.referenced_object_id = rc.object_id AND fkc.referenced_column_id = rc.column_id
            WHERE fk.parent_object_id = OBJECT_ID(:qualified)
            ORDER BY fk.name, fkc.constraint_column_id
            """,
            {"qualified": self._qualified(connection, table_name)},
        )

        foreign_keys = []
        for name, fk_rows in self.group_rows(rows, "name").items():
            first = fk_rows[0]
            foreign_keys.append(ForeignKeySchema(
                name=name,
                columns=[row["column_name"] for row in fk_rows],
                referenced_table=first["referenced_table"],
                referenced_columns=[row["referenced_column"] for row in fk_rows],
                on_update=first["on_update"],
                on_delete=first["on_delete"],
            ))
        return foreign_keys
