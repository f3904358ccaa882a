import re
from typing import Any, Dict, List

from dbclone.models.schema import ColumnSchema, ForeignKeySchema, IndexSchema, INTEGER_TYPES
from dbclone.schema.inspectors.base import BaseSchemaInspector

COLUMN_TYPE_ARGS = re.compile(r"\((\d+)(?:,(\d+))?\)")


class MySQLSchemaInspector(BaseSchemaInspector):
    """基于 INFORMATION_SCHEMA 的检查器，MySQL 和 MariaDB 共用"""

    length_types = BaseSchemaInspector.length_types | INTEGER_TYPES

    @staticmethod
    def _database(connection) -> str:
        return connection.config.database

    async def get_table_names(self, connection) -> List[str]:
        rows = await connection.fetch_all(
            """
            SELECT TABLE_NAME AS table_name
            FROM INFORMATION_SCHEMA.TABLES
            WHERE TABLE_SCHEMA = :database
            AND TABLE_TYPE = 'BASE TABLE'
            ORDER BY TABLE_NAME
            """,
            {"database": self._database(connection)},
        )
        return sorted(row["table_name"] for row in rows)

    async def get_database_metadata(self, connection) -> Dict[str, Any]:
        row = await connection.fetch_one(
            """
            SELECT VERSION() AS version,
                DEFAULT_CHARACTER_SET_NAME AS charset,
                DEFAULT_COLLATION_NAME AS collation
            FROM INFORMATION_SCHEMA.SCHEMATA
            WHERE SCHEMA_NAME = :database
            """,
            {"database": self._database(connection)},
        ) or {}
        return {"version": row.get("version"), "charset": row.get("charset"), "collation": row.get("collation")}

    async def get_table_metadata(self, connection, table_name: str) -> Dict[str, Any]:
        row = await connection.fetch_one(
            """
            SELECT ENGINE AS engine, TABLE_COLLATION AS collation, TABLE_COMMENT AS comment
            FROM INFORMATION_SCHEMA.TABLES
            WHERE TABLE_SCHEMA = :database AND TABLE_NAME = :table
            """,
            {"database": self._database(connection), "table": table_name},
        ) or {}
        collation = row.get("collation")
        return {
            "engine": row.get("engine"),
            "collation": collation,
            "charset": collation.split("_")[0] if collation else None,
            "comment": row.get("comment") or None,
        }

    async def get_columns(self, connection, table_name: str) -> List[ColumnSchema]:
        rows = await connection.fetch_all(
            """
            SELECT COLUMN_NAME AS name, COLUMN_TYPE AS column_type, DATA_TYPE AS data_type,
                IS_NULLABLE AS is_nullable, COLUMN_DEFAULT AS default_value,
                CHARACTER_MAXIMUM_LENGTH AS max_length, NUMERIC_PRECISION AS numeric_precision,
                NUMERIC_SCALE AS numeric_scale, EXTRA AS extra, COLUMN_COMMENT AS comment
            FROM INFORMATION_SCHEMA.COLUMNS
            WHERE TABLE_SCHEMA = :database AND TABLE_NAME = :table
            ORDER BY ORDINAL_POSITION
            """,
            {"database": self._database(connection), "table": table_name},
        )

        columns = []
        for row in rows:
            column_type = str(row["column_type"] or "")
            length, scale = None, None
            # varchar(255) -> 255, decimal(10,2) -> 10, 2
            match = COLUMN_TYPE_ARGS.search(column_type)
            if match:
                length = int(match.group(1))
                scale = int(match.group(2)) if match.group(2) is not None else None
            elif row["max_length"]:
                length = int(row["max_length"])

            columns.append(self.build_column(
                name=row["name"],
                native_type=row["data_type"],
                nullable=row["is_nullable"] == "YES",
                default=row["default_value"],
                length=length,
                scale=scale,
                unsigned="unsigned" in column_type,
                auto_increment="auto_increment" in str(row["extra"] or ""),
                comment=row["comment"],
                metadata={"column_type": column_type, "extra": row["extra"]},
            ))
        return columns

    async def get_indexes(self, connection, table_name: str) -> List[IndexSchema]:
        rows = await connection.fetch_all(
            """
            SELECT INDEX_NAME AS name, NON_UNIQUE AS non_unique, COLUMN_NAME AS column_name,
                SEQ_IN_INDEX AS sequence, INDEX_TYPE AS index_type
            FROM INFORMATION_SCHEMA.STATISTICS
            WHERE TABLE_SCHEMA = :database AND TABLE_NAME = :table
            ORDER BY INDEX_NAME, SEQ_IN_INDEX
            """,
            {"database": self._database(connection), "table": table_name},
        )

        indexes = []
        for name, index_rows in self.group_rows(rows, "name").items():
            columns = [row["column_name"] for row in index_rows]
            # 函数索引没有列名
            if not all(columns):
                continue
            first = index_rows[0]
            if name == "PRIMARY":
                index_type = "primary"
            elif int(first["non_unique"]) == 0:
                index_type = "unique"
            elif first["index_type"] in ("FULLTEXT", "SPATIAL"):
                index_type = first["index_type"].lower()
            else:
                index_type = "index"
            indexes.append(IndexSchema(name=name, columns=columns, type=index_type))
        return indexes

    async def get_foreign_keys(self, connection, table_name: str) -> List[ForeignKeySchema]:
        rows = await connection.fetch_all(
            """
            SELECT kcu.CONSTRAINT_NAME AS name, kcu.COLUMN_NAME AS column_name,
                kcu.REFERENCED_TABLE_NAME AS referenced_table,
                kcu.REFERENCED_COLUMN_NAME AS referenced_column,
                rc.UPDATE_RULE AS on_update, rc.DELETE_RULE AS on_delete
            FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE kcu
            JOIN INFORMATION_SCHEMA.REFERENTIAL_CONSTRAINTS rc
                ON kcu.CONSTRAINT_NAME = rc.CONSTRAINT_NAME
                AND kcu.TABLE_SCHEMA = rc.CONSTRAINT_SCHEMA
            WHERE kcu.TABLE_SCHEMA = :database
            AND kcu.TABLE_NAME = :table
            AND kcu.REFERENCED_TABLE_NAME IS NOT NULL
            ORDER BY kcu.CONSTRAINT_NAME, kcu.ORDINAL_POSITION
            """,
            {"database": self._database(connection), "table": table_name},
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
