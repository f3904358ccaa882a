import re
from typing import Any, Dict, List

from dbclone.models.schema import ColumnSchema, ForeignKeySchema, IndexSchema
from dbclone.schema.inspectors.base import BaseSchemaInspector

DECLARED_TYPE = re.compile(r"^\s*([a-zA-Z ]+?)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$")


class SQLiteSchemaInspector(BaseSchemaInspector):
    """基于 PRAGMA 的检查器"""

    @staticmethod
    def _pragma(connection, pragma: str, name: str) -> str:
        return f"PRAGMA {pragma}({connection.quote(name)})"

    async def get_table_names(self, connection) -> List[str]:
        rows = await connection.fetch_all(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return sorted(row["name"] for row in rows)

    async def get_database_metadata(self, connection) -> Dict[str, Any]:
        version = await connection.fetch_scalar("SELECT sqlite_version() AS version")
        return {"version": version}

    async def get_columns(self, connection, table_name: str) -> List[ColumnSchema]:
        rows = await connection.fetch_all(self._pragma(connection, "table_info", table_name))
        primary = [row for row in rows if row["pk"]]

        columns = []
        for row in rows:
            declared = row["type"] or ""
            match = DECLARED_TYPE.match(declared)
            native_type, length, scale = declared, None, None
            if match:
                native_type = match.group(1)
                length = int(match.group(2)) if match.group(2) else None
                scale = int(match.group(3)) if match.group(3) else None

            # 单独的 INTEGER 主键就是 rowid 的别名
            auto_increment = len(primary) == 1 and row["pk"] == 1 and declared.upper() == "INTEGER"
            columns.append(self.build_column(
                name=row["name"],
                native_type=native_type,
                nullable=not row["notnull"] and not row["pk"],
                default=row["dflt_value"],
                length=length,
                scale=scale,
                auto_increment=auto_increment,
                metadata={"declared_type": declared},
            ))
        return columns

    async def get_indexes(self, connection, table_name: str) -> List[IndexSchema]:
        indexes = []

        table_info = await connection.fetch_all(self._pragma(connection, "table_info", table_name))
        primary = sorted((row for row in table_info if row["pk"]), key=lambda row: row["pk"])
        if primary:
            indexes.append(IndexSchema(
                name=f"{table_name}_primary", columns=[row["name"] for row in primary], type="primary"
            ))

        for index in await connection.fetch_all(self._pragma(connection, "index_list", table_name)):
            if index["origin"] == "pk":
                continue
            info = await connection.fetch_all(self._pragma(connection, "index_info", index["name"]))
            columns = [row["name"] for row in sorted(info, key=lambda row: row["seqno"])]
            # 表达式索引没有列名
            if not columns or not all(columns):
                continue

            name = index["name"]
            if name.startswith("sqlite_autoindex_"):
                name = f"{table_name}_{'_'.join(columns)}_unique"
            indexes.append(IndexSchema(name=name, columns=columns, type="unique" if index["unique"] else "index"))
        return indexes

    async def get_foreign_keys(self, connection, table_name: str) -> List[ForeignKeySchema]:
        rows = await connection.fetch_all(self._pragma(connection, "foreign_key_list", table_name))

        foreign_keys = []
        for _, fk_rows in self.group_rows(rows, "id").items():
            fk_rows = sorted(fk_rows, key=lambda row: row["seq"])
            first = fk_rows[0]
            columns = [row["from"] for row in fk_rows]
            referenced_columns = [row["to"] for row in fk_rows]
            if not all(referenced_columns):
                # REFERENCES 未指定列时指向父表主键
                parent = await connection.fetch_all(self._pragma(connection, "table_info", first["table"]))
                referenced_columns = [row["name"] for row in sorted(
                    (row for row in parent if row["pk"]), key=lambda row: row["pk"]
                )]
            foreign_keys.append(ForeignKeySchema(
                name=f"{table_name}_{'_'.join(columns)}_foreign",
                columns=columns,
                referenced_table=first["table"],
                referenced_columns=referenced_columns,
                on_update=first["on_update"],
                on_delete=first["on_delete"],
            ))
        return foreign_keys
