import re
from typing import Any, Dict, List

from dbclone.models.schema import ColumnSchema, ForeignKeySchema, IndexSchema
from dbclone.schema.inspectors.base import BaseSchemaInspector

CAST_SUFFIX = re.compile(r"::[\w\s\[\]\"]+$")


class PostgreSQLSchemaInspector(BaseSchemaInspector):
    @staticmethod
    def _schema(connection) -> str:
        return connection.config.param("schema", "public")

    def strip_default(self, value: str) -> str:
        # 'abc'::character varying -> 'abc'
        while CAST_SUFFIX.search(value):
            value = CAST_SUFFIX.sub("", value).strip()
        if value.startswith("(") and value.endswith(")"):
            value = value[1:-1].strip()
        return value

    async def get_table_names(self, connection) -> List[str]:
        rows = await connection.fetch_all(
            "SELECT tablename FROM pg_catalog.pg_tables WHERE schemaname = :schema ORDER BY tablename",
            {"schema": self._schema(connection)},
        )
        return sorted(row["tablename"] for row in rows)

    async def get_database_metadata(self, connection) -> Dict[str, Any]:
        version = await connection.fetch_scalar("SELECT version() AS version")
        encoding = await connection.fetch_scalar("SHOW server_encoding")
        return {"version": version, "encoding": encoding, "schema": self._schema(connection)}

    async def get_table_metadata(self, connection, table_name: str) -> Dict[str, Any]:
        comment = await connection.fetch_scalar(
            "SELECT obj_description((quote_ident(:schema) || '.' || quote_ident(:table))::regclass) AS comment",
            {"schema": self._schema(connection), "table": table_name},
        )
        return {"comment": comment or None}

    async def get_columns(self, connection, table_name: str) -> List[ColumnSchema]:
        rows = await connection.fetch_all(
            """
            SELECT c.column_name AS name, c.data_type, c.is_nullable, c.column_default,
                c.character_maximum_length, c.numeric_precision, c.numeric_scale, c.udt_name,
                pg_catalog.col_description(
                    (quote_ident(c.table_schema) || '.' || quote_ident(c.table_name))::regclass::oid,
                    c.ordinal_position
                ) AS comment
            FROM information_schema.columns c
            WHERE c.table_schema = :schema AND c.table_name = :table
            ORDER BY c.ordinal_position
            """,
            {"schema": self._schema(connection), "table": table_name},
        )

        columns = []
        for row in rows:
            native_type = row["data_type"]
            if native_type == "USER-DEFINED" or native_type == "ARRAY":
                native_type = "text"
            default = row["column_default"]
            auto_increment = "nextval" in (default or "")
            if native_type == "numeric":
                length, scale = row["numeric_precision"], row["numeric_scale"]
            else:
                length, scale = row["character_maximum_length"], None

            columns.append(self.build_column(
                name=row["name"],
                native_type=native_type,
                nullable=row["is_nullable"] == "YES",
                default=default,
                length=int(length) if length is not None else None,
                scale=int(scale) if scale is not None else None,
                auto_increment=auto_increment,
                comment=row["comment"],
                metadata={"data_type": row["data_type"], "udt_name": row["udt_name"]},
            ))
        return columns

    async def get_indexes(self, connection, table_name: str) -> List[IndexSchema]:
        rows = await connection.fetch_all(
            """
            SELECT i.relname AS index_name, ix.indisunique AS is_unique, ix.indisprimary AS is_primary,
                a.attname AS column_name, array_position(ix.indkey, a.attnum) AS position
            FROM pg_class t
            JOIN pg_index ix ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
            WHERE t.relkind = 'r'
            AND t.relname = :table
            AND t.relnamespace = (SELECT oid FROM pg_namespace WHERE nspname = :schema)
            AND ix.indexprs IS NULL
            ORDER BY i.relname, position
            """,
            {"schema": self._schema(connection), "table": table_name},
        )

        indexes = []
        for name, index_rows in self.group_rows(rows, "index_name").items():
            first = index_rows[0]
            if first["is_primary"]:
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
            SELECT con.conname AS name, src.attname AS column_name, ref_table.relname AS referenced_table,
                ref.attname AS referenced_column, con.confupdtype AS on_update, con.confdeltype AS on_delete
            FROM pg_constraint con
            JOIN pg_class tbl ON tbl.oid = con.conrelid
            JOIN pg_namespace nsp ON nsp.oid = tbl.relnamespace
            JOIN pg_class ref_table ON ref_table.oid = con.confrelid
            CROSS JOIN LATERAL unnest(con.conkey, con.confkey) WITH ORDINALITY AS k(src_num, ref_num, pos)
            JOIN pg_attribute src ON src.attrelid = con.conrelid AND src.attnum = k.src_num
            JOIN pg_attribute ref ON ref.attrelid = con.confrelid AND ref.attnum = k.ref_num
            WHERE con.contype = 'f' AND nsp.nspname = :schema AND tbl.relname = :table
            ORDER BY con.conname, k.pos
            """,
            {"schema": self._schema(connection), "table": table_name},
        )

        actions = {"a": "NO ACTION", "r": "RESTRICT", "c": "CASCADE", "n": "SET NULL", "d": "SET DEFAULT"}
        foreign_keys = []
        for name, fk_rows in self.group_rows(rows, "name").items():
            first = fk_rows[0]
            foreign_keys.append(ForeignKeySchema(
                name=name,
                columns=[row["column_name"] for row in fk_rows],
                referenced_table=first["referenced_table"],
                referenced_columns=[row["referenced_column"] for row in fk_rows],
                on_update=actions.get(first["on_update"], "NO ACTION"),
                on_delete=actions.get(first["on_delete"], "NO ACTION"),
            ))
        return foreign_keys
