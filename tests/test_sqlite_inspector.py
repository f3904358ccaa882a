import os
import sqlite3
import tempfile
import unittest

from dbclone.connectors.factory import ConnectorFactory
from dbclone.models.config import ConnectionDescriptor
from dbclone.schema.inspectors.factory import SchemaInspectorFactory

SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email VARCHAR(190) NOT NULL UNIQUE,
    balance DECIMAL(10,2) DEFAULT 0,
    active BOOLEAN NOT NULL DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX users_created_at_index ON users (created_at);
CREATE TABLE role_user (
    role_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL REFERENCES users ON DELETE CASCADE,
    PRIMARY KEY (role_id, user_id)
);
"""


class TestSQLiteSchemaInspector(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        path = os.path.join(tmp.name, "inspect.db")
        with sqlite3.connect(path) as conn:
            conn.executescript(SCHEMA)

        self.connection = ConnectorFactory.get_connector(
            ConnectionDescriptor(name="inspect", driver="sqlite", database=path)
        )
        await self.connection.connect()
        self.addAsyncCleanup(self.connection.disconnect)
        self.inspector = SchemaInspectorFactory.for_connection(self.connection)

    async def test_columns(self):
        table = await self.inspector.get_table_schema(self.connection, "users")

        self.assertEqual(table.column_names, ["id", "email", "balance", "active", "created_at"])
        self.assertTrue(table.get_column("id").auto_increment)
        self.assertFalse(table.get_column("id").nullable)
        email = table.get_column("email")
        self.assertEqual((email.type, email.length, email.nullable), ("varchar", 190, False))
        balance = table.get_column("balance")
        self.assertEqual((balance.type, balance.length, balance.scale), ("decimal", 10, 2))
        self.assertEqual(table.get_column("active").default, True)
        self.assertEqual(table.get_column("created_at").default, "CURRENT_TIMESTAMP")

    async def test_indexes(self):
        table = await self.inspector.get_table_schema(self.connection, "users")
        indexes = {index.name: index for index in table.indexes}

        self.assertEqual(indexes["users_primary"].columns, ["id"])
        self.assertEqual(indexes["users_email_unique"].type, "unique")
        self.assertEqual(indexes["users_created_at_index"].type, "index")

    async def test_composite_key_and_foreign_key_to_implicit_primary_key(self):
        table = await self.inspector.get_table_schema(self.connection, "role_user")

        self.assertEqual(table.primary_key.columns, ["role_id", "user_id"])
        self.assertFalse(table.get_column("role_id").auto_increment)
        foreign_key = table.foreign_keys[0]
        self.assertEqual(foreign_key.name, "role_user_user_id_foreign")
        self.assertEqual(foreign_key.referenced_table, "users")
        self.assertEqual(foreign_key.referenced_columns, ["id"])
        self.assertEqual(foreign_key.on_delete, "CASCADE")

    async def test_table_names_skip_internal_tables(self):
        self.assertEqual(await self.inspector.get_table_names(self.connection), ["role_user", "users"])


if __name__ == '__main__':
    unittest.main()
