import asyncio
import functools
from abc import ABC, abstractmethod
from typing import List, Dict, Any, AsyncGenerator, Optional, Sequence, Tuple

from loguru import logger
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, URL
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from dbclone.errors import DatabaseConnectionError, ErrorCategory, QueryError
from dbclone.models.config import ConnectionDescriptor
from dbclone.models.schema import RowFilter
from dbclone.schema.builders.factory import get_schema_builder
from dbclone.services.error_classifier import error_classifier, extract_error_details


class BaseConnector(ABC):
    """
    基于 SQLAlchemy 连接池的异步数据库连接器

    阻塞的驱动调用在事件循环的默认线程池中执行，
    多个任务可以同时等待网络
    """

    disable_foreign_keys_sql: str = ""
    enable_foreign_keys_sql: str = ""
    # 切换约束会修改表定义而不是会话状态时为 False
    session_scoped_foreign_keys: bool = True

    def __init__(self, config: ConnectionDescriptor, connection_name: Optional[str] = None):
        self.config = config
        self.connection_name = connection_name or config.name
        self.builder = get_schema_builder(config.driver)
        self._engine: Optional[Engine] = None
        self._foreign_keys_enabled: Optional[bool] = None

    @property
    def driver(self):
        return self.config.driver

    @abstractmethod
    def build_url(self) -> URL:
        """构建 SQLAlchemy 连接 URL"""
        pass

    @abstractmethod
    def paginate(self, sql: str, offset: int, limit: int) -> str:
        """为有序的 SELECT 追加分页子句"""
        pass

    def engine_options(self) -> Dict[str, Any]:
        return {"pool_pre_ping": True}

    def quote(self, identifier: str) -> str:
        return self.builder.quote_identifier(identifier)

    async def connect(self) -> None:
        try:
            self._engine = create_engine(self.build_url(), **self.engine_options())
            event.listen(self._engine, "checkout", self._apply_session_state)
            await self._run(self._ping)
            logger.info(f"Successfully connected to {self.driver.value} database: {self.config.database}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to connect to {self.driver.value} database {self.config.name}: {str(e)}")
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
            raise DatabaseConnectionError(
                f"Failed to connect to database `{self.config.name}`: {e}",
                connection_name=self.connection_name,
            ) from e

    async def disconnect(self) -> None:
        if self._engine:
            self._engine.dispose()
            self._engine = None
            logger.info(f"Disconnected from {self.driver.value} database {self.config.name}")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise DatabaseConnectionError(
                f"Connection `{self.config.name}` is not open", connection_name=self.connection_name
            )
        return self._engine

    async def fetch_all(self, query: str, params: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        return await self._run(self._fetch_all, query, params or {})

    async def fetch_one(self, query: str, params: Dict[str, Any] = None) -> Optional[Dict[str, Any]]:
        rows = await self.fetch_all(query, params)
        return rows[0] if rows else None

    async def fetch_scalar(self, query: str, params: Dict[str, Any] = None) -> Any:
        row = await self.fetch_one(query, params)
        if row is None:
            return None
        return next(iter(row.values()), None)

    async def execute(self, sql: str, params: Dict[str, Any] = None) -> None:
        """
        在独立事务中执行单条语句

        Args:
            sql: 原样发送的语句
        """
        await self._run(self._execute, sql, params or {})
        logger.debug(f"Successfully executed SQL: {sql}")

    async def read_data(
        self,
        table_name: str,
        batch_size: int,
        order_by: Sequence[str],
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> AsyncGenerator[List[Dict[str, Any]], None]:
        """按稳定顺序分页读取表数据"""
        offset = 0
        while True:
            page_size = batch_size if limit is None else min(batch_size, limit - offset)
            if page_size <= 0:
                break
            batch_data = await self.read_chunk(table_name, order_by, offset, page_size, descending)
            if not batch_data:
                break
            yield batch_data
            offset += len(batch_data)
            if len(batch_data) < page_size:
                break

    async def read_chunk(
        self,
        table_name: str,
        order_by: Sequence[str],
        offset: int,
        limit: int,
        descending: bool = False,
        filters: Optional[Sequence[RowFilter]] = None,
    ) -> List[Dict[str, Any]]:
        direction = " DESC" if descending else ""
        order_clause = ", ".join(f"{self.quote(column)}{direction}" for column in order_by)
        where, params = self.where_clause(filters)
        query = f"SELECT * FROM {self.quote(table_name)}{where} ORDER BY {order_clause}"
        return await self.fetch_all(self.paginate(query, offset, limit), params)

    async def write_data(self, table_name: str, data: List[Dict[str, Any]], disable_foreign_keys: bool = False) -> int:
        if not data:
            return 0
        return await self._run(self._write_data, table_name, data, disable_foreign_keys)

    async def get_row_count(self, table_name: str, filters: Optional[Sequence[RowFilter]] = None) -> int:
        """
        获取表的行数

        Args:
            table_name: 表名（不带引号）
            filters: 只统计满足所有过滤条件的行

        Returns:
            行数
        """
        where, params = self.where_clause(filters)
        count = await self.fetch_scalar(f"SELECT COUNT(*) AS row_count FROM {self.quote(table_name)}{where}", params)
        logger.debug(f"Table {table_name} has {count} rows")
        return int(count or 0)

    def where_clause(self, filters: Optional[Sequence[RowFilter]]) -> Tuple[str, Dict[str, Any]]:
        """将过滤条件渲染为 ` WHERE column IN (...) AND ...` 及绑定参数"""
        if not filters:
            return "", {}
        conditions = []
        params: Dict[str, Any] = {}
        for filter_index, row_filter in enumerate(filters):
            if not row_filter.values:
                conditions.append("1 = 0")
                continue
            names = []
            for value_index, value in enumerate(row_filter.values):
                name = f"f{filter_index}_{value_index}"
                params[name] = value
                names.append(f":{name}")
            conditions.append(f"{self.quote(row_filter.column)} IN ({', '.join(names)})")
        return " WHERE " + " AND ".join(conditions), params

    async def delete_all_rows(self, table_name: str) -> None:
        await self.execute(f"DELETE FROM {self.quote(table_name)}")

    async def drop_tables(self, table_names: Sequence[str]) -> None:
        """按给定顺序删除表，会话内关闭外键检查"""
        if table_names:
            await self._run(self._drop_tables, list(table_names))

    async def disable_foreign_keys(self) -> None:
        self._foreign_keys_enabled = False
        await self.execute(self.disable_foreign_keys_sql)

    async def enable_foreign_keys(self) -> None:
        self._foreign_keys_enabled = True
        await self.execute(self.enable_foreign_keys_sql)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def _fetch_all(self, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            with self.engine.connect() as conn:
                result = self._dispatch(conn, query, params)
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            raise self._query_error(e, query)

    def _execute(self, sql: str, params: Dict[str, Any]) -> None:
        try:
            with self.engine.begin() as conn:
                self._dispatch(conn, sql, params)
        except SQLAlchemyError as e:
            raise self._query_error(e, sql)

    def _dispatch(self, conn, sql: str, params: Dict[str, Any]):
        # DDL 和字面 SQL 不能被解析 :name 绑定参数
        if params:
            return conn.execute(text(sql), params)
        return conn.exec_driver_sql(sql)

    def _write_data(self, table_name: str, data: List[Dict[str, Any]], disable_foreign_keys: bool) -> int:
        columns = list(data[0].keys())
        placeholders = ", ".join(f":p{idx}" for idx in range(len(columns)))
        column_names = ", ".join(self.quote(column) for column in columns)
        query = f"INSERT INTO {self.quote(table_name)} ({column_names}) VALUES ({placeholders})"
        params = [{f"p{idx}": row.get(column) for idx, column in enumerate(columns)} for row in data]

        toggle = disable_foreign_keys and self.session_scoped_foreign_keys
        try:
            with self.engine.connect() as conn:
                if toggle:
                    self._set_foreign_keys(conn, False)
                try:
                    with conn.begin():
                        self._before_insert(conn, table_name)
                        try:
                            conn.execute(text(query), params)
                        finally:
                            self._after_insert(conn, table_name)
                finally:
                    if toggle:
                        self._restore_foreign_keys(conn)
            return len(data)
        except SQLAlchemyError as e:
            raise self._query_error(e, query)

    def _drop_tables(self, table_names: List[str]) -> None:
        statement = None
        try:
            with self.engine.connect() as conn:
                if self.session_scoped_foreign_keys:
                    self._set_foreign_keys(conn, False)
                try:
                    for table_name in table_names:
                        statement = self.builder.build_drop_table(table_name)
                        conn.exec_driver_sql(statement)
                        conn.commit()
                finally:
                    if self.session_scoped_foreign_keys:
                        self._restore_foreign_keys(conn)
        except SQLAlchemyError as e:
            raise self._query_error(e, statement)

    def _set_foreign_keys(self, conn, enabled: bool) -> None:
        # 必须在事务之外执行，否则 SQLite 会忽略该 pragma
        conn.exec_driver_sql(self.enable_foreign_keys_sql if enabled else self.disable_foreign_keys_sql)
        conn.commit()

    def _restore_foreign_keys(self, conn) -> None:
        self._set_foreign_keys(conn, self._foreign_keys_enabled is not False)

    def _before_insert(self, conn, table_name: str) -> None:
        pass

    def _after_insert(self, conn, table_name: str) -> None:
        pass

    def _apply_session_state(self, dbapi_connection, connection_record, connection_proxy) -> None:
        """从连接池取出连接时重放外键开关"""
        if self._foreign_keys_enabled is None or not self.session_scoped_foreign_keys:
            return
        statement = self.enable_foreign_keys_sql if self._foreign_keys_enabled else self.disable_foreign_keys_sql
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(statement)
        finally:
            cursor.close()

    def _query_error(self, error: SQLAlchemyError, statement: Optional[str]) -> QueryError:
        message, code = extract_error_details(error)
        if isinstance(error, DBAPIError) and error.connection_invalidated:
            category = ErrorCategory.TRANSIENT
        else:
            category = error_classifier.classify(error)
        logger.error(f"Failed to execute SQL on {self.config.name}: {statement}, error: {message}")
        return QueryError(message, category=category, sqlstate=code, statement=statement)
