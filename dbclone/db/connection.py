import asyncio
from typing import Dict

from loguru import logger

from dbclone.connectors.base import BaseConnector
from dbclone.connectors.factory import ConnectorFactory
from dbclone.models.config import ConnectionDescriptor


class ConnectionManager:
    """
    单次运行内的连接池

    连接按 ``{run_id}_{name}_{driver}`` 缓存，不同运行之间不共享会话，
    同一次运行中对同一数据库的请求复用已有连接
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._connections: Dict[str, BaseConnector] = {}
        self._lock = asyncio.Lock()

    async def get_connection(self, descriptor: ConnectionDescriptor) -> BaseConnector:
        name = descriptor.connection_name(self.run_id)
        async with self._lock:
            connector = self._connections.get(name)
            if connector is None:
                connector = ConnectorFactory.get_connector(descriptor, name)
                await connector.connect()
                self._connections[name] = connector
                logger.debug(f"Registered connection {name}")
            return connector

    def is_open(self, descriptor: ConnectionDescriptor) -> bool:
        return descriptor.connection_name(self.run_id) in self._connections

    async def close(self, descriptor: ConnectionDescriptor) -> None:
        connector = self._connections.pop(descriptor.connection_name(self.run_id), None)
        if connector:
            await connector.disconnect()

    async def close_all(self) -> None:
        async with self._lock:
            connectors = list(self._connections.values())
            self._connections.clear()
        for connector in connectors:
            await connector.disconnect()
