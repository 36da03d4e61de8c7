"""当前后端连接的持有者。

client 为 None 表示尚未配置任何连接，编排层据此在发出请求前
直接把占位消息转为错误状态。
"""

from typing import Optional

from chat_hub.config.settings import settings
from chat_hub.infrastructure.logging.logger import logger
from chat_hub.providers import create_provider
from chat_hub.providers.base import ModelBackendClient
from chat_hub.providers.registry import ProviderConnection


class ConnectionManager:
    def __init__(self, connection: Optional[ProviderConnection] = None, timeout: Optional[float] = None):
        self._timeout = timeout or settings.http_timeout
        self._connection: Optional[ProviderConnection] = None
        self._client: Optional[ModelBackendClient] = None
        if connection is not None:
            self.set_connection(connection)

    @property
    def connection(self) -> Optional[ProviderConnection]:
        return self._connection

    @property
    def client(self) -> Optional[ModelBackendClient]:
        return self._client

    @property
    def timeout(self) -> float:
        return self._timeout

    def set_timeout(self, timeout: float) -> None:
        """修改超时，已配置连接时按新超时重建客户端。"""
        self._timeout = timeout
        if self._connection is not None:
            self._client = create_provider(self._connection, timeout=self._timeout)

    def set_connection(self, connection: ProviderConnection) -> None:
        self._connection = connection
        self._client = create_provider(connection, timeout=self._timeout)
        logger.info(
            "Backend connection configured",
            extra={"extra": {"provider": connection.provider_type.value, "base_url": connection.base_url}},
        )

    def use_client(self, client: ModelBackendClient, connection: Optional[ProviderConnection] = None) -> None:
        """直接注入一个客户端实例（自定义适配器或测试替身）。"""
        self._connection = connection
        self._client = client

    def clear_connection(self) -> None:
        self._connection = None
        self._client = None

    async def test_connection(self, connection: Optional[ProviderConnection] = None) -> bool:
        if connection is not None:
            return await create_provider(connection, timeout=settings.connection_test_timeout).test_connection()
        if self._client is None:
            return False
        return await self._client.test_connection()
