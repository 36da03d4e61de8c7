"""后端集成层。

该包下的模块负责：
- 定义后端客户端抽象接口 (base)。
- 维护后端类型与连接配置 (registry)。
- 提供两种协议的具体实现 (ollama_client、litellm_client)。
- 管理当前生效的连接 (connection)。
"""

from typing import Optional

from chat_hub.config.settings import settings
from chat_hub.providers.base import ModelBackendClient
from chat_hub.providers.litellm_client import LiteLlmClient
from chat_hub.providers.ollama_client import OllamaClient
from chat_hub.providers.registry import ProviderConnection, ProviderType


def create_provider(connection: ProviderConnection, timeout: Optional[float] = None) -> ModelBackendClient:
    """根据连接的后端类型创建客户端实例。"""

    match connection.provider_type:
        case ProviderType.OLLAMA:
            return OllamaClient(base_url=connection.base_url, timeout=timeout, cfg=settings)
        case ProviderType.LITELLM:
            return LiteLlmClient(
                base_url=connection.base_url,
                api_key=connection.api_key,
                timeout=timeout,
                cfg=settings,
            )
    raise KeyError(f"Unknown provider: {connection.provider_type!r}")


def default_connection() -> ProviderConnection:
    """按配置中的 default_provider 构造默认连接。"""

    provider_type = ProviderType(settings.default_provider)
    if provider_type is ProviderType.LITELLM:
        return ProviderConnection(
            provider_type=provider_type,
            base_url=settings.litellm_base_url,
            api_key=settings.litellm_api_key,
        )
    return ProviderConnection(provider_type=provider_type, base_url=settings.ollama_base_url)
