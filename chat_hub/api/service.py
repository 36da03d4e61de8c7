"""对外 API 服务模块。

进程边界处显式创建和关闭服务集合，供上层应用（UI、CLI、HTTP 层）调用：

    services = create_services()
    stream = await services.orchestrator.send_message(conv.id, "Hi")
    async for snapshot in stream:
        ...
    await shutdown(services)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from chat_hub.chat.orchestrator import ChatOrchestrator
from chat_hub.config.settings import Settings, settings
from chat_hub.domain.conversation import Conversation, ConversationStore
from chat_hub.infrastructure.events.bus import EventBus
from chat_hub.infrastructure.logging.logger import logger
from chat_hub.infrastructure.storage.json_store import JsonConversationStore
from chat_hub.providers import default_connection
from chat_hub.providers.connection import ConnectionManager
from chat_hub.providers.registry import ProviderConnection
from chat_hub.tools.executor import ToolExecutor, default_executor


@dataclass
class ChatServices:
    settings: Settings
    store: ConversationStore
    connections: ConnectionManager
    events: EventBus
    orchestrator: ChatOrchestrator
    tools: ToolExecutor


def create_services(
    storage_root: Optional[str | Path] = None,
    connection: Optional[ProviderConnection] = None,
    store: Optional[ConversationStore] = None,
    use_default_connection: bool = True,
) -> ChatServices:
    """创建一组互相连接的服务实例。

    Args:
        storage_root: JSON 存储根目录，默认取 settings.storage_root。
        connection: 初始后端连接；为 None 且 use_default_connection 为真时按配置构造。
        store: 自定义 ConversationStore（优先于 storage_root）。
        use_default_connection: 为假时不配置任何连接，发送消息会得到"未配置连接"错误。
    """
    if connection is None and use_default_connection:
        connection = default_connection()
    conv_store = store or JsonConversationStore(root=storage_root or settings.storage_root)
    connections = ConnectionManager(connection)
    events = EventBus()
    orchestrator = ChatOrchestrator(store=conv_store, connections=connections, events=events, cfg=settings)
    logger.info(
        "Chat services created",
        extra={"extra": {"provider": connection.provider_type.value if connection else None}},
    )
    return ChatServices(
        settings=settings,
        store=conv_store,
        connections=connections,
        events=events,
        orchestrator=orchestrator,
        tools=default_executor(),
    )


async def shutdown(services: ChatServices) -> None:
    """取消全部活动生成并关闭事件总线。"""
    await services.orchestrator.dispose()
    services.events.close()
    logger.info("Chat services shut down")


def conversation_summary(conversation: Conversation) -> Dict[str, Any]:
    """会话列表展示用的摘要。"""
    return {
        "id": conversation.id,
        "title": conversation.title,
        "model_name": conversation.model_name,
        "model2_name": conversation.model2_name,
        "is_comparison": conversation.is_comparison,
        "project_id": conversation.project_id,
        "message_count": len(conversation.messages),
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
    }
