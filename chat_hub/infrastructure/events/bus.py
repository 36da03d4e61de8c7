"""应用级事件总线。

由 chat_hub.api.service.create_services() 创建并注入编排层，
shutdown() 时显式关闭；不使用模块级单例。
"""

from dataclasses import dataclass
from typing import Literal, Optional

from chat_hub.domain.conversation import Conversation
from chat_hub.infrastructure.events.broadcast import BroadcastChannel, Subscription

EventKind = Literal[
    "conversation_updated",
    "conversation_deleted",
    "generation_started",
    "generation_finished",
    "generation_cancelled",
]


@dataclass(frozen=True)
class ChatEvent:
    kind: EventKind
    conversation_id: str
    conversation: Optional[Conversation] = None
    detail: Optional[str] = None


class EventBus:
    def __init__(self) -> None:
        self._channel: BroadcastChannel[ChatEvent] = BroadcastChannel()

    @property
    def closed(self) -> bool:
        return self._channel.closed

    def subscribe(self) -> Subscription[ChatEvent]:
        return self._channel.subscribe()

    def publish(self, event: ChatEvent) -> None:
        self._channel.publish(event)

    def close(self) -> None:
        self._channel.close()
