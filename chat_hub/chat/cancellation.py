"""生成任务登记与取消。

每个会话 ID 至多一条 GenerationEntry，持有：
- 协作式取消令牌（通道在每个挂起点之后、修改状态之前检查）；
- 对外广播快照的 BroadcastChannel；
- 各通道的 asyncio.Task。主通道键为会话 ID，对比模式的第二通道键为 "{id}_model2"，
  两者可以分别跟踪，也会被同一次 cancel(id) 一并拆除。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from chat_hub.domain.conversation import Conversation, ModelSource
from chat_hub.infrastructure.events.broadcast import BroadcastChannel
from chat_hub.infrastructure.logging.logger import logger

# (conversation_id, 仍需收尾的消息 ID 列表)
CancelHook = Callable[[str, List[str], BroadcastChannel[Conversation]], Awaitable[None]]


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


def subscription_key(conversation_id: str, source: Optional[ModelSource] = None) -> str:
    if source is ModelSource.MODEL2:
        return f"{conversation_id}_model2"
    return conversation_id


@dataclass
class GenerationEntry:
    conversation_id: str
    channel: BroadcastChannel[Conversation]
    on_cancel: Optional[CancelHook] = None
    token: CancellationToken = field(default_factory=CancellationToken)
    subscriptions: Dict[str, asyncio.Task] = field(default_factory=dict)
    message_ids: Dict[str, str] = field(default_factory=dict)
    finished: Set[str] = field(default_factory=set)

    @property
    def all_finished(self) -> bool:
        return bool(self.message_ids) and set(self.message_ids) <= self.finished


class CancellationRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, GenerationEntry] = {}
        self._subscriptions: Dict[str, asyncio.Task] = {}

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def get(self, conversation_id: str) -> Optional[GenerationEntry]:
        return self._entries.get(conversation_id)

    def active_ids(self) -> List[str]:
        return list(self._entries)

    def subscription(self, key: str) -> Optional[asyncio.Task]:
        return self._subscriptions.get(key)

    async def register(
        self,
        conversation_id: str,
        channel: BroadcastChannel[Conversation],
        on_cancel: Optional[CancelHook] = None,
    ) -> GenerationEntry:
        """登记新的生成；若存在旧条目，先完整拆除再登记。"""
        if conversation_id in self._entries:
            await self.cancel(conversation_id)
        entry = GenerationEntry(conversation_id=conversation_id, channel=channel, on_cancel=on_cancel)
        self._entries[conversation_id] = entry
        return entry

    def track(self, entry: GenerationEntry, key: str, message_id: str, task: asyncio.Task) -> None:
        entry.subscriptions[key] = task
        entry.message_ids[key] = message_id
        self._subscriptions[key] = task

    def complete(self, entry: GenerationEntry, key: str) -> bool:
        """通道自行到达终态。所有通道都结束时关闭广播并移除条目，返回 True。"""
        if entry.token.cancelled or key in entry.finished:
            return False
        entry.finished.add(key)
        if self._subscriptions.get(key) is entry.subscriptions.get(key):
            self._subscriptions.pop(key, None)
        if not entry.all_finished:
            return False
        if self._entries.get(entry.conversation_id) is entry:
            del self._entries[entry.conversation_id]
        entry.channel.close()
        return True

    async def cancel(self, conversation_id: str) -> bool:
        """取消并拆除该会话的全部通道。没有活动生成时为空操作，返回 False。"""
        entry = self._entries.pop(conversation_id, None)
        if entry is None:
            return False
        entry.token.cancel()
        tasks = []
        for key, task in entry.subscriptions.items():
            if self._subscriptions.get(key) is task:
                self._subscriptions.pop(key, None)
            tasks.append(task)
        await self._stop(tasks)
        pending = [mid for key, mid in entry.message_ids.items() if key not in entry.finished]
        try:
            if entry.on_cancel is not None:
                await entry.on_cancel(conversation_id, pending, entry.channel)
        finally:
            entry.channel.close()
        logger.info(
            "Generation cancelled",
            extra={"extra": {"conversation_id": conversation_id, "channels": list(entry.subscriptions)}},
        )
        return True

    async def cancel_subscription(self, conversation_id: str, source: ModelSource) -> bool:
        """只取消一个通道，另一个通道继续运行。"""
        entry = self._entries.get(conversation_id)
        key = subscription_key(conversation_id, source)
        if entry is None or key not in entry.subscriptions or key in entry.finished:
            return False
        task = entry.subscriptions[key]
        entry.finished.add(key)
        self._subscriptions.pop(key, None)
        await self._stop([task])
        if entry.on_cancel is not None:
            await entry.on_cancel(conversation_id, [entry.message_ids[key]], entry.channel)
        if entry.all_finished:
            if self._entries.get(conversation_id) is entry:
                del self._entries[conversation_id]
            entry.token.cancel()
            entry.channel.close()
        return True

    @staticmethod
    async def _stop(tasks: List[asyncio.Task]) -> None:
        current = asyncio.current_task()
        to_wait = [t for t in tasks if t is not current]
        for task in to_wait:
            if not task.done():
                task.cancel()
        if to_wait:
            await asyncio.gather(*to_wait, return_exceptions=True)
