"""聊天生成编排核心。

负责：
- 会话与消息的全部写入（生成期间编排层是唯一写者）；
- 为单模型 / 对比模式打开一个或两个流式后端通道；
- 把增量合并进会话并逐条持久化、广播只读快照；
- 保证每个会话同一时刻至多一次活动生成，新的发送会先完整拆除旧的生成。

状态机（每个通道）：IDLE -> STREAMING -> {COMPLETE | ERROR | CANCELLED}。
后端错误在通道边界被捕获并转换为该通道消息的 ERROR 状态，不会抛给调用方；
只有"会话不存在"这类调用方错误会直接抛出。
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4
import logging

from chat_hub.chat.cancellation import CancellationRegistry, GenerationEntry, subscription_key
from chat_hub.chat.errors import EMPTY_RESPONSE_TEXT, NO_CONNECTION_TEXT, format_user_facing_error
from chat_hub.chat.history import build_history
from chat_hub.config.settings import settings
from chat_hub.domain.conversation import (
    DEFAULT_TITLE,
    Attachment,
    Conversation,
    ConversationFilter,
    ConversationStore,
    Message,
    ModelParameters,
    ModelSource,
    utc_now,
)
from chat_hub.domain.exceptions import (
    ApiError,
    ConnectionUnavailableError,
    ConversationNotFoundError,
    StoreError,
    ValidationError,
)
from chat_hub.domain.models import ChatMessage
from chat_hub.infrastructure.events.broadcast import BroadcastChannel, Subscription
from chat_hub.infrastructure.events.bus import ChatEvent, EventBus
from chat_hub.infrastructure.logging.logger import logger
from chat_hub.providers.base import ModelBackendClient
from chat_hub.providers.connection import ConnectionManager
from chat_hub.tools.definitions import ToolCall

# send_* 返回的快照流：先收到追加用户消息/占位消息后的快照，所有通道结束或取消后迭代结束
SnapshotStream = Subscription[Conversation]


def new_id() -> str:
    return uuid4().hex


@dataclass(frozen=True)
class _ChannelSlot:
    """一次生成中的一个模型通道。"""

    key: str
    message_id: str
    model: str
    parameters: ModelParameters
    source: Optional[ModelSource] = None


class ChatOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        connections: ConnectionManager,
        events: Optional[EventBus] = None,
        registry: Optional[CancellationRegistry] = None,
        cfg=settings,
    ):
        self._store = store
        self._connections = connections
        self._events = events or EventBus()
        self._registry = registry or CancellationRegistry()
        self._settings = cfg
        # 进程内的会话当前值（写穿缓存）
        self._live: Dict[str, Conversation] = {}
        self._write_locks: Dict[str, asyncio.Lock] = {}
        self._lifecycle_locks: Dict[str, asyncio.Lock] = {}

    @property
    def events(self) -> EventBus:
        return self._events

    # ------------------------------------------------------------------
    # 会话管理
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        model_name: str,
        title: Optional[str] = None,
        system_prompt: Optional[str] = None,
        project_id: Optional[str] = None,
        parameters: Optional[ModelParameters] = None,
    ) -> Conversation:
        now = utc_now()
        conv = Conversation(
            id=new_id(),
            title=title or DEFAULT_TITLE,
            model_name=model_name,
            created_at=now,
            updated_at=now,
            system_prompt=system_prompt,
            project_id=project_id,
            parameters=parameters or ModelParameters(),
        )
        await self._insert(conv)
        self._log(logging.INFO, "Created conversation", {"conversation_id": conv.id}, model=model_name)
        return conv

    async def create_comparison_conversation(
        self,
        model1_name: str,
        model2_name: str,
        title: Optional[str] = None,
        system_prompt: Optional[str] = None,
        project_id: Optional[str] = None,
        parameters1: Optional[ModelParameters] = None,
        parameters2: Optional[ModelParameters] = None,
    ) -> Conversation:
        now = utc_now()
        conv = Conversation(
            id=new_id(),
            title=title or f"Compare: {model1_name} vs {model2_name}",
            model_name=model1_name,
            model2_name=model2_name,
            created_at=now,
            updated_at=now,
            system_prompt=system_prompt,
            project_id=project_id,
            parameters=parameters1 or ModelParameters(),
            parameters2=parameters2 or ModelParameters(),
        )
        await self._insert(conv)
        self._log(
            logging.INFO,
            "Created comparison conversation",
            {"conversation_id": conv.id},
            model1=model1_name,
            model2=model2_name,
        )
        return conv

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        live = self._live.get(conversation_id)
        if live is not None:
            return live
        conv = self._store.get(conversation_id)
        if conv is not None:
            self._live[conversation_id] = conv
        return conv

    def list_conversations(
        self,
        project_id: Optional[str] = None,
        exclude_project_conversations: bool = False,
    ) -> List[Conversation]:
        filter = ConversationFilter(project_id=project_id, exclude_project_conversations=exclude_project_conversations)
        items = [self._live.get(c.id, c) for c in self._store.list(filter)]
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    async def add_message(self, conversation_id: str, message: Message) -> Conversation:
        self._require(conversation_id)
        return await self._commit(conversation_id, lambda c: c.with_message(message))

    async def delete_message(self, conversation_id: str, message_id: str) -> Optional[Conversation]:
        conv = self.get_conversation(conversation_id)
        if conv is None:
            return None
        messages = tuple(m for m in conv.messages if m.id != message_id)
        return await self._commit(conversation_id, lambda c: c.touch(messages=messages))

    async def clear_conversation(self, conversation_id: str) -> Optional[Conversation]:
        if self.get_conversation(conversation_id) is None:
            return None
        await self.cancel_generation(conversation_id)
        return await self._commit(conversation_id, lambda c: c.touch(messages=()))

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.cancel_generation(conversation_id)
        async with self._write_lock(conversation_id):
            await asyncio.to_thread(self._store.delete, conversation_id)
            self._live.pop(conversation_id, None)
        self._write_locks.pop(conversation_id, None)
        self._lifecycle_locks.pop(conversation_id, None)
        self._events.publish(ChatEvent(kind="conversation_deleted", conversation_id=conversation_id))
        self._log(logging.INFO, "Deleted conversation", {"conversation_id": conversation_id})

    # ------------------------------------------------------------------
    # 生成
    # ------------------------------------------------------------------

    def is_generating(self, conversation_id: str) -> bool:
        return self._registry.is_active(conversation_id)

    async def send_message(self, conversation_id: str, text: str) -> SnapshotStream:
        """追加用户消息与占位助手消息，然后开始流式生成。"""
        async with self._lifecycle_lock(conversation_id):
            await self._registry.cancel(conversation_id)
            conv = self._require(conversation_id)
            user_message = Message.user(id=new_id(), text=text, timestamp=utc_now())
            slot = self._single_slot(conv)
            return await self._start_generation(conversation_id, [user_message], [slot])

    async def send_message_with_context(self, conversation_id: str) -> SnapshotStream:
        """调用方已追加上下文消息（如带附件的用户消息），这里只生成回复。"""
        async with self._lifecycle_lock(conversation_id):
            await self._registry.cancel(conversation_id)
            conv = self._require(conversation_id)
            return await self._start_generation(conversation_id, [], [self._single_slot(conv)])

    async def send_dual_model_message(
        self,
        conversation_id: str,
        text: str,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> SnapshotStream:
        """对比模式：同一条用户消息同时发给两个模型，两个通道互不阻塞。"""
        async with self._lifecycle_lock(conversation_id):
            await self._registry.cancel(conversation_id)
            conv = self._require(conversation_id)
            if not conv.is_comparison:
                raise ValidationError(
                    code="NOT_COMPARISON",
                    message=f"Not a comparison conversation: {conversation_id}",
                )
            user_message = Message.user(
                id=new_id(),
                text=text,
                timestamp=utc_now(),
                attachments=list(attachments or ()),
                model_source=ModelSource.USER,
            )
            slots = [
                _ChannelSlot(
                    key=subscription_key(conversation_id, ModelSource.MODEL1),
                    message_id=new_id(),
                    model=conv.model_name,
                    parameters=conv.parameters,
                    source=ModelSource.MODEL1,
                ),
                _ChannelSlot(
                    key=subscription_key(conversation_id, ModelSource.MODEL2),
                    message_id=new_id(),
                    model=conv.model2_name or "",
                    parameters=conv.parameters2,
                    source=ModelSource.MODEL2,
                ),
            ]
            return await self._start_generation(conversation_id, [user_message], slots)

    async def send_message_sync(self, conversation_id: str, text: str) -> Conversation:
        """非流式的一问一答：追加用户消息，等待完整回复后追加助手消息或错误消息。"""
        async with self._lifecycle_lock(conversation_id):
            await self._registry.cancel(conversation_id)
            self._require(conversation_id)
            user_message = Message.user(id=new_id(), text=text, timestamp=utc_now())
            conv = await self._commit(conversation_id, lambda c: c.with_message(user_message))

        client = self._connections.client
        log_ctx = {"conversation_id": conversation_id, "trace_id": f"tr-{new_id()}"}
        try:
            if client is None:
                raise ConnectionUnavailableError(code="NO_CONNECTION", message=NO_CONNECTION_TEXT)
            response = await client.chat(conv.model_name, build_history(conv), options=conv.parameters)
            reply = Message.assistant(id=new_id(), text=response.content, timestamp=utc_now())
            if response.tool_calls:
                reply = replace(reply, tool_calls=tuple(response.tool_calls))
        except Exception as exc:
            self._log(logging.WARNING, "Synchronous chat failed", log_ctx, error=str(exc))
            reply = Message.error(id=new_id(), error_message=self._describe(exc), timestamp=utc_now())
        return await self._commit(conversation_id, lambda c: c.with_message(reply))

    async def cancel_generation(self, conversation_id: str) -> bool:
        """取消该会话的活动生成；没有活动生成时为空操作。返回时拆除已完成。"""
        async with self._lifecycle_lock(conversation_id):
            return await self._registry.cancel(conversation_id)

    async def cancel_channel(self, conversation_id: str, source: ModelSource) -> bool:
        """对比模式下单独取消一个通道。"""
        async with self._lifecycle_lock(conversation_id):
            return await self._registry.cancel_subscription(conversation_id, source)

    async def dispose(self) -> None:
        for conversation_id in self._registry.active_ids():
            await self.cancel_generation(conversation_id)

    # ------------------------------------------------------------------
    # 内部：生成生命周期
    # ------------------------------------------------------------------

    def _single_slot(self, conv: Conversation) -> _ChannelSlot:
        return _ChannelSlot(
            key=subscription_key(conv.id),
            message_id=new_id(),
            model=conv.model_name,
            parameters=conv.parameters,
        )

    async def _start_generation(
        self,
        conversation_id: str,
        prepend: List[Message],
        slots: List[_ChannelSlot],
    ) -> SnapshotStream:
        log_ctx: Dict[str, Any] = {"conversation_id": conversation_id, "trace_id": f"tr-{new_id()}"}
        channel: BroadcastChannel[Conversation] = BroadcastChannel()
        stream = channel.subscribe()

        for message in prepend:
            await self._commit(conversation_id, lambda c, m=message: c.with_message(m), channel)

        now = utc_now()
        placeholders = [
            Message.assistant(id=s.message_id, text="", timestamp=now, is_streaming=True, model_source=s.source)
            for s in slots
        ]

        def append_placeholders(c: Conversation) -> Conversation:
            for p in placeholders:
                c = c.with_message(p)
            return c

        conv = await self._commit(conversation_id, append_placeholders, channel)

        client = self._connections.client
        if client is None:
            self._log(logging.WARNING, "No backend connection configured", log_ctx)
            exc = ConnectionUnavailableError(code="NO_CONNECTION", message=NO_CONNECTION_TEXT)
            for slot in slots:
                await self._fail_message(conversation_id, slot, exc, channel)
            channel.close()
            return stream

        entry = await self._registry.register(conversation_id, channel, on_cancel=self._finalize_cancelled)
        exclude_ids = {s.message_id for s in slots}
        for slot in slots:
            history = build_history(
                conv,
                exclude_ids=exclude_ids,
                channel=slot.source,
                cancelled_text=self._settings.cancelled_text,
            )
            task = asyncio.create_task(
                self._run_channel(entry, slot, client, history, log_ctx),
                name=f"chat-{slot.key}",
            )
            self._registry.track(entry, slot.key, slot.message_id, task)

        self._events.publish(ChatEvent(kind="generation_started", conversation_id=conversation_id, conversation=conv))
        self._log(
            logging.INFO,
            "Generation started",
            log_ctx,
            channels=[s.key for s in slots],
            models=[s.model for s in slots],
        )
        return stream

    async def _run_channel(
        self,
        entry: GenerationEntry,
        slot: _ChannelSlot,
        client: ModelBackendClient,
        history: List[ChatMessage],
        log_ctx: Dict[str, Any],
    ) -> None:
        conversation_id = entry.conversation_id
        token = entry.token
        parts: List[str] = []
        tool_calls: List[ToolCall] = []
        try:
            if self._settings.stream_enabled:
                # 提前退出时立即关闭底层 HTTP 流
                async with aclosing(client.chat_stream(slot.model, history, options=slot.parameters)) as stream:
                    async for chunk in stream:
                        if token.cancelled:
                            return
                        if chunk.tool_calls:
                            tool_calls.extend(chunk.tool_calls)
                        if chunk.content:
                            parts.append(chunk.content)
                            await self._update_message(
                                conversation_id, slot.message_id, "".join(parts), True, tool_calls, entry.channel
                            )
                        if chunk.done:
                            break
            else:
                response = await client.chat(slot.model, history, options=slot.parameters)
                parts.append(response.content)
                tool_calls.extend(response.tool_calls or [])
            if token.cancelled:
                return

            text = "".join(parts)
            if not text.strip() and not tool_calls:
                empty = ApiError(code="EMPTY_RESPONSE", message=EMPTY_RESPONSE_TEXT)
                await self._fail_message(conversation_id, slot, empty, entry.channel)
                self._log(logging.WARNING, "Empty response", log_ctx, channel=slot.key)
                return

            await self._update_message(conversation_id, slot.message_id, text, False, tool_calls, entry.channel)
            self._log(logging.INFO, "Channel completed", log_ctx, channel=slot.key, chars=len(text))
        except Exception as exc:
            if token.cancelled:
                return
            self._log(logging.WARNING, "Channel failed", log_ctx, channel=slot.key, error=str(exc))
            try:
                await self._fail_message(conversation_id, slot, exc, entry.channel)
            except StoreError:
                logger.exception("Failed to persist error state", extra={"extra": {**log_ctx, "channel": slot.key}})
        finally:
            if self._registry.complete(entry, slot.key):
                self._events.publish(
                    ChatEvent(
                        kind="generation_finished",
                        conversation_id=conversation_id,
                        conversation=self._live.get(conversation_id),
                    )
                )

    async def _update_message(
        self,
        conversation_id: str,
        message_id: str,
        text: str,
        is_streaming: bool,
        tool_calls: List[ToolCall],
        channel: BroadcastChannel[Conversation],
    ) -> None:
        def mutate(conv: Conversation) -> Conversation:
            current = conv.find_message(message_id)
            if current is None or not current.is_streaming:
                return conv
            updated = replace(
                current,
                text=text,
                is_streaming=is_streaming,
                tool_calls=tuple(tool_calls) if tool_calls else current.tool_calls,
            )
            return conv.with_replaced_message(updated)

        await self._commit(conversation_id, mutate, channel)

    async def _fail_message(
        self,
        conversation_id: str,
        slot: _ChannelSlot,
        exc: BaseException,
        channel: BroadcastChannel[Conversation],
    ) -> None:
        description = self._describe(exc)

        def mutate(conv: Conversation) -> Conversation:
            current = conv.find_message(slot.message_id)
            if current is None or not current.is_streaming:
                return conv
            error = Message.error(
                id=slot.message_id,
                error_message=description,
                timestamp=utc_now(),
                model_source=slot.source,
            )
            return conv.with_replaced_message(error)

        await self._commit(conversation_id, mutate, channel)

    async def _finalize_cancelled(
        self,
        conversation_id: str,
        message_ids: List[str],
        channel: BroadcastChannel[Conversation],
    ) -> None:
        """取消收尾：仍在流式中的消息置为结束，空文本写入取消占位文本。"""
        conv = self._live.get(conversation_id)
        if conv is None:
            return
        targets = set(message_ids)

        def mutate(c: Conversation) -> Conversation:
            messages = tuple(
                replace(m, is_streaming=False, text=m.text or self._settings.cancelled_text)
                if m.id in targets and m.is_streaming
                else m
                for m in c.messages
            )
            return c.touch(messages=messages)

        if any(m.is_streaming for m in conv.messages if m.id in targets):
            conv = await self._commit(conversation_id, mutate, channel)
        self._events.publish(
            ChatEvent(kind="generation_cancelled", conversation_id=conversation_id, conversation=conv)
        )

    # ------------------------------------------------------------------
    # 内部：状态写入
    # ------------------------------------------------------------------

    async def _insert(self, conversation: Conversation) -> None:
        self._live[conversation.id] = conversation
        await asyncio.shield(self._write_latest(conversation.id, conversation))
        self._events.publish(
            ChatEvent(kind="conversation_updated", conversation_id=conversation.id, conversation=conversation)
        )

    def _require(self, conversation_id: str) -> Conversation:
        conv = self.get_conversation(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(conversation_id)
        return conv

    async def _commit(
        self,
        conversation_id: str,
        mutate: Callable[[Conversation], Conversation],
        channel: Optional[BroadcastChannel[Conversation]] = None,
    ) -> Conversation:
        """修改当前值 -> 持久化 -> 广播最新快照。

        修改本身是同步的，不会与其他通道交错；持久化按会话串行，
        并且总是写入执行时刻的最新值，先排队的写入不会覆盖后来的修改。
        """
        current = self._live.get(conversation_id)
        if current is None:
            current = self._require(conversation_id)
        updated = mutate(current)
        if updated is current:
            return current
        self._live[conversation_id] = updated
        await asyncio.shield(self._write_latest(conversation_id, updated))
        latest = self._live.get(conversation_id, updated)
        if channel is not None:
            channel.publish(latest)
        self._events.publish(ChatEvent(kind="conversation_updated", conversation_id=conversation_id, conversation=latest))
        return updated

    async def _write_latest(self, conversation_id: str, fallback: Conversation) -> None:
        async with self._write_lock(conversation_id):
            snapshot = self._live.get(conversation_id, fallback)
            await asyncio.to_thread(self._store.upsert, snapshot)

    def _write_lock(self, conversation_id: str) -> asyncio.Lock:
        return self._write_locks.setdefault(conversation_id, asyncio.Lock())

    def _lifecycle_lock(self, conversation_id: str) -> asyncio.Lock:
        return self._lifecycle_locks.setdefault(conversation_id, asyncio.Lock())

    def _describe(self, exc: BaseException) -> str:
        connection = self._connections.connection
        return format_user_facing_error(exc, connection.base_url if connection else None)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
