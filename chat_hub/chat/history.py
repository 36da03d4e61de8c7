"""把会话消息转换为后端上下文。

build_history 是纯函数，规则按顺序应用：

1. 设置了 system_prompt 时首先输出。
2. 跳过 exclude_ids 中的消息（正在生成的占位消息）。
3. 跳过错误消息。
4. 跳过空文本、仍在流式中的消息，以及取消占位文本。
5. 对比模式下按通道过滤：只保留用户消息与本通道模型自己的历史输出。
6. user 消息的图片附件 base64 编码，文本附件内联进正文。

输出顺序与会话中的消息顺序完全一致。
"""

import base64
from typing import Collection, List, Optional, assert_never

from chat_hub.config.settings import settings
from chat_hub.domain.conversation import Conversation, Message, ModelSource
from chat_hub.domain.models import ChatMessage, ImagePayload, Role


def build_history(
    conversation: Conversation,
    exclude_ids: Collection[str] = (),
    channel: Optional[ModelSource] = None,
    cancelled_text: Optional[str] = None,
) -> List[ChatMessage]:
    marker = settings.cancelled_text if cancelled_text is None else cancelled_text
    messages: List[ChatMessage] = []

    if conversation.system_prompt and conversation.system_prompt.strip():
        messages.append(ChatMessage(role=Role.SYSTEM, content=conversation.system_prompt))

    for msg in conversation.messages:
        if msg.id in exclude_ids or msg.is_error:
            continue
        if msg.is_streaming or (not msg.text.strip() and not msg.attachments and not msg.has_tool_calls):
            continue
        if msg.role is Role.ASSISTANT and msg.text == marker:
            continue
        if channel is not None and conversation.is_comparison and not _visible_to(msg, channel):
            continue
        messages.append(to_chat_message(msg))

    return messages


def _visible_to(message: Message, channel: ModelSource) -> bool:
    if message.role is Role.USER or message.model_source is ModelSource.USER:
        return True
    return message.model_source is channel


def to_chat_message(message: Message) -> ChatMessage:
    match message.role:
        case Role.USER:
            return ChatMessage(
                role=Role.USER,
                content=_content_with_text_files(message),
                images=tuple(
                    ImagePayload(mime_type=a.mime_type, data_base64=base64.b64encode(a.data).decode("ascii"))
                    for a in message.images
                ),
            )
        case Role.ASSISTANT:
            return ChatMessage(role=Role.ASSISTANT, content=message.text, tool_calls=message.tool_calls)
        case Role.SYSTEM:
            return ChatMessage(role=Role.SYSTEM, content=message.text)
        case Role.TOOL:
            return ChatMessage(role=Role.TOOL, content=message.text, tool_call_id=message.tool_call_id)
        case _:
            assert_never(message.role)


def _content_with_text_files(message: Message) -> str:
    files = message.text_files
    if not files:
        return message.text
    parts = [message.text]
    for file in files:
        content = file.text_content
        if content is None:
            continue
        parts.append(f"\n\n--- File: {file.name} ---\n{content}\n--- End of {file.name} ---")
    return "".join(parts)
