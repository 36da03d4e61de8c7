"""统一的后端请求/响应数据模型。

本模块定义了编排层与各后端适配器之间共享的标准数据结构：

- Role: 消息角色（封闭枚举，增加新角色时所有 match 分支都必须处理）。
- ChatMessage: 一条发往后端的上下文消息（wire 格式之前的中立表示）。
- ChatChunk: 流式调用的一个增量片段。
- ChatResponse: 非流式调用的完整结果。

所有适配器（OllamaClient / LiteLlmClient）只依赖这些模型，
并负责在各自的 API JSON 与这些模型之间做转换。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from chat_hub.tools.definitions import ToolCall


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass(frozen=True)
class ImagePayload:
    """已 base64 编码的图片。"""

    mime_type: str
    data_base64: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data_base64}"


@dataclass(frozen=True)
class ChatMessage:
    """一条上下文消息。

    - role: 消息角色。
    - content: 纯文本内容（文本附件已内联）。
    - images: 用户消息上的图片附件，已 base64 编码。
    - tool_calls: 助手消息发起的工具调用。
    - tool_call_id: 工具结果消息关联的调用 ID。
    """

    role: Role
    content: str
    images: Tuple[ImagePayload, ...] = ()
    tool_calls: Optional[Tuple[ToolCall, ...]] = None
    tool_call_id: Optional[str] = None


@dataclass(frozen=True)
class ChatChunk:
    """流式调用的增量。done=True 表示后端已给出结束标记。"""

    content: str = ""
    done: bool = False
    tool_calls: Optional[List[ToolCall]] = None


@dataclass(frozen=True)
class ChatResponse:
    """一次非流式调用的最终结果。"""

    content: str
    tool_calls: Optional[List[ToolCall]] = None
    raw: Optional[dict] = field(default=None, compare=False)
