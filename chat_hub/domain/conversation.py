"""会话与消息的领域模型，以及 ConversationStore 抽象。

所有模型都是不可变的 dataclass：编排层通过 dataclasses.replace
生成新版本并替换自己持有的"当前值"，对外发布的快照因此天然只读。
"""

import base64
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from chat_hub.domain.models import Role
from chat_hub.tools.definitions import ToolCall

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 40


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _dt_from_str(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class ModelSource(str, Enum):
    """对比模式下消息的来源槽位。"""

    USER = "user"
    MODEL1 = "model1"
    MODEL2 = "model2"


@dataclass(frozen=True)
class Attachment:
    id: str
    name: str
    mime_type: str
    data: bytes
    size: int

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_text_file(self) -> bool:
        return not self.is_image and (
            self.mime_type.startswith("text/") or self.mime_type == "application/json"
        )

    @property
    def text_content(self) -> Optional[str]:
        if not self.is_text_file:
            return None
        try:
            return self.data.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mimeType": self.mime_type,
            "data": base64.b64encode(self.data).decode("ascii"),
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            id=data["id"],
            name=data["name"],
            mime_type=data["mimeType"],
            data=base64.b64decode(data["data"]),
            size=int(data["size"]),
        )


@dataclass(frozen=True)
class Message:
    """会话中的一条消息。

    流式生成期间，占位助手消息 is_streaming=True，文本按增量只增不减；
    进入 COMPLETE / ERROR / CANCELLED 后 is_streaming=False，之后不再由编排层修改。
    """

    id: str
    role: Role
    text: str
    timestamp: datetime
    is_streaming: bool = False
    is_error: bool = False
    error_message: Optional[str] = None
    attachments: Tuple[Attachment, ...] = ()
    tool_calls: Optional[Tuple[ToolCall, ...]] = None
    tool_call_id: Optional[str] = None
    model_source: Optional[ModelSource] = None

    @classmethod
    def user(
        cls,
        id: str,
        text: str,
        timestamp: datetime,
        attachments: Optional[List[Attachment]] = None,
        model_source: Optional[ModelSource] = None,
    ) -> "Message":
        return cls(
            id=id,
            role=Role.USER,
            text=text,
            timestamp=timestamp,
            attachments=tuple(attachments or ()),
            model_source=model_source,
        )

    @classmethod
    def assistant(
        cls,
        id: str,
        text: str,
        timestamp: datetime,
        is_streaming: bool = False,
        model_source: Optional[ModelSource] = None,
    ) -> "Message":
        return cls(
            id=id,
            role=Role.ASSISTANT,
            text=text,
            timestamp=timestamp,
            is_streaming=is_streaming,
            model_source=model_source,
        )

    @classmethod
    def system(cls, id: str, text: str, timestamp: datetime) -> "Message":
        return cls(id=id, role=Role.SYSTEM, text=text, timestamp=timestamp)

    @classmethod
    def error(
        cls,
        id: str,
        error_message: str,
        timestamp: datetime,
        model_source: Optional[ModelSource] = None,
    ) -> "Message":
        return cls(
            id=id,
            role=Role.ASSISTANT,
            text=f"Error: {error_message}",
            timestamp=timestamp,
            is_error=True,
            error_message=error_message,
            model_source=model_source,
        )

    @classmethod
    def tool_result(cls, id: str, tool_call_id: str, content: str, timestamp: datetime) -> "Message":
        return cls(id=id, role=Role.TOOL, text=content, timestamp=timestamp, tool_call_id=tool_call_id)

    @property
    def images(self) -> List[Attachment]:
        return [a for a in self.attachments if a.is_image]

    @property
    def text_files(self) -> List[Attachment]:
        return [a for a in self.attachments if a.is_text_file]

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "timestamp": _dt_to_str(self.timestamp),
            "isStreaming": self.is_streaming,
            "isError": self.is_error,
            "errorMessage": self.error_message,
            "attachments": [a.to_dict() for a in self.attachments],
        }
        if self.tool_calls is not None:
            payload["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            payload["toolCallId"] = self.tool_call_id
        if self.model_source is not None:
            payload["modelSource"] = self.model_source.value
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        tool_calls_raw = data.get("toolCalls")
        model_source = data.get("modelSource")
        return cls(
            id=data["id"],
            role=Role(data.get("role") or "user"),
            text=data.get("text") or "",
            timestamp=_dt_from_str(data["timestamp"]),
            is_streaming=bool(data.get("isStreaming", False)),
            is_error=bool(data.get("isError", False)),
            error_message=data.get("errorMessage"),
            attachments=tuple(Attachment.from_dict(a) for a in data.get("attachments") or []),
            tool_calls=(
                tuple(ToolCall.from_dict(tc) for tc in tool_calls_raw)
                if tool_calls_raw is not None
                else None
            ),
            tool_call_id=data.get("toolCallId"),
            model_source=ModelSource(model_source) if model_source else None,
        )


@dataclass(frozen=True)
class ModelParameters:
    """单个模型槽位的生成参数。None 表示使用后端默认值。"""

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_tokens: Optional[int] = None

    def to_ollama_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.top_p is not None:
            options["top_p"] = self.top_p
        if self.top_k is not None:
            options["top_k"] = self.top_k
        if self.max_tokens is not None:
            options["num_predict"] = self.max_tokens
        return options

    def to_openai_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.top_p is not None:
            options["top_p"] = self.top_p
        if self.max_tokens is not None:
            options["max_tokens"] = self.max_tokens
        return options

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "topP": self.top_p,
            "topK": self.top_k,
            "maxTokens": self.max_tokens,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModelParameters":
        data = data or {}
        return cls(
            temperature=data.get("temperature"),
            top_p=data.get("topP"),
            top_k=data.get("topK"),
            max_tokens=data.get("maxTokens"),
        )


@dataclass(frozen=True)
class Conversation:
    """一个会话。

    设置了 model2_name 即为对比会话（两个模型槽位，各自一套参数）。
    """

    id: str
    title: str
    model_name: str
    created_at: datetime
    updated_at: datetime
    messages: Tuple[Message, ...] = ()
    system_prompt: Optional[str] = None
    project_id: Optional[str] = None
    parameters: ModelParameters = field(default_factory=ModelParameters)
    model2_name: Optional[str] = None
    parameters2: ModelParameters = field(default_factory=ModelParameters)

    @property
    def is_comparison(self) -> bool:
        return self.model2_name is not None

    @property
    def model1_name(self) -> str:
        return self.model_name

    def find_message(self, message_id: str) -> Optional[Message]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def next_updated_at(self) -> datetime:
        """返回严格大于当前 updated_at 的时间戳。"""
        now = utc_now()
        floor = self.updated_at + timedelta(microseconds=1)
        return now if now > floor else floor

    def touch(self, **changes: Any) -> "Conversation":
        """应用变更并推进 updated_at。"""
        return replace(self, updated_at=self.next_updated_at(), **changes)

    def with_message(self, message: Message) -> "Conversation":
        title = self.title
        if title == DEFAULT_TITLE and message.role is Role.USER and message.text.strip():
            title = generate_title(message.text)
        return self.touch(messages=self.messages + (message,), title=title)

    def with_replaced_message(self, message: Message) -> "Conversation":
        messages = tuple(message if m.id == message.id else m for m in self.messages)
        return self.touch(messages=messages)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "modelName": self.model_name,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": _dt_to_str(self.created_at),
            "updatedAt": _dt_to_str(self.updated_at),
            "systemPrompt": self.system_prompt,
            "projectId": self.project_id,
            "parameters": self.parameters.to_dict(),
        }
        if self.is_comparison:
            payload["isComparisonMode"] = True
            payload["model2Name"] = self.model2_name
            payload["parameters2"] = self.parameters2.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        is_comparison = bool(data.get("isComparisonMode"))
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            model_name=data["modelName"],
            created_at=_dt_from_str(data["createdAt"]),
            updated_at=_dt_from_str(data["updatedAt"]),
            messages=tuple(Message.from_dict(m) for m in data.get("messages") or []),
            system_prompt=data.get("systemPrompt"),
            project_id=data.get("projectId"),
            parameters=ModelParameters.from_dict(data.get("parameters")),
            model2_name=data.get("model2Name") if is_comparison else None,
            parameters2=ModelParameters.from_dict(data.get("parameters2")),
        )


def generate_title(first_message: str) -> str:
    cleaned = first_message.strip()
    if len(cleaned) <= TITLE_MAX_CHARS:
        return cleaned
    return f"{cleaned[:TITLE_MAX_CHARS]}..."


@dataclass(frozen=True)
class ConversationFilter:
    project_id: Optional[str] = None
    exclude_project_conversations: bool = False

    def matches(self, conversation: Conversation) -> bool:
        if self.project_id is not None:
            return conversation.project_id == self.project_id
        if self.exclude_project_conversations:
            return conversation.project_id is None
        return True


class ConversationStore(Protocol):
    def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def upsert(self, conversation: Conversation) -> None:
        ...

    def delete(self, conversation_id: str) -> None:
        ...

    def list(self, filter: Optional[ConversationFilter] = None) -> List[Conversation]:
        """按 updated_at 倒序返回。"""
        ...
