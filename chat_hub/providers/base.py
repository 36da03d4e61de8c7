"""后端客户端抽象接口。

编排层不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每种后端协议实现一个 ModelBackendClient（OllamaClient / LiteLlmClient）。
- 负责：将 ChatMessage 列表转成具体 API 请求，并把响应解析为 ChatResponse / ChatChunk。
- 错误按类型区分：AuthenticationError、RateLimitError、NetworkError/ApiError/ProtocolError。

新增后端只需实现本协议并在 providers.create_provider 的工厂分支中注册。
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

from chat_hub.domain.conversation import ModelParameters
from chat_hub.domain.exceptions import ApiError, AuthenticationError, RateLimitError
from chat_hub.domain.models import ChatChunk, ChatMessage, ChatResponse
from chat_hub.providers.registry import ProviderType
from chat_hub.tools.definitions import ToolCall, ToolDef


@dataclass(frozen=True)
class ModelInfo:
    name: str
    size: Optional[int] = None
    owned_by: Optional[str] = None


class ModelBackendClient(Protocol):
    """后端客户端协议。

    实现者需要提供：
    - provider_type: 后端类型，用于日志与错误提示。
    - base_url: 服务地址。
    - test_connection(): 连通性检查，失败返回 False 而不抛异常。
    - chat(): 一次非流式调用。
    - chat_stream(): 一次流式调用，惰性产出增量，最后一个增量 done=True。
    """

    provider_type: ProviderType
    base_url: str

    async def test_connection(self) -> bool:
        ...

    async def list_models(self) -> List[ModelInfo]:
        ...

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Optional[ModelParameters] = None,
        tools: Optional[Sequence[ToolDef]] = None,
    ) -> ChatResponse:
        ...

    def chat_stream(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Optional[ModelParameters] = None,
        tools: Optional[Sequence[ToolDef]] = None,
    ) -> AsyncIterator[ChatChunk]:
        ...


# ---- 适配器共用的辅助函数 ----


def raise_for_status(status_code: int, body: str, provider: ProviderType) -> None:
    """把 HTTP 状态码映射为带类型的业务异常。"""

    if status_code < 400:
        return
    if status_code in (401, 403):
        raise AuthenticationError(
            code="AUTH_FAILED",
            message=f"{provider.value} authentication failed",
            http_status=status_code,
            provider=provider.value,
        )
    if status_code == 429:
        raise RateLimitError(
            code="RATE_LIMIT",
            message=f"{provider.value} rate limit",
            http_status=status_code,
            provider=provider.value,
        )
    raise ApiError(
        code="API_ERROR",
        message=body or f"{provider.value} request failed with status {status_code}",
        http_status=status_code,
        provider=provider.value,
    )


def serialize_tool(tool: ToolDef) -> Dict[str, Any]:
    """ToolDef -> function-calling JSON schema（Ollama 与 OpenAI 格式一致）。"""

    properties: Dict[str, Any] = {}
    required: List[str] = []
    for name, param in tool.params.items():
        schema = param.schema or {"type": "string"}
        if param.description:
            schema = {**schema, "description": param.description}
        properties[name] = schema
        if param.required:
            required.append(name)
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


def parse_tool_calls(raw_calls: Optional[List[Dict[str, Any]]]) -> Optional[List[ToolCall]]:
    """解析后端返回的 tool_calls，兼容 arguments 为字符串或对象两种形式。"""

    if not raw_calls or not isinstance(raw_calls, list):
        return None
    calls: List[ToolCall] = []
    for idx, call in enumerate(raw_calls):
        if not isinstance(call, dict):
            continue
        func = call.get("function")
        if not isinstance(func, dict):
            func = {}
        calls.append(
            ToolCall(
                id=call.get("id") or f"tool_call_{idx}",
                name=func.get("name") or call.get("name") or "",
                arguments=_parse_arguments(func.get("arguments")),
            )
        )
    return calls or None


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return parsed if isinstance(parsed, dict) else {"_raw": raw}
    return {}


def as_text(value: Any) -> str:
    """流式增量中的 content 只接受字符串，其他类型按空文本处理。"""

    return value if isinstance(value, str) else ""
