"""Ollama 后端适配器。

- 对话端点: POST {base_url}/api/chat
- 流式格式: 每行一个 JSON 对象（NDJSON），最后一行 "done": true
- 模型列表: GET {base_url}/api/tags

图片以 base64 字符串列表放在 user 消息的 images 字段中。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, assert_never

import httpx

from chat_hub.config.settings import settings
from chat_hub.domain.conversation import ModelParameters
from chat_hub.domain.exceptions import ApiError, NetworkError, ProtocolError
from chat_hub.domain.models import ChatChunk, ChatMessage, ChatResponse, Role
from chat_hub.infrastructure.logging.logger import logger
from chat_hub.providers.base import ModelInfo, as_text, parse_tool_calls, raise_for_status, serialize_tool
from chat_hub.providers.registry import OLLAMA_CONFIG, ProviderType
from chat_hub.tools.definitions import ToolDef


class OllamaClient:
    """Ollama 客户端实现。"""

    provider_type = ProviderType.OLLAMA

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None, cfg=settings):
        self._settings = cfg
        self.base_url = (base_url or OLLAMA_CONFIG.default_base_url).rstrip("/")
        self.timeout = timeout or cfg.http_timeout

    # ---- 连接与模型 ----

    async def test_connection(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._settings.connection_test_timeout, trust_env=False) as client:
                resp = await client.get(f"{self.base_url}{OLLAMA_CONFIG.models_path}")
        except httpx.HTTPError as e:
            logger.warning("Ollama connection test failed", extra={"extra": {"base_url": self.base_url, "error": str(e)}})
            return False
        return 200 <= resp.status_code < 300

    async def list_models(self) -> List[ModelInfo]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, trust_env=False) as client:
                resp = await client.get(f"{self.base_url}{OLLAMA_CONFIG.models_path}")
        except httpx.TimeoutException as e:
            raise NetworkError(code="TIMEOUT", message=f"Request timed out: {e}")
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        raise_for_status(resp.status_code, resp.text, self.provider_type)
        data = self._decode_body(resp)
        return [
            ModelInfo(name=m.get("name") or m.get("model") or "", size=m.get("size"))
            for m in data.get("models") or []
        ]

    # ---- 非流式 ----

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Optional[ModelParameters] = None,
        tools: Optional[Sequence[ToolDef]] = None,
    ) -> ChatResponse:
        payload = self._build_payload(model, messages, options, tools, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, trust_env=False) as client:
                resp = await client.post(f"{self.base_url}{OLLAMA_CONFIG.chat_path}", json=payload)
        except httpx.TimeoutException as e:
            raise NetworkError(code="TIMEOUT", message=f"Request timed out: {e}")
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        raise_for_status(resp.status_code, resp.text, self.provider_type)
        data = self._decode_body(resp)
        if data.get("error"):
            raise ApiError(code="API_ERROR", message=str(data["error"]))
        message = data.get("message") or {}
        return ChatResponse(
            content=message.get("content") or "",
            tool_calls=parse_tool_calls(message.get("tool_calls")),
            raw=data,
        )

    # ---- 流式 ----

    async def chat_stream(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Optional[ModelParameters] = None,
        tools: Optional[Sequence[ToolDef]] = None,
    ) -> AsyncIterator[ChatChunk]:
        payload = self._build_payload(model, messages, options, tools, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, trust_env=False) as client:
                async with client.stream("POST", f"{self.base_url}{OLLAMA_CONFIG.chat_path}", json=payload) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise_for_status(resp.status_code, body, self.provider_type)
                    async for line in resp.aiter_lines():
                        line = line.strip()
                        if not line:
                            continue
                        data = self._decode_line(line)
                        if data is None:
                            continue
                        if data.get("error"):
                            raise ApiError(code="API_ERROR", message=str(data["error"]))
                        message = data.get("message")
                        if not isinstance(message, dict):
                            message = {}
                        chunk = ChatChunk(
                            content=as_text(message.get("content")),
                            done=bool(data.get("done")),
                            tool_calls=parse_tool_calls(message.get("tool_calls")),
                        )
                        yield chunk
                        if chunk.done:
                            return
        except httpx.TimeoutException as e:
            raise NetworkError(code="TIMEOUT", message=f"Request timed out: {e}")
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _build_payload(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Optional[ModelParameters],
        tools: Optional[Sequence[ToolDef]],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [self._message_to_payload(m) for m in messages],
            "stream": stream,
        }
        opts = (options or ModelParameters()).to_ollama_options()
        if opts:
            payload["options"] = opts
        if tools:
            payload["tools"] = [serialize_tool(tool) for tool in tools]
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        match message.role:
            case Role.USER:
                payload: Dict[str, Any] = {"role": "user", "content": message.content}
                if message.images:
                    payload["images"] = [img.data_base64 for img in message.images]
            case Role.ASSISTANT:
                payload = {"role": "assistant", "content": message.content}
                if message.tool_calls:
                    payload["tool_calls"] = [
                        {"function": {"name": call.name, "arguments": call.arguments}}
                        for call in message.tool_calls
                    ]
            case Role.SYSTEM:
                payload = {"role": "system", "content": message.content}
            case Role.TOOL:
                payload = {"role": "tool", "content": message.content}
            case _:
                assert_never(message.role)
        return payload

    def _decode_line(self, line: str) -> Optional[Dict[str, Any]]:
        """解析一行 NDJSON；无法解析或不是 JSON 对象时记录告警并返回 None。"""
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            logger.warning(
                "Skipping malformed stream line",
                extra={"extra": {"provider": self.provider_type.value, "line": line[:200]}},
            )
            return None
        return data

    def _decode_body(self, resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError(code="MALFORMED_RESPONSE", message=f"Invalid JSON from Ollama: {e}")
        if not isinstance(data, dict):
            raise ProtocolError(code="MALFORMED_RESPONSE", message="Unexpected Ollama response shape")
        return data