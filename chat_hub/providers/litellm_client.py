"""LiteLLM / OpenAI 兼容网关适配器。

接口风格与 OpenAI 一致，均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>（未配置密钥时不发送）
- 流式格式: SSE，每个事件一行 "data: {...}"，以 "data: [DONE]" 结束

带图片的 user 消息使用 content parts 形式：text + image_url(data URL)。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, assert_never

import httpx

from chat_hub.config.settings import settings
from chat_hub.domain.conversation import ModelParameters
from chat_hub.domain.exceptions import NetworkError, ProtocolError
from chat_hub.domain.models import ChatChunk, ChatMessage, ChatResponse, Role
from chat_hub.infrastructure.logging.logger import logger
from chat_hub.providers.base import ModelInfo, as_text, parse_tool_calls, raise_for_status, serialize_tool
from chat_hub.providers.registry import LITELLM_CONFIG, ProviderType
from chat_hub.tools.definitions import ToolDef


class LiteLlmClient:
    """OpenAI 兼容网关客户端实现。"""

    provider_type = ProviderType.LITELLM

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        cfg=settings,
    ):
        self._settings = cfg
        self.base_url = (base_url or LITELLM_CONFIG.default_base_url).rstrip("/")
        self._api_key = api_key
        self.timeout = timeout or cfg.http_timeout

    # ---- 连接与模型 ----

    async def test_connection(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._settings.connection_test_timeout, trust_env=False) as client:
                resp = await client.get(f"{self.base_url}{LITELLM_CONFIG.models_path}", headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("LiteLLM connection test failed", extra={"extra": {"base_url": self.base_url, "error": str(e)}})
            return False
        return 200 <= resp.status_code < 300

    async def list_models(self) -> List[ModelInfo]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, trust_env=False) as client:
                resp = await client.get(f"{self.base_url}{LITELLM_CONFIG.models_path}", headers=self._headers())
        except httpx.TimeoutException as e:
            raise NetworkError(code="TIMEOUT", message=f"Request timed out: {e}")
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        raise_for_status(resp.status_code, resp.text, self.provider_type)
        data = self._decode_body(resp)
        return [
            ModelInfo(name=item.get("id") or "", owned_by=item.get("owned_by"))
            for item in data.get("data") or []
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
                resp = await client.post(
                    f"{self.base_url}{LITELLM_CONFIG.chat_path}",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise NetworkError(code="TIMEOUT", message=f"Request timed out: {e}")
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        raise_for_status(resp.status_code, resp.text, self.provider_type)
        data = self._decode_body(resp)
        choices = data.get("choices") or []
        if not choices:
            return ChatResponse(content="", raw=data)
        message = choices[0].get("message") or {}
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
                async with client.stream(
                    "POST",
                    f"{self.base_url}{LITELLM_CONFIG.chat_path}",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise_for_status(resp.status_code, body, self.provider_type)
                    async for line in resp.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        data_str = line[5:].strip()
                        if data_str == "[DONE]":
                            yield ChatChunk(done=True)
                            return
                        if not data_str:
                            continue
                        choice = self._decode_event(data_str)
                        if choice is None:
                            continue
                        delta = choice.get("delta")
                        if not isinstance(delta, dict):
                            delta = {}
                        yield ChatChunk(
                            content=as_text(delta.get("content")),
                            done=choice.get("finish_reason") is not None,
                            tool_calls=parse_tool_calls(delta.get("tool_calls")),
                        )
        except httpx.TimeoutException as e:
            raise NetworkError(code="TIMEOUT", message=f"Request timed out: {e}")
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

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
            **(options or ModelParameters()).to_openai_options(),
            "stream": stream,
        }
        if tools:
            payload["tools"] = [serialize_tool(tool) for tool in tools]
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        match message.role:
            case Role.USER:
                if not message.images:
                    return {"role": "user", "content": message.content}
                parts: List[Dict[str, Any]] = [{"type": "text", "text": message.content}]
                for image in message.images:
                    parts.append({"type": "image_url", "image_url": {"url": image.data_url}})
                return {"role": "user", "content": parts}
            case Role.ASSISTANT:
                payload: Dict[str, Any] = {"role": "assistant", "content": message.content}
                if message.tool_calls:
                    payload["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments, ensure_ascii=False),
                            },
                        }
                        for call in message.tool_calls
                    ]
                return payload
            case Role.SYSTEM:
                return {"role": "system", "content": message.content}
            case Role.TOOL:
                payload = {"role": "tool", "content": message.content}
                if message.tool_call_id:
                    payload["tool_call_id"] = message.tool_call_id
                return payload
            case _:
                assert_never(message.role)

    def _decode_event(self, data_str: str) -> Optional[Dict[str, Any]]:
        """解析一个 SSE 事件，返回第一个 choice。

        无法解析或结构不符的事件记录告警后返回 None；没有 choices 的事件（如 usage）静默跳过。
        """
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            choices = data.get("choices")
            if not choices:
                return None
            if isinstance(choices, list) and isinstance(choices[0], dict):
                return choices[0]
        logger.warning(
            "Skipping malformed stream event",
            extra={"extra": {"provider": self.provider_type.value, "line": data_str[:200]}},
        )
        return None

    def _decode_body(self, resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError(code="MALFORMED_RESPONSE", message=f"Invalid JSON from LiteLLM: {e}")
        if not isinstance(data, dict):
            raise ProtocolError(code="MALFORMED_RESPONSE", message="Unexpected LiteLLM response shape")
        return data
