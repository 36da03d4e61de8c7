import asyncio
import json

import httpx
import pytest

from chat_hub.domain.conversation import ModelParameters
from chat_hub.domain.exceptions import ApiError, AuthenticationError, NetworkError, RateLimitError
from chat_hub.domain.models import ChatMessage, ImagePayload, Role
from chat_hub.providers.ollama_client import OllamaClient
from chat_hub.tools.executor import default_tool_defs


class SettingsStub:
    http_timeout = 1.0
    connection_test_timeout = 0.5


class FakeResponse:
    def __init__(self, status_code=200, lines=(), body=None):
        self.status_code = status_code
        self._lines = list(lines)
        self._body = body if body is not None else {}
        self.text = json.dumps(self._body)

    def json(self):
        return self._body

    async def aread(self):
        return self.text.encode("utf-8")

    async def aiter_lines(self):
        for line in self._lines:
            yield line


class StreamContext:
    def __init__(self, response):
        self._response = response

    async def __aenter__(self):
        return self._response

    async def __aexit__(self, *args):
        return False


def fake_client(response=None, error=None, requests=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        def stream(self, method, url, **kw):
            if requests is not None:
                requests.append((method, url, kw))
            if error is not None:
                raise error
            return StreamContext(response)

        async def post(self, url, **kw):
            if requests is not None:
                requests.append(("POST", url, kw))
            if error is not None:
                raise error
            return response

        async def get(self, url, **kw):
            if requests is not None:
                requests.append(("GET", url, kw))
            if error is not None:
                raise error
            return response

    return Client


async def _collect(agen):
    return [chunk async for chunk in agen]


def test_ollama_stream_ndjson(monkeypatch):
    requests = []
    lines = [
        json.dumps({"message": {"role": "assistant", "content": "H"}, "done": False}),
        "",
        "{broken",
        json.dumps({"message": {"role": "assistant", "content": "i"}, "done": False}),
        json.dumps({"message": {"role": "assistant", "content": "!"}, "done": True}),
        json.dumps({"message": {"role": "assistant", "content": "ignored"}, "done": False}),
    ]
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(lines=lines), requests=requests))

    client = OllamaClient(base_url="http://ollama:11434/", cfg=SettingsStub())
    messages = [
        ChatMessage(role=Role.SYSTEM, content="sys"),
        ChatMessage(role=Role.USER, content="hi", images=(ImagePayload(mime_type="image/png", data_base64="AAE="),)),
    ]
    chunks = asyncio.run(_collect(client.chat_stream("llama3", messages, options=ModelParameters(max_tokens=32))))

    assert "".join(c.content for c in chunks) == "Hi!"
    assert chunks[-1].done
    method, url, kw = requests[0]
    assert url == "http://ollama:11434/api/chat"
    payload = kw["json"]
    assert payload["stream"] is True
    assert payload["options"] == {"num_predict": 32}
    assert payload["messages"][1] == {"role": "user", "content": "hi", "images": ["AAE="]}


def test_ollama_stream_error_field(monkeypatch):
    lines = [json.dumps({"error": "model not found"})]
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(lines=lines)))
    client = OllamaClient(cfg=SettingsStub())
    with pytest.raises(ApiError) as exc:
        asyncio.run(_collect(client.chat_stream("nope", [ChatMessage(role=Role.USER, content="hi")])))
    assert "model not found" in exc.value.message


@pytest.mark.parametrize(
    "status, error_type",
    [(401, AuthenticationError), (429, RateLimitError), (500, ApiError)],
)
def test_ollama_stream_http_errors(monkeypatch, status, error_type):
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(status_code=status, body={"error": "x"})))
    client = OllamaClient(cfg=SettingsStub())
    with pytest.raises(error_type) as exc:
        asyncio.run(_collect(client.chat_stream("llama3", [ChatMessage(role=Role.USER, content="hi")])))
    assert exc.value.http_status == status


def test_ollama_stream_timeout(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", fake_client(error=httpx.ReadTimeout("slow")))
    client = OllamaClient(cfg=SettingsStub())
    with pytest.raises(NetworkError) as exc:
        asyncio.run(_collect(client.chat_stream("llama3", [ChatMessage(role=Role.USER, content="hi")])))
    assert exc.value.code == "TIMEOUT"


def test_ollama_chat_non_stream_with_tools(monkeypatch):
    requests = []
    body = {
        "message": {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": "get_current_datetime", "arguments": {"format": "%Y"}}}],
        },
        "done": True,
    }
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(body=body), requests=requests))
    client = OllamaClient(cfg=SettingsStub())
    res = asyncio.run(
        client.chat("llama3", [ChatMessage(role=Role.USER, content="time?")], tools=default_tool_defs())
    )
    assert res.content == ""
    assert res.tool_calls[0].name == "get_current_datetime"
    assert res.tool_calls[0].arguments == {"format": "%Y"}
    payload = requests[0][2]["json"]
    assert payload["stream"] is False
    assert payload["tools"][0]["function"]["name"] == "get_current_datetime"


def test_ollama_list_models_and_connection(monkeypatch):
    body = {"models": [{"name": "llama3:8b", "size": 123}, {"model": "mistral"}]}
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(body=body)))
    client = OllamaClient(cfg=SettingsStub())
    models = asyncio.run(client.list_models())
    assert [m.name for m in models] == ["llama3:8b", "mistral"]
    assert asyncio.run(client.test_connection()) is True

    monkeypatch.setattr("httpx.AsyncClient", fake_client(error=httpx.ConnectError("refused")))
    assert asyncio.run(client.test_connection()) is False


def test_ollama_stream_skips_non_object_lines(monkeypatch):
    lines = [
        json.dumps({"message": {"role": "assistant", "content": "H"}, "done": False}),
        "null",
        '"x"',
        "[1, 2]",
        json.dumps({"message": "not an object", "done": False}),
        json.dumps({"message": {"content": 42, "tool_calls": "bogus"}, "done": False}),
        json.dumps({"message": {"role": "assistant", "content": "i"}, "done": True}),
    ]
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(lines=lines)))
    client = OllamaClient(cfg=SettingsStub())
    chunks = asyncio.run(_collect(client.chat_stream("llama3", [ChatMessage(role=Role.USER, content="hi")])))
    assert "".join(c.content for c in chunks) == "Hi"
    assert chunks[-1].done
    assert all(c.tool_calls is None for c in chunks)
