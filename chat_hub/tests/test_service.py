import asyncio

from chat_hub.api.service import conversation_summary, create_services, shutdown
from chat_hub.chat.errors import NO_CONNECTION_TEXT
from chat_hub.providers.ollama_client import OllamaClient
from chat_hub.providers.registry import ProviderConnection, ProviderType


def test_create_services_without_connection(tmp_path):
    async def run():
        services = create_services(storage_root=tmp_path, use_default_connection=False)
        assert services.connections.client is None
        assert services.tools.names == ["get_current_datetime"]

        events = services.events.subscribe()
        conv = await services.orchestrator.create_comparison_conversation("m1", "m2", project_id="p1")
        await (await services.orchestrator.send_dual_model_message(conv.id, "hello there")).collect()
        summary = conversation_summary(services.orchestrator.get_conversation(conv.id))

        await shutdown(services)
        assert services.events.closed
        return conv, summary, [e.kind for e in await events.collect()]

    conv, summary, kinds = asyncio.run(run())
    assert summary["id"] == conv.id
    assert summary["title"] == "Compare: m1 vs m2"
    assert summary["model_name"] == "m1"
    assert summary["model2_name"] == "m2"
    assert summary["is_comparison"] is True
    assert summary["project_id"] == "p1"
    assert summary["message_count"] == 3
    assert summary["updated_at"] >= summary["created_at"]
    assert "conversation_updated" in kinds


def test_create_services_with_connection(tmp_path):
    conn = ProviderConnection(ProviderType.OLLAMA, "http://o:11434")
    services = create_services(storage_root=tmp_path, connection=conn)
    assert isinstance(services.connections.client, OllamaClient)
    assert services.connections.connection is conn
    assert services.store.list() == []


def test_services_without_connection_reply_with_error(tmp_path):
    async def run():
        services = create_services(storage_root=tmp_path, use_default_connection=False)
        conv = await services.orchestrator.create_conversation("llama3")
        await (await services.orchestrator.send_message(conv.id, "hi")).collect()
        reply = services.orchestrator.get_conversation(conv.id).messages[-1]
        await shutdown(services)
        return reply

    reply = asyncio.run(run())
    assert reply.is_error
    assert reply.error_message == NO_CONNECTION_TEXT
