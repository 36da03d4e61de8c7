from datetime import datetime

from chat_hub.providers.base import serialize_tool
from chat_hub.tools.definitions import ToolCall, ToolDef
from chat_hub.tools.executor import ToolExecutor, default_executor, default_tool_defs, default_tools


def test_default_datetime_tool():
    te = ToolExecutor(default_tools())
    iso = te.execute("get_current_datetime", {}, call_id="1")
    assert not iso.is_error
    assert datetime.fromisoformat(iso.content).tzinfo is not None

    year = te.execute_call(ToolCall(id="2", name="get_current_datetime", arguments={"format": "%Y"}))
    assert year.call_id == "2"
    assert year.content == str(datetime.now().year)


def test_unknown_tool_is_error_result():
    res = ToolExecutor().execute("missing", {"a": 1}, call_id="x")
    assert res.is_error
    assert res.call_id == "x"
    assert "missing" in res.content


def test_tool_exception_becomes_error_result():
    def boom(args):
        raise RuntimeError("kaput")

    te = ToolExecutor()
    te.register("boom", boom, ToolDef(name="boom", description="fails"))
    res = te.execute("boom")
    assert res.is_error
    assert res.content == "kaput"
    assert [d.name for d in te.definitions] == ["boom"]


def test_default_executor_definitions_serialize():
    te = default_executor()
    assert te.names == ["get_current_datetime"]
    (schema,) = [serialize_tool(d) for d in default_tool_defs()]
    assert schema["type"] == "function"
    params = schema["function"]["parameters"]
    assert params["properties"]["format"]["type"] == "string"
    assert params["required"] == []
