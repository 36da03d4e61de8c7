import base64
from datetime import datetime, timezone

from chat_hub.chat.history import build_history, to_chat_message
from chat_hub.domain.conversation import Attachment, Conversation, Message, ModelSource
from chat_hub.domain.models import ChatMessage, Role
from chat_hub.tools.definitions import ToolCall

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _conv(messages, **kw):
    return Conversation(
        id="c1",
        title="t",
        model_name="m1",
        created_at=NOW,
        updated_at=NOW,
        messages=tuple(messages),
        **kw,
    )


def test_history_orders_and_prepends_system_prompt():
    conv = _conv(
        [
            Message.user(id="u1", text="hi", timestamp=NOW),
            Message.assistant(id="a1", text="hello", timestamp=NOW),
            Message.user(id="u2", text="how are you", timestamp=NOW),
        ],
        system_prompt="be nice",
    )
    history = build_history(conv)
    assert [(m.role, m.content) for m in history] == [
        (Role.SYSTEM, "be nice"),
        (Role.USER, "hi"),
        (Role.ASSISTANT, "hello"),
        (Role.USER, "how are you"),
    ]


def test_history_skips_placeholders_errors_and_cancelled():
    conv = _conv(
        [
            Message.user(id="u1", text="hi", timestamp=NOW),
            Message.error(id="e1", error_message="down", timestamp=NOW),
            Message.assistant(id="a0", text="[Generation cancelled]", timestamp=NOW),
            Message.user(id="u2", text="again", timestamp=NOW),
            Message.assistant(id="p1", text="", timestamp=NOW, is_streaming=True),
            Message.assistant(id="p2", text="partial", timestamp=NOW, is_streaming=True),
        ],
        system_prompt="   ",
    )
    history = build_history(conv, exclude_ids={"p1"}, cancelled_text="[Generation cancelled]")
    assert history == [
        ChatMessage(role=Role.USER, content="hi"),
        ChatMessage(role=Role.USER, content="again"),
    ]


def test_history_excluded_id_is_skipped_even_when_complete():
    conv = _conv(
        [
            Message.user(id="u1", text="hi", timestamp=NOW),
            Message.assistant(id="a1", text="done", timestamp=NOW),
        ]
    )
    assert [m.content for m in build_history(conv, exclude_ids=["a1"])] == ["hi"]


def test_history_comparison_channel_filter():
    conv = _conv(
        [
            Message.user(id="u1", text="q1", timestamp=NOW, model_source=ModelSource.USER),
            Message.assistant(id="a1", text="from m1", timestamp=NOW, model_source=ModelSource.MODEL1),
            Message.assistant(id="a2", text="from m2", timestamp=NOW, model_source=ModelSource.MODEL2),
            Message.user(id="u2", text="q2", timestamp=NOW, model_source=ModelSource.USER),
        ],
        model2_name="m2",
    )
    h1 = build_history(conv, channel=ModelSource.MODEL1)
    h2 = build_history(conv, channel=ModelSource.MODEL2)
    assert [m.content for m in h1] == ["q1", "from m1", "q2"]
    assert [m.content for m in h2] == ["q1", "from m2", "q2"]
    # 不指定通道时输出全部
    assert len(build_history(conv)) == 4


def test_history_attachments():
    img = Attachment(id="i1", name="p.png", mime_type="image/png", data=b"\x01\x02", size=2)
    txt = Attachment(id="t1", name="notes.md", mime_type="text/markdown", data=b"# Notes", size=7)
    conv = _conv([Message.user(id="u1", text="look", timestamp=NOW, attachments=[img, txt])])

    (msg,) = build_history(conv)
    assert msg.content == "look\n\n--- File: notes.md ---\n# Notes\n--- End of notes.md ---"
    assert len(msg.images) == 1
    assert msg.images[0].mime_type == "image/png"
    assert base64.b64decode(msg.images[0].data_base64) == b"\x01\x02"


def test_history_keeps_attachment_only_user_message():
    img = Attachment(id="i1", name="p.png", mime_type="image/png", data=b"\x01", size=1)
    conv = _conv([Message.user(id="u1", text="", timestamp=NOW, attachments=[img])])
    assert len(build_history(conv)) == 1


def test_to_chat_message_tool_roles():
    call = ToolCall(id="t1", name="get_current_datetime")
    assistant = Message(id="a1", role=Role.ASSISTANT, text="", timestamp=NOW, tool_calls=(call,))
    result = Message.tool_result(id="r1", tool_call_id="t1", content="2024", timestamp=NOW)

    assert to_chat_message(assistant).tool_calls == (call,)
    tool_msg = to_chat_message(result)
    assert tool_msg.role is Role.TOOL
    assert tool_msg.tool_call_id == "t1"
