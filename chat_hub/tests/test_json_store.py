from datetime import datetime, timedelta, timezone

import pytest

from chat_hub.domain.conversation import Conversation, ConversationFilter, Message
from chat_hub.domain.exceptions import StoreError
from chat_hub.infrastructure.storage.json_store import JsonConversationStore


def _conv(cid, minutes=0, project_id=None):
    ts = datetime(2024, 5, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return Conversation(
        id=cid,
        title=cid,
        model_name="llama3",
        created_at=ts,
        updated_at=ts,
        project_id=project_id,
        messages=(Message.user(id=f"{cid}-u", text="hi", timestamp=ts),),
    )


def test_json_store_upsert_and_get(tmp_path):
    store = JsonConversationStore(root=tmp_path / ".storage")
    conv = _conv("c1")
    store.upsert(conv)
    assert (tmp_path / ".storage" / "conversations" / "c1.json").exists()
    assert store.get("c1") == conv
    assert store.get("missing") is None

    updated = conv.touch(title="renamed")
    store.upsert(updated)
    assert store.get("c1").title == "renamed"
    # 原子替换后不留下临时文件
    assert not list((tmp_path / ".storage" / "conversations").glob("*.tmp"))


def test_json_store_list_sorted_and_filtered(tmp_path):
    store = JsonConversationStore(root=tmp_path)
    store.upsert(_conv("old", minutes=1))
    store.upsert(_conv("new", minutes=5, project_id="p1"))
    store.upsert(_conv("mid", minutes=3))

    assert [c.id for c in store.list()] == ["new", "mid", "old"]
    assert [c.id for c in store.list(ConversationFilter(project_id="p1"))] == ["new"]
    assert [c.id for c in store.list(ConversationFilter(exclude_project_conversations=True))] == ["mid", "old"]


def test_json_store_delete(tmp_path):
    store = JsonConversationStore(root=tmp_path)
    store.upsert(_conv("c1"))
    store.delete("c1")
    assert store.get("c1") is None
    # 删除不存在的会话是空操作
    store.delete("c1")


def test_json_store_corrupt_document(tmp_path):
    store = JsonConversationStore(root=tmp_path)
    (tmp_path / "conversations" / "bad.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreError) as exc:
        store.get("bad")
    assert exc.value.code == "STORE_READ_ERROR"
    # list 跳过损坏的文档
    assert store.list() == []


def test_json_store_rejects_path_like_ids(tmp_path):
    store = JsonConversationStore(root=tmp_path)
    with pytest.raises(StoreError):
        store.get("../escape")
