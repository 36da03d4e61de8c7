import json
import os
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from chat_hub.config.settings import settings
from chat_hub.domain.conversation import Conversation, ConversationFilter, ConversationStore
from chat_hub.domain.exceptions import StoreError


class JsonConversationStore(ConversationStore):
    """每个会话一个 JSON 文档：{root}/conversations/{id}.json。

    写入先落到临时文件再 os.replace，读者不会看到半写入的文档。
    只假定进程内单写者；同一会话的写入顺序由编排层串行化。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Conversation.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e), conversation_id=conversation_id)

    def upsert(self, conversation: Conversation) -> None:
        path = self._path(conversation.id)
        tmp_path = self._conv_root / f"{conversation.id}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(conversation.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e), conversation_id=conversation.id)

    def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        if not path.exists():
            return
        try:
            path.unlink()
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e), conversation_id=conversation_id)

    def list(self, filter: Optional[ConversationFilter] = None) -> List[Conversation]:
        items: List[Conversation] = []
        for path in self._conv_root.glob("*.json"):
            try:
                conv = Conversation.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError):
                continue
            if filter is None or filter.matches(conv):
                items.append(conv)
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    def _path(self, conversation_id: str) -> Path:
        if not conversation_id or "/" in conversation_id or "\\" in conversation_id or conversation_id.startswith("."):
            raise StoreError(code="INVALID_CONVERSATION_ID", message=conversation_id)
        return self._conv_root / f"{conversation_id}.json"
