import json
import os
import threading
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from agent_chat.config.settings import settings
from agent_chat.domain.conversation import ConversationStore
from agent_chat.domain.exceptions import StoreError
from agent_chat.domain.models import Conversation, ConversationIndex
from agent_chat.infrastructure.logging.logger import logger


INDEX_KEY = "agent_sessions"


class JsonConversationStore(ConversationStore):
    """把 ConversationIndex 整体保存为一个 JSON 文件的会话存储。

    - 索引在第一次访问时懒加载，之后常驻内存。
    - 每次写操作都是 read-modify-write：先改内存索引，再整体写临时文件并 os.replace，
      因此外部读者只会看到完整的旧版本或完整的新版本。
    - last-writer-wins，不做乐观并发控制。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / f"{INDEX_KEY}.json"
        self._index: Optional[ConversationIndex] = None
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load_index(self) -> ConversationIndex:
        with self._lock:
            if self._index is None:
                self._index = self._read_index()
            return self._index

    def get_conversation(self, agent_id: str) -> Optional[Conversation]:
        with self._lock:
            stored = self.load_index().by_agent_id.get(agent_id)
            if stored is None:
                return None
            # 返回副本，调用方的修改只有经过 save_conversation 才会落盘
            return Conversation.from_dict(stored.to_dict())

    def list_conversations(self) -> List[Conversation]:
        with self._lock:
            items = [Conversation.from_dict(c.to_dict()) for c in self.load_index().by_agent_id.values()]
        items.sort(key=lambda c: c.last_activity, reverse=True)
        return items

    def save_conversation(self, conversation: Conversation) -> None:
        with self._lock:
            index = self.load_index()
            snapshot = Conversation.from_dict(conversation.to_dict())
            previous = index.by_agent_id.get(conversation.agent_id)
            index.by_agent_id[conversation.agent_id] = snapshot
            try:
                self._write_index(index)
            except StoreError:
                if previous is None:
                    index.by_agent_id.pop(conversation.agent_id, None)
                else:
                    index.by_agent_id[conversation.agent_id] = previous
                raise
        logger.info(
            "Saved conversation",
            extra={"extra": {"agent_id": conversation.agent_id, "turns": len(conversation.turns)}},
        )

    def delete_conversation(self, agent_id: str) -> None:
        with self._lock:
            index = self.load_index()
            previous = index.by_agent_id.pop(agent_id, None)
            previous_last = index.last_active_agent_id
            if index.last_active_agent_id == agent_id:
                index.last_active_agent_id = None
            try:
                self._write_index(index)
            except StoreError:
                if previous is not None:
                    index.by_agent_id[agent_id] = previous
                index.last_active_agent_id = previous_last
                raise
        logger.info("Deleted conversation", extra={"extra": {"agent_id": agent_id}})

    def get_last_active_agent_id(self) -> Optional[str]:
        with self._lock:
            return self.load_index().last_active_agent_id

    def set_last_active_agent_id(self, agent_id: Optional[str]) -> None:
        with self._lock:
            index = self.load_index()
            previous = index.last_active_agent_id
            index.last_active_agent_id = agent_id
            try:
                self._write_index(index)
            except StoreError:
                index.last_active_agent_id = previous
                raise

    def _read_index(self) -> ConversationIndex:
        if not self._path.exists():
            return ConversationIndex()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return ConversationIndex.from_dict(data)
        except Exception as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e), path=str(self._path))

    def _write_index(self, index: ConversationIndex) -> None:
        tmp_path = self._root / f"{INDEX_KEY}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(index.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except Exception as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e), path=str(self._path))
