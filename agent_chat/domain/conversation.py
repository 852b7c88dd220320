from typing import List, Optional, Protocol

from .models import Conversation, ConversationIndex


class ConversationStore(Protocol):
    """按 agent_id 持久化会话的存储抽象。

    实现必须以整条 Conversation 为单位 upsert，外部不能看到只写了一半字段的状态。
    """

    def load_index(self) -> ConversationIndex:
        ...

    def get_conversation(self, agent_id: str) -> Optional[Conversation]:
        ...

    def list_conversations(self) -> List[Conversation]:
        ...

    def save_conversation(self, conversation: Conversation) -> None:
        ...

    def delete_conversation(self, agent_id: str) -> None:
        ...

    def get_last_active_agent_id(self) -> Optional[str]:
        ...

    def set_last_active_agent_id(self, agent_id: Optional[str]) -> None:
        ...
