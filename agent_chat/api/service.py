"""对外 API 服务模块。

把 Transport、存储、ExchangeCoordinator 与 SessionManager 组装在一起，
给 UI 或脚本提供一个对象即可完成：加载 Agent 列表、恢复上次会话、
选择 / 新建 Agent、发送消息、清空与删除会话、退出前 flush。
"""

from typing import List, Optional, Sequence

from agent_chat.config.settings import settings
from agent_chat.domain.conversation import ConversationStore
from agent_chat.domain.exceptions import BusinessError
from agent_chat.domain.models import AgentInfo, Conversation, ExchangeOutcome, FileRef
from agent_chat.infrastructure.logging.logger import logger
from agent_chat.infrastructure.storage.json_store import JsonConversationStore
from agent_chat.providers import create_transport
from agent_chat.providers.base import AgentTransport
from agent_chat.session.coordinator import ExchangeCoordinator, TurnListener
from agent_chat.session.manager import SessionManager


class ChatService:
    def __init__(
        self,
        transport: AgentTransport,
        store: ConversationStore,
        *,
        cfg=settings,
        on_turn_updated: Optional[TurnListener] = None,
    ):
        self.transport = transport
        self.store = store
        self.coordinator = ExchangeCoordinator(transport, store, cfg=cfg, on_turn_updated=on_turn_updated)
        self.sessions = SessionManager(store, self.coordinator, transport=transport)
        self.agent_ids: List[str] = []
        self.agent_types: List[str] = []

    def start(self) -> Optional[Conversation]:
        """加载 Agent 列表与类型，然后恢复上次激活的会话。"""

        self.refresh_agents()
        self.refresh_agent_types()
        restored = self.sessions.restore(self.agent_ids)
        if not self.agent_ids:
            logger.warning("No agents found, check agent_api_base_url")
        return restored

    def refresh_agents(self) -> List[str]:
        try:
            self.agent_ids = list(self.transport.list_agents())
        except BusinessError as e:
            logger.error("Error loading agents", extra={"extra": {"code": e.code, "error": e.message}})
            raise
        logger.info("Loaded agents", extra={"extra": {"count": len(self.agent_ids)}})
        return self.agent_ids

    def refresh_agent_types(self) -> List[str]:
        try:
            self.agent_types = list(self.transport.list_agent_types())
        except BusinessError as e:
            # 类型列表只用于新建 Agent，加载失败不影响聊天
            logger.error("Error loading agent types", extra={"extra": {"code": e.code, "error": e.message}})
            self.agent_types = []
        return self.agent_types

    def create_agent(self, name: str, agent_type: Optional[str] = None) -> AgentInfo:
        chosen_type = agent_type or (self.agent_types[0] if self.agent_types else "Default")
        info = self.transport.create_agent(name, chosen_type)
        logger.info("Created agent", extra={"extra": {"agent_id": info.id, "agent_type": chosen_type}})
        self.refresh_agents()
        return info

    def select_agent(self, agent_id: str) -> Conversation:
        return self.sessions.select_agent(agent_id)

    def send(
        self,
        text: str,
        attachments: Optional[Sequence[FileRef]] = None,
        streaming: Optional[bool] = None,
    ) -> ExchangeOutcome:
        return self.sessions.send(text, attachments=attachments, streaming=streaming)

    def clear_conversation(self) -> Conversation:
        return self.sessions.clear_active()

    def delete_conversation(self) -> None:
        self.sessions.delete_active()

    def list_conversations(self) -> List[Conversation]:
        return self.store.list_conversations()

    def suspend(self) -> bool:
        return self.sessions.flush_on_suspend()

    def close(self) -> None:
        self.sessions.shutdown()


def create_chat_service(cfg=settings, on_turn_updated: Optional[TurnListener] = None) -> ChatService:
    """用配置创建默认的 ChatService（httpx Transport + JSON 存储）。"""

    return ChatService(
        create_transport(cfg),
        JsonConversationStore(root=cfg.storage_root),
        cfg=cfg,
        on_turn_updated=on_turn_updated,
    )
