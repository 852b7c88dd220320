"""会话生命周期管理。

SessionManager 决定“当前选中的 Agent”对应哪一个内存中的 Conversation，
以及何时把它写回存储。进程内每个 agent_id 只对应一个 Conversation 实例：
切走后又切回来的会话、仍在后台跑的 exchange，操作的都是同一个对象。
"""

from typing import Dict, Optional, Sequence

from agent_chat.domain.conversation import ConversationStore
from agent_chat.domain.exceptions import BusinessError, StoreError, ValidationError
from agent_chat.domain.models import Conversation, ExchangeOutcome, FileRef
from agent_chat.infrastructure.logging.logger import logger
from agent_chat.providers.base import AgentTransport
from agent_chat.session.coordinator import ExchangeCoordinator


class SessionManager:
    def __init__(
        self,
        store: ConversationStore,
        coordinator: ExchangeCoordinator,
        transport: Optional[AgentTransport] = None,
    ):
        self._store = store
        self._coordinator = coordinator
        self._transport = transport
        self._active: Optional[Conversation] = None
        self._loaded: Dict[str, Conversation] = {}

    @property
    def active(self) -> Optional[Conversation]:
        return self._active

    @property
    def active_agent_id(self) -> Optional[str]:
        return self._active.agent_id if self._active else None

    def select_agent(self, agent_id: str) -> Conversation:
        """切换当前 Agent。

        先 flush 旧会话（存储失败会抛出 StoreError 并保持旧会话激活），
        再加载或新建目标会话。
        """

        if not agent_id:
            raise ValidationError(code="MISSING_AGENT_ID", message="agent_id is required")
        previous = self._active
        if previous is not None and previous.agent_id == agent_id:
            return previous
        if previous is not None and previous.dirty:
            self._commit_or_raise(previous)

        conversation = self._load_or_create(agent_id)
        self._active = conversation
        try:
            self._store.set_last_active_agent_id(agent_id)
        except StoreError as e:
            # 只影响下次启动时的恢复，不阻塞切换
            logger.error("Failed to record last active agent", extra={"extra": {"agent_id": agent_id, "error": e.message}})
        logger.info(
            "Selected agent",
            extra={"extra": {
                "agent_id": agent_id,
                "previous": previous.agent_id if previous else None,
                "turns": len(conversation.turns),
                "thread_id": conversation.thread_id,
            }},
        )
        return conversation

    def restore(self, known_agent_ids: Sequence[str]) -> Optional[Conversation]:
        """启动时恢复上次激活的 Agent；该 Agent 已不存在时不激活任何会话。"""

        last_agent_id = self._store.get_last_active_agent_id()
        if not last_agent_id or last_agent_id not in known_agent_ids:
            logger.info("No agent restored", extra={"extra": {"last_agent_id": last_agent_id}})
            return None
        return self.select_agent(last_agent_id)

    def send(
        self,
        text: str,
        attachments: Optional[Sequence[FileRef]] = None,
        streaming: Optional[bool] = None,
    ) -> ExchangeOutcome:
        conversation = self._require_active()
        if not text or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="Please enter a message.")
        return self._coordinator.run_exchange(
            conversation.agent_id,
            text.strip(),
            attachments,
            conversation,
            streaming=streaming,
        )

    def clear_active(self) -> Conversation:
        """新对话、同一个 Agent：清空消息与 continuity id 并 commit。"""

        conversation = self._require_active()
        self._coordinator.cancel(conversation.agent_id, reason="user")
        conversation.clear()
        self._commit_or_raise(conversation)
        logger.info("Cleared conversation", extra={"extra": {"agent_id": conversation.agent_id}})
        return conversation

    def delete_active(self) -> None:
        """从存储中彻底删除当前 Agent 的会话，之后再选中该 Agent 会从零开始。"""

        conversation = self._require_active()
        agent_id = conversation.agent_id
        self._coordinator.cancel(agent_id, reason="user")
        if self._coordinator.is_in_flight(agent_id):
            # 未收尾的 exchange 之后还会 commit，删除后会把会话重新写回存储
            logger.error("Cancelled exchange still running, delete aborted", extra={"extra": {"agent_id": agent_id}})
            raise ValidationError(
                code="EXCHANGE_IN_FLIGHT",
                message="The agent is still finishing a response. Please try again.",
                agent_id=agent_id,
            )
        self._store.delete_conversation(agent_id)
        self._loaded.pop(agent_id, None)
        conversation.clear()
        conversation.dirty = False
        self._active = None
        logger.info("Deleted conversation", extra={"extra": {"agent_id": agent_id}})

    def flush_on_suspend(self) -> bool:
        """宿主进程即将挂起或退出：有消息就无条件 commit。"""

        conversation = self._active
        if conversation is None or not conversation.turns:
            return False
        self._commit_or_raise(conversation)
        return True

    def shutdown(self) -> None:
        self._coordinator.cancel_all(reason="shutdown")
        self.flush_on_suspend()

    # ---- 辅助方法 ----

    def _load_or_create(self, agent_id: str) -> Conversation:
        cached = self._loaded.get(agent_id)
        if cached is not None:
            return cached
        conversation = self._store.get_conversation(agent_id)
        if conversation is None:
            conversation = Conversation(agent_id=agent_id)
            logger.info("Starting new session", extra={"extra": {"agent_id": agent_id}})
        elif not conversation.turns:
            # 空会话视为全新会话
            conversation.thread_id = None
            conversation.last_response_id = None
        conversation.agent_display_name = self._resolve_display_name(agent_id, conversation.agent_display_name)
        self._loaded[agent_id] = conversation
        return conversation

    def _resolve_display_name(self, agent_id: str, current: str) -> str:
        if self._transport is None:
            return current or agent_id
        try:
            info = self._transport.get_agent(agent_id)
        except BusinessError as e:
            logger.warning("Could not load agent details", extra={"extra": {"agent_id": agent_id, "error": e.message}})
            return current or agent_id
        return info.name or current or agent_id

    def _commit_or_raise(self, conversation: Conversation) -> None:
        error = self._coordinator.commit(conversation)
        if error is not None:
            raise StoreError(code="STORE_WRITE_ERROR", message=error, agent_id=conversation.agent_id)

    def _require_active(self) -> Conversation:
        if self._active is None:
            raise ValidationError(code="NO_ACTIVE_AGENT", message="Please select an agent first.")
        return self._active
