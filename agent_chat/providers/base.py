"""Transport 抽象接口。

会话核心不直接依赖 HTTP 库，而是依赖此协议：

- AgentApiClient 用 httpx 实现它，对接真实的 Agent API。
- 测试里用纯 Python 的假 Transport 产出预设的事件序列。

send_message_stream 返回 StreamEvent 迭代器；迭代在后台线程上进行，
实现者应在每个事件之间检查 cancel_token，被取消后尽快结束迭代。
"""

from typing import Iterator, List, Optional, Protocol

from agent_chat.domain.cancellation import CancelToken
from agent_chat.domain.models import AgentInfo, FileRef, MessageResponse, StreamEvent


class AgentTransport(Protocol):
    """Agent API 客户端协议。"""

    def list_agents(self) -> List[str]:
        ...

    def get_agent(self, agent_id: str) -> AgentInfo:
        ...

    def create_agent(self, name: str, agent_type: str = "Default") -> AgentInfo:
        ...

    def list_agent_types(self) -> List[str]:
        ...

    def send_message(
        self,
        agent_id: str,
        text: str,
        attachment: Optional[FileRef] = None,
        thread_id: Optional[str] = None,
    ) -> MessageResponse:
        ...

    def send_message_stream(
        self,
        agent_id: str,
        text: str,
        attachment: Optional[FileRef] = None,
        thread_id: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[StreamEvent]:
        ...
