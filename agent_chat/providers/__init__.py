"""Agent API 集成层。

- base: AgentTransport 协议。
- agent_api_client: 基于 httpx 的实现。
"""

from agent_chat.config.settings import settings
from agent_chat.providers.agent_api_client import AgentApiClient
from agent_chat.providers.base import AgentTransport


def create_transport(cfg=None) -> AgentTransport:
    """根据配置创建默认 Transport。"""

    return AgentApiClient(cfg or settings)


__all__ = ["AgentApiClient", "AgentTransport", "create_transport"]
