"""会话核心：流式聚合、exchange 协调与会话生命周期。"""

from agent_chat.session.aggregator import AggregateResult, StreamAggregator
from agent_chat.session.coordinator import ExchangeCoordinator
from agent_chat.session.manager import SessionManager

__all__ = ["AggregateResult", "ExchangeCoordinator", "SessionManager", "StreamAggregator"]
