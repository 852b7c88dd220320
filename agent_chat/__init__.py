"""Agent Chat 顶层包。

该包实现与远端 Agent 对话的客户端核心：
流式响应聚合、exchange 协调、按 Agent 持久化的会话生命周期，
以及对应的配置、日志、Transport 与存储。
"""

from agent_chat.api.service import ChatService, create_chat_service

__all__ = ["ChatService", "create_chat_service"]
