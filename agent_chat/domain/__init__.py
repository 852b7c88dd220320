"""领域层模型与协议。

包含：
- models: FileRef / ConversationTurn / Conversation / StreamEvent 等数据模型。
- conversation: ConversationStore 存储抽象。
- exceptions: 业务异常类型定义。
"""
