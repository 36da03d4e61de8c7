"""领域层模型与协议。

包含：
- models: 后端中立的 ChatMessage / ChatChunk / ChatResponse 与 Role 枚举。
- conversation: 会话、消息、附件模型及 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
