"""Chat Hub 顶层包。

该包提供聊天生成编排的核心实现，包括配置加载、领域模型、
后端适配（Ollama / OpenAI 兼容网关）、单模型与双模型对比的
流式生成、取消控制以及会话持久化。
"""

from chat_hub.api.service import ChatServices, create_services, shutdown

__all__ = ["ChatServices", "create_services", "shutdown"]
