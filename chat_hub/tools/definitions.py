"""工具数据结构定义。

这些 dataclass 描述了"工具调用"的 schema，既用于：
- 将可用工具列表序列化进后端请求（ToolDef / ToolParam）。
- 在助手消息上保存模型发起的工具调用（ToolCall），
  以及由外层应用执行工具后得到的结果（ToolResult）。
"""

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDef:
    """一个可供模型调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            arguments=dict(data.get("arguments") or {}),
        )


@dataclass(frozen=True)
class ToolResult:
    """工具执行结果的封装（文本形式）。"""

    call_id: str
    name: str
    content: str
    is_error: bool = False
