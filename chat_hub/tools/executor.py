from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from chat_hub.infrastructure.logging.logger import logger
from .definitions import ToolCall, ToolDef, ToolParam, ToolResult


ToolFunc = Callable[[Dict[str, Any]], str]


class ToolExecutor:
    """按名称执行同步工具函数。

    编排层只负责在助手消息上保存模型发起的 ToolCall；
    是否执行、何时把 ToolResult 写回会话由外层应用决定。
    """

    def __init__(self, tools: Optional[Dict[str, ToolFunc]] = None, defs: Optional[List[ToolDef]] = None):
        self._tools: Dict[str, ToolFunc] = dict(tools or {})
        self._defs: Dict[str, ToolDef] = {d.name: d for d in defs or []}

    @property
    def names(self) -> List[str]:
        return sorted(self._tools)

    @property
    def definitions(self) -> List[ToolDef]:
        return [self._defs[name] for name in self.names if name in self._defs]

    def register(self, name: str, func: ToolFunc, definition: Optional[ToolDef] = None) -> None:
        self._tools[name] = func
        if definition is not None:
            self._defs[name] = definition

    def execute(self, name: str, arguments: Optional[Dict[str, Any]] = None, call_id: str = "") -> ToolResult:
        func = self._tools.get(name)
        if func is None:
            return ToolResult(call_id=call_id, name=name, content=f"Tool not registered: {name}", is_error=True)
        try:
            content = func(dict(arguments or {}))
        except Exception as exc:
            logger.warning(
                "Tool execution failed",
                extra={"extra": {"tool": name, "call_id": call_id, "error": str(exc)}},
            )
            return ToolResult(call_id=call_id, name=name, content=str(exc), is_error=True)
        return ToolResult(call_id=call_id, name=name, content=content)

    def execute_call(self, call: ToolCall) -> ToolResult:
        return self.execute(call.name, call.arguments, call_id=call.id)


def _get_current_datetime(args: Dict[str, Any]) -> str:
    fmt = str(args.get("format") or "").strip()
    now = datetime.now(timezone.utc).astimezone()
    if fmt:
        return now.strftime(fmt)
    return now.isoformat(timespec="seconds")


def default_tools() -> Dict[str, ToolFunc]:
    return {"get_current_datetime": _get_current_datetime}


def default_tool_defs() -> List[ToolDef]:
    return [
        ToolDef(
            name="get_current_datetime",
            description="Get the current local date and time",
            params={
                "format": ToolParam(
                    name="format",
                    description="可选的 strftime 格式串，默认 ISO-8601",
                    required=False,
                    schema={"type": "string"},
                )
            },
        ),
    ]


def default_executor() -> ToolExecutor:
    return ToolExecutor(default_tools(), default_tool_defs())
