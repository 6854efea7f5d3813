"""Tool servers and the tool-call bridge for Shipwright."""

from shipwright.tools.bridge import (
    ToolCallBridge,
    ToolCallRequest,
    ToolCallResult,
    parse_tool_call_block,
)
from shipwright.tools.registry import (
    HttpToolServer,
    RetryPolicy,
    ToolServer,
    ToolServerRegistry,
)
from shipwright.tools.servers import ServerCatalog, ServerEntry, ServerHealth

__all__ = [
    "ToolCallBridge",
    "ToolCallRequest",
    "ToolCallResult",
    "parse_tool_call_block",
    "HttpToolServer",
    "RetryPolicy",
    "ToolServer",
    "ToolServerRegistry",
    "ServerCatalog",
    "ServerEntry",
    "ServerHealth",
]
