"""Agent-facing transports other than REST."""

from .jsonrpc import (
    JsonRpcDispatcher,
    JsonRpcError,
    error_response,
    extract_context,
    sse_event,
    success_response,
)
from .mcp import McpContext, McpTool, McpToolRegistry, text_result

__all__ = [
    "JsonRpcDispatcher",
    "JsonRpcError",
    "McpContext",
    "McpTool",
    "McpToolRegistry",
    "error_response",
    "extract_context",
    "sse_event",
    "success_response",
    "text_result",
]
