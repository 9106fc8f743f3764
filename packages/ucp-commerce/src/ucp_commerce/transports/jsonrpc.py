"""JSON-RPC 2.0 envelope for the MCP transport.

Supported methods: ``initialize``, ``notifications/initialized``, ``ping``,
``tools/list`` and ``tools/call``. Tool failures travel inside a successful
``tools/call`` result (``isError``); only protocol problems produce JSON-RPC
error objects.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from .. import SERVER_NAME, __version__
from ..services.profile import MCP_PROTOCOL_VERSION
from .mcp import McpContext, McpToolRegistry

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
OPENRPC_VERSION = "1.3.2"


class JsonRpcError:
    """Standard JSON-RPC 2.0 error codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


def success_response(request_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": 0 if request_id is None else request_id, "result": result}


def error_response(
    request_id: Any, code: int, message: str, data: Optional[Any] = None
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": 0 if request_id is None else request_id, "error": error}


def is_valid_request(request: Any) -> bool:
    return (
        isinstance(request, dict)
        and request.get("jsonrpc") == JSONRPC_VERSION
        and isinstance(request.get("method"), str)
    )


def _split_capabilities(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [c.strip() for c in value.split(",") if c.strip()]
    return [str(c) for c in value]


def extract_context(
    request: Dict[str, Any],
    headers: Optional[Mapping[str, str]] = None,
    default_shop_id: str = "default",
) -> McpContext:
    """Caller metadata from ``params._meta``, falling back to request headers."""
    headers = headers or {}
    params = request.get("params") if isinstance(request, dict) else None
    meta: Dict[str, Any] = {}
    if isinstance(params, dict) and isinstance(params.get("_meta"), dict):
        meta = params["_meta"]

    return McpContext(
        shop_id=meta.get("shopId") or headers.get("x-shop-id") or default_shop_id,
        profile_url=meta.get("profile") or headers.get("x-ucp-profile"),
        capabilities=_split_capabilities(meta.get("capabilities")),
        request_id=request.get("id") if isinstance(request, dict) else None,
    )


def sse_event(event: str, data: Any) -> str:
    """One server-sent event frame."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


class JsonRpcDispatcher:
    """Routes JSON-RPC requests to MCP lifecycle methods and tools."""

    def __init__(self, tools: McpToolRegistry) -> None:
        self.tools = tools

    async def handle(self, request: Any, context: McpContext) -> Dict[str, Any]:
        if not is_valid_request(request):
            request_id = request.get("id") if isinstance(request, dict) else None
            return error_response(request_id, JsonRpcError.INVALID_REQUEST, "Invalid Request")

        request_id = request.get("id")
        method = request["method"]
        params = request.get("params") or {}
        if not isinstance(params, dict):
            return error_response(request_id, JsonRpcError.INVALID_PARAMS, "Invalid params: expected object")
        if not isinstance(params.get("_meta") or {}, dict):
            return error_response(request_id, JsonRpcError.INVALID_PARAMS, "Invalid params: _meta must be an object")

        logger.debug(f"MCP request: method={method}, id={request_id}, shop={context.shop_id}")
        try:
            if method == "initialize":
                return success_response(request_id, self.initialize_result())
            if method == "notifications/initialized":
                return success_response(request_id, {})
            if method == "ping":
                return success_response(request_id, {"pong": True})
            if method == "tools/list":
                return success_response(request_id, {"tools": self.tools.get_tools()})
            if method == "tools/call":
                name = params.get("name")
                if not name:
                    return error_response(
                        request_id, JsonRpcError.INVALID_PARAMS, "Invalid params: tool name required"
                    )
                result = await self.tools.execute_tool(name, params.get("arguments") or {}, context)
                return success_response(request_id, result)
        except Exception as e:
            logger.exception(f"MCP request failed: method={method}, id={request_id}")
            return error_response(request_id, JsonRpcError.INTERNAL_ERROR, "Internal error", str(e))

        return error_response(request_id, JsonRpcError.METHOD_NOT_FOUND, f"Method not found: {method}")

    def initialize_result(self) -> Dict[str, Any]:
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        }

    def openrpc_document(self, server_url: str) -> Dict[str, Any]:
        """OpenRPC description of the MCP endpoint."""
        return {
            "openrpc": OPENRPC_VERSION,
            "info": {
                "title": "UCP Commerce MCP API",
                "description": "MCP (Model Context Protocol) API for UCP checkout operations",
                "version": __version__,
                "contact": {"name": "UCP Support", "url": "https://ucp.dev"},
            },
            "servers": [{"name": "MCP Server", "url": f"{server_url}/mcp"}],
            "methods": [
                {
                    "name": "initialize",
                    "summary": "Initialize MCP connection",
                    "params": [
                        {"name": "protocolVersion", "schema": {"type": "string"}},
                        {"name": "capabilities", "schema": {"type": "object"}},
                        {"name": "clientInfo", "schema": {"type": "object"}},
                    ],
                    "result": {
                        "name": "InitializeResult",
                        "schema": {
                            "type": "object",
                            "properties": {
                                "protocolVersion": {"type": "string"},
                                "capabilities": {"type": "object"},
                                "serverInfo": {"type": "object"},
                            },
                        },
                    },
                },
                {
                    "name": "tools/list",
                    "summary": "List available tools",
                    "params": [],
                    "result": {
                        "name": "ToolsListResult",
                        "schema": {
                            "type": "object",
                            "properties": {
                                "tools": {"type": "array", "items": {"$ref": "#/components/schemas/Tool"}},
                            },
                        },
                    },
                },
                {
                    "name": "tools/call",
                    "summary": "Call a tool",
                    "params": [
                        {"name": "name", "schema": {"type": "string"}},
                        {"name": "arguments", "schema": {"type": "object"}},
                    ],
                    "result": {
                        "name": "ToolCallResult",
                        "schema": {
                            "type": "object",
                            "properties": {
                                "content": {"type": "array"},
                                "isError": {"type": "boolean"},
                            },
                        },
                    },
                },
            ],
            "components": {
                "schemas": {
                    "Tool": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "description": {"type": "string"},
                            "inputSchema": {"type": "object"},
                        },
                    },
                },
            },
            "x-tools": [tool["name"] for tool in self.tools.get_tools()],
        }
