"""MCP endpoints: JSON-RPC over HTTP, the SSE variant and the OpenRPC document."""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ...transports.jsonrpc import JsonRpcError, error_response, extract_context, sse_event
from ..dependencies import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mcp", tags=["mcp"])


async def _read_json(request: Request) -> Any:
    try:
        return json.loads(await request.body() or b"null")
    except ValueError:
        return None


@router.post("")
async def mcp_request(request: Request, container: ServiceContainer = Depends(get_container)):
    payload = await _read_json(request)
    if payload is None:
        return JSONResponse(error_response(None, JsonRpcError.PARSE_ERROR, "Parse error"))

    context = extract_context(payload, request.headers, container.settings.default_shop_id)
    response = await container.dispatcher.handle(payload, context)
    return JSONResponse(response)


@router.post("/sse")
async def mcp_stream(request: Request, container: ServiceContainer = Depends(get_container)):
    """JSON-RPC answered as a server-sent event stream: ``progress`` then ``result``."""
    payload = await _read_json(request)
    context = extract_context(payload or {}, request.headers, container.settings.default_shop_id)

    async def events() -> AsyncIterator[str]:
        yield sse_event("progress", {"id": context.request_id, "status": "processing"})
        try:
            if payload is None:
                response = error_response(None, JsonRpcError.PARSE_ERROR, "Parse error")
            else:
                response = await container.dispatcher.handle(payload, context)
            yield sse_event("result", response)
        except Exception as e:
            logger.exception("MCP SSE request failed")
            yield sse_event(
                "error",
                error_response(context.request_id, JsonRpcError.INTERNAL_ERROR, "Internal error", str(e)),
            )

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/openrpc")
async def openrpc(container: ServiceContainer = Depends(get_container)):
    return container.dispatcher.openrpc_document(container.settings.server_url)
