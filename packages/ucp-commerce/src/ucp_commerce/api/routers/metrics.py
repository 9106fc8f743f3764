"""Prometheus metrics endpoint for monitoring and observability."""
from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

router = APIRouter(tags=["monitoring"])


@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format, including the
    collectors declared in ``ucp_commerce.metrics``.
    """
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
