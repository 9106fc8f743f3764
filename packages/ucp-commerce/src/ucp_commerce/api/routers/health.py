"""Liveness and readiness probes."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ... import __version__
from ...models.checkout import utcnow
from ..dependencies import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(container: ServiceContainer = Depends(get_container)):
    return {
        "status": "healthy",
        "version": __version__,
        "ucp_version": container.settings.ucp_version,
        "environment": container.settings.environment,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/live")
async def liveness():
    """Kubernetes liveness probe."""
    return {"status": "alive"}


@router.get("/ready")
async def readiness(container: ServiceContainer = Depends(get_container)):
    """Readiness probe: storage and cache must answer."""
    checks = {}
    ready = True

    try:
        await container.sessions.get_stats(container.settings.default_shop_id)
        checks["database"] = "postgresql" if container.settings.use_postgres else "in_memory"
    except Exception as e:
        logger.warning(f"Readiness check failed: component=database, error={e}")
        checks["database"] = "unavailable"
        ready = False

    try:
        await container.cache.exists("ucp:health")
        checks["cache"] = "up"
    except Exception as e:
        logger.warning(f"Readiness check failed: component=cache, error={e}")
        checks["cache"] = "unavailable"
        ready = False

    if not ready:
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
    return {"status": "ready", "checks": checks}
