"""Discovery profile endpoint."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..dependencies import ServiceContainer, get_container, resolve_shop_id

router = APIRouter(tags=["profile"])


@router.get("/.well-known/ucp")
async def get_profile(request: Request, container: ServiceContainer = Depends(get_container)):
    """UCP business profile: services, capabilities, payment handlers and signing keys."""
    shop_id = resolve_shop_id(request, container)
    profile = await container.profile.build_profile(shop_id)
    return JSONResponse(
        content=profile,
        headers={
            "Cache-Control": f"public, max-age={container.profile.ttl_seconds}",
            "X-UCP-Version": container.settings.ucp_version,
        },
    )
