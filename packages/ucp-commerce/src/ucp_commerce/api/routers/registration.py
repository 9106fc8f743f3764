"""Backend app registration handshake and lifecycle hooks.

1. ``GET /backend/registration`` (signed with the app secret) answers with a
   proof, a fresh shop secret and the confirmation URL, and parks the
   handshake in the pending-registration store.
2. ``POST /backend/registration/confirm`` delivers the shop's API
   credentials; it only succeeds while the pending entry is alive and the
   shop URL matches.
"""
from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field

from ...exceptions import UCPValidationError, WebhookSignatureError
from ...signing import compute_hmac_signature, verify_hmac_signature
from ...stores.shops import ShopCredentials
from ..dependencies import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backend", tags=["registration"])

APP_SIGNATURE_HEADER = "shopware-app-signature"


class RegistrationConfirmation(BaseModel):
    shop_id: str = Field(alias="shopId")
    shop_url: str = Field(alias="shopUrl")
    api_key: str = Field(alias="apiKey")
    secret_key: str = Field(alias="secretKey")
    timestamp: Optional[str] = None


class ShopLifecycleEvent(BaseModel):
    shop_id: Optional[str] = Field(default=None, alias="shopId")


def generate_proof(app_secret: str, shop_id: str, shop_url: str, app_name: str) -> str:
    return compute_hmac_signature(app_secret, f"{shop_id}{shop_url}{app_name}")


@router.get("/registration")
async def register(
    request: Request,
    shop_id: str = Query(alias="shop-id"),
    shop_url: str = Query(alias="shop-url"),
    timestamp: str = Query(),
    container: ServiceContainer = Depends(get_container),
):
    settings = container.settings
    signature = request.headers.get(APP_SIGNATURE_HEADER)
    if not signature:
        logger.warning("Missing app signature header")
        raise WebhookSignatureError("Missing signature")
    if not verify_hmac_signature(settings.app_secret, request.url.query, signature):
        logger.warning(f"Invalid app signature: shop={shop_id}")
        raise WebhookSignatureError()

    logger.info(f"Received registration request: shop={shop_id}, shop_url={shop_url}")
    shop_secret = secrets.token_hex(32)
    await container.registrations.put(shop_id, shop_url, shop_secret)

    return {
        "proof": generate_proof(settings.app_secret, shop_id, shop_url, settings.app_name),
        "secret": shop_secret,
        "confirmation_url": f"{settings.server_url}/backend/registration/confirm",
    }


@router.post("/registration/confirm", status_code=status.HTTP_204_NO_CONTENT)
async def confirm_registration(
    body: RegistrationConfirmation,
    container: ServiceContainer = Depends(get_container),
) -> Response:
    pending = await container.registrations.get(body.shop_id)
    if pending is None:
        logger.warning(f"No pending registration found: shop={body.shop_id}")
        raise UCPValidationError("No pending registration found", error_code="registration_not_found")
    if pending["shop_url"] != body.shop_url:
        logger.warning(f"Shop URL mismatch on confirmation: shop={body.shop_id}")
        raise UCPValidationError("Shop URL mismatch", field="shopUrl")

    await container.shops.upsert(
        ShopCredentials(
            shop_id=body.shop_id,
            shop_url=body.shop_url,
            api_key=body.api_key,
            secret_key=body.secret_key,
            app_name=container.settings.app_name,
        )
    )
    await container.registrations.delete(body.shop_id)
    await container.backends.forget(body.shop_id)
    await container.profile.invalidate_cache()

    logger.info(f"Shop registered successfully: shop={body.shop_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _require_shop_id(body: ShopLifecycleEvent) -> str:
    if not body.shop_id:
        raise UCPValidationError("Shop ID required", field="shopId")
    return body.shop_id


@router.post("/deactivate", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate(body: ShopLifecycleEvent, container: ServiceContainer = Depends(get_container)) -> Response:
    shop_id = _require_shop_id(body)
    await container.shops.deactivate(shop_id)
    await container.backends.forget(shop_id)
    logger.info(f"Shop deactivated: shop={shop_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/uninstall", status_code=status.HTTP_204_NO_CONTENT)
async def uninstall(body: ShopLifecycleEvent, container: ServiceContainer = Depends(get_container)) -> Response:
    shop_id = _require_shop_id(body)
    await container.shops.delete(shop_id)
    await container.backends.forget(shop_id)
    logger.info(f"Shop uninstalled: shop={shop_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
