"""UCP checkout capability REST endpoints."""
from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Header, Request, Response, status
from pydantic import BaseModel, Field

from ...exceptions import SessionNotFoundError
from ...models.checkout import Address, Buyer, LineItemRequest
from ...models.payments import PaymentAttempt, RiskSignals
from ..dependencies import ServiceContainer, get_container, resolve_shop_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/checkout-sessions", tags=["checkout"])

_PROFILE_RE = re.compile(r'profile_url="([^"]+)"')
_CAPABILITIES_RE = re.compile(r'capabilities="([^"]+)"')


# Request models

class LineItemIn(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)
    variant_id: Optional[str] = None


class BuyerIn(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class AddressIn(BaseModel):
    # Field checks happen in the service so they surface as invalid_address
    first_name: str = ""
    last_name: str = ""
    street_address: str = ""
    extended_address: Optional[str] = None
    address_locality: str = ""
    address_region: Optional[str] = None
    postal_code: str = ""
    address_country: str = ""
    phone: Optional[str] = None

    def to_address(self) -> Address:
        return Address(**self.model_dump())


class DiscountsIn(BaseModel):
    codes: List[str] = Field(default_factory=list)


class CreateCheckoutRequest(BaseModel):
    line_items: List[LineItemIn] = Field(min_length=1)
    buyer: Optional[BuyerIn] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class UpdateCheckoutRequest(BaseModel):
    shipping_address: Optional[AddressIn] = None
    billing_address: Optional[AddressIn] = None
    selected_fulfillment_option_id: Optional[str] = None
    discounts: Optional[DiscountsIn] = None
    buyer: Optional[BuyerIn] = None


class CredentialIn(BaseModel):
    type: str
    token: str
    issuer: Optional[str] = None


class PaymentDataIn(BaseModel):
    id: Optional[str] = None
    handler_id: str
    type: str = Field(default="card", pattern="^(card|wallet|bank_transfer)$")
    brand: Optional[str] = None
    last_digits: Optional[str] = None
    billing_address: Optional[AddressIn] = None
    credential: CredentialIn


class RiskSignalsIn(BaseModel):
    session_id: Optional[str] = None
    score: Optional[float] = None


class CompleteCheckoutRequest(BaseModel):
    payment_data: PaymentDataIn
    risk_signals: Optional[RiskSignalsIn] = None


class ResumeCheckoutRequest(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


def parse_ucp_agent(header: Optional[str]) -> Tuple[Optional[str], Optional[List[str]]]:
    """Profile URL and capabilities from a ``UCP-Agent`` header.

    Without a profile URL the header is ignored entirely.
    """
    if not header:
        return None, None
    profile = _PROFILE_RE.search(header)
    if not profile:
        return None, None
    caps = _CAPABILITIES_RE.search(header)
    capabilities = [c.strip() for c in caps.group(1).split(",") if c.strip()] if caps else None
    return profile.group(1), capabilities


def _buyer(data: Optional[BuyerIn]) -> Optional[Buyer]:
    return Buyer(**data.model_dump()) if data else None


# Endpoints

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_checkout_session(
    body: CreateCheckoutRequest,
    request: Request,
    ucp_agent: Optional[str] = Header(default=None, alias="UCP-Agent"),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    shop_id = resolve_shop_id(request, container)
    profile_url, capabilities = parse_ucp_agent(ucp_agent)
    logger.info(f"Creating checkout session: shop={shop_id}, items={len(body.line_items)}, platform={profile_url}")

    return await container.checkout.create(
        shop_id,
        [LineItemRequest(product_id=li.product_id, quantity=li.quantity, variant_id=li.variant_id) for li in body.line_items],
        buyer=_buyer(body.buyer),
        platform_profile_url=profile_url,
        platform_capabilities=capabilities,
    )


@router.get("/{session_id}")
async def get_checkout_session(
    session_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    session = await container.checkout.get(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return session


@router.patch("/{session_id}")
async def update_checkout_session(
    session_id: str,
    body: UpdateCheckoutRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info(f"Updating checkout session: session_id={session_id}")
    return await container.checkout.update(
        session_id,
        shipping_address=body.shipping_address.to_address() if body.shipping_address else None,
        billing_address=body.billing_address.to_address() if body.billing_address else None,
        selected_fulfillment_id=body.selected_fulfillment_option_id,
        discount_codes=body.discounts.codes if body.discounts else None,
        buyer=_buyer(body.buyer),
    )


@router.post("/{session_id}/complete")
async def complete_checkout_session(
    session_id: str,
    body: CompleteCheckoutRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    data = body.payment_data.model_dump()
    data["id"] = data.get("id") or f"pay_{uuid.uuid4().hex[:12]}"
    attempt = PaymentAttempt.from_dict(data)
    risk = RiskSignals(**body.risk_signals.model_dump()) if body.risk_signals else None

    logger.info(f"Completing checkout: session_id={session_id}, handler={attempt.handler_id}")
    return await container.checkout.complete(session_id, attempt, risk)


@router.post("/{session_id}/resume")
async def resume_checkout_session(
    session_id: str,
    body: ResumeCheckoutRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Continue after the buyer finished 3DS or a payment redirect."""
    logger.info(f"Resuming checkout: session_id={session_id}, success={body.success}")
    return await container.checkout.resume(session_id, body.model_dump())


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_checkout_session(
    session_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Response:
    await container.checkout.cancel(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
