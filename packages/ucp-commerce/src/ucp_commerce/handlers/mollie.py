"""Mollie native payment handler."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import MollieSettings
from ..models.checkout import CheckoutSession
from ..models.payments import PaymentAttempt, PaymentResult
from .base import HANDLER_SCHEMA_BASE, BasePaymentHandler, new_transaction_id

logger = logging.getLogger(__name__)

# Protocol payment type or credential type -> Mollie method
METHOD_MAP = {
    "card": "creditcard",
    "ideal": "ideal",
    "bancontact": "bancontact",
    "paypal": "paypal",
    "applepay": "applepay",
    "googlepay": "googlepay",
    "klarna": "klarnapaylater",
    "eps": "eps",
    "giropay": "giropay",
    "sofort": "sofort",
    "bank_transfer": "banktransfer",
    "wallet": "paypal",
}

SUPPORTED_METHODS = [
    "ideal", "creditcard", "bancontact", "paypal", "applepay",
    "googlepay", "klarnapaylater", "eps", "giropay", "sofort",
]

REDIRECT_METHODS = {"ideal", "bancontact", "creditcard"}


class MollieHandler(BasePaymentHandler):
    id = "mollie"
    name = "com.mollie.payments"
    description = "Accept payments via Mollie (iDEAL, Cards, Bancontact, etc.)"
    processing_error_code = "mollie_error"
    instrument_schemas = [
        f"{HANDLER_SCHEMA_BASE}/mollie/ideal.json",
        f"{HANDLER_SCHEMA_BASE}/mollie/bancontact.json",
        f"{HANDLER_SCHEMA_BASE}/mollie/card.json",
    ]

    def __init__(
        self,
        settings: MollieSettings,
        server_url: str = "http://localhost:3000",
        use_mock: bool = True,
        ucp_version: str = "2026-01-11",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(ucp_version)
        self.settings = settings
        self.server_url = server_url.rstrip("/")
        self.use_mock = use_mock
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def is_configured(self) -> bool:
        return bool(self.settings.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.api_url.rstrip("/"),
                timeout=self._timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def validate_attempt(self, attempt: PaymentAttempt) -> Optional[str]:
        # Redirect methods need no token, only a method choice
        if not attempt.type and not (attempt.credential and attempt.credential.token):
            return "Payment method or credential is required"
        return None

    @staticmethod
    def mollie_method(attempt: PaymentAttempt) -> str:
        credential_type = (attempt.credential.type or "").lower() if attempt.credential else ""
        if credential_type in METHOD_MAP:
            return METHOD_MAP[credential_type]
        return METHOD_MAP.get(attempt.type.value, "creditcard")

    async def _process(self, session: CheckoutSession, attempt: PaymentAttempt) -> PaymentResult:
        method = self.mollie_method(attempt)
        if self.use_mock:
            payment = self._mock_payment(method)
        else:
            payment = await self._create_payment(session, attempt, method)

        payment_id = payment["id"]
        status = payment.get("status", "open")
        checkout = ((payment.get("_links") or {}).get("checkout") or {}).get("href")

        if checkout:
            return PaymentResult.requires_action(checkout, payment_id, method=method)
        if status == "paid":
            return PaymentResult.captured(payment_id, method=method)
        if status == "authorized":
            return PaymentResult.authorized(payment_id, method=method)
        if status in ("failed", "canceled", "expired"):
            return PaymentResult.failed("payment_failed", f"Payment {status}")
        return PaymentResult.pending(payment_id, method=method)

    def _mock_payment(self, method: str) -> Dict[str, Any]:
        payment_id = new_transaction_id("tr_mock")
        links: Dict[str, Any] = {
            "dashboard": {"href": f"https://www.mollie.com/dashboard/payments/{payment_id}"},
        }
        if method in REDIRECT_METHODS:
            path = "3ds" if method == "creditcard" else "checkout"
            links["checkout"] = {"href": f"{self.server_url}/mock-mollie/{path}/{payment_id}"}
            return {"id": payment_id, "status": "open", "_links": links}
        return {"id": payment_id, "status": "paid", "_links": links}

    async def _create_payment(
        self, session: CheckoutSession, attempt: PaymentAttempt, method: str
    ) -> Dict[str, Any]:
        if attempt.amount_minor is None:
            raise ValueError("Payment amount is unknown")

        body: Dict[str, Any] = {
            "amount": {
                "currency": attempt.currency or "EUR",
                "value": f"{attempt.amount_minor / 100:.2f}",
            },
            "description": f"Order for session {session.session_id}",
            "redirectUrl": self.settings.redirect_url
            or f"{self.server_url}/checkout/return?session={session.session_id}",
            "webhookUrl": self.settings.webhook_url or f"{self.server_url}/webhooks/mollie",
            "method": method,
            "metadata": {"ucp_session_id": session.session_id, "shop_id": session.shop_id},
        }
        if self.settings.profile_id:
            body["profileId"] = self.settings.profile_id
        if attempt.credential and attempt.credential.token:
            body["cardToken"] = attempt.credential.token
        if attempt.credential and attempt.credential.issuer:
            body["issuer"] = attempt.credential.issuer

        client = await self._get_client()
        response = await client.post("/payments", json=body)
        if response.status_code >= 400:
            raise RuntimeError(f"Mollie API error: {response.status_code} - {response.text}")
        return response.json()

    async def handle_webhook(self, payment_id: str) -> Dict[str, Any]:
        """Look up a payment after Mollie notified us of a status change."""
        logger.info(f"Processing Mollie webhook: payment_id={payment_id}")
        if self.use_mock:
            return {"status": "paid", "paid": True}

        client = await self._get_client()
        response = await client.get(f"/payments/{payment_id}")
        if response.status_code >= 400:
            raise RuntimeError(f"Failed to fetch payment status: {response.status_code}")
        status = response.json().get("status", "open")
        return {"status": status, "paid": status == "paid"}

    async def test_connection(self) -> str:
        if not self.is_configured():
            raise ValueError('Handler "mollie" is not properly configured')
        if self.use_mock:
            return "Mollie ready (mock mode)"
        client = await self._get_client()
        response = await client.get("/methods")
        if response.status_code >= 400:
            raise RuntimeError(f"Mollie API returned {response.status_code}")
        return "Mollie API reachable"

    def handler_config(self) -> Dict[str, Any]:
        return {
            "profile_id": self.settings.profile_id,
            "test_mode": self.settings.test_mode,
            "supported_methods": list(SUPPORTED_METHODS),
            "countries": ["NL", "BE", "DE", "AT", "FR"],
        }
