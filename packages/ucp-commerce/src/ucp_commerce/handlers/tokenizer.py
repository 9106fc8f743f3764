"""Business tokenizer handler.

Accepts cards tokenized client-side and routes them to the configured PSP.
PSP calls are simulated from the token contents, which lets agents and
tests drive every outcome:

========  ==========================  ===========================  =====================
PSP       requires_action             failed                       transaction prefix
========  ==========================  ===========================  =====================
mock      ``3ds`` / ``challenge``     ``fail`` / ``decline``;      ``mock_``
                                      ``pending`` gives pending
mollie    ``3ds`` / ``challenge``     ``fail`` / ``decline``,      ``tr_``
                                      ``insufficient``
stripe    ``3ds`` / ``authenticate``  ``fail`` / ``decline``       ``pi_``
adyen     ``3ds`` / ``redirect``      ``fail`` (refused)           ``adyen_``
========  ==========================  ===========================  =====================
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from ..config import TokenizerSettings
from ..models.checkout import CheckoutSession
from ..models.payments import PaymentAttempt, PaymentResult
from .base import HANDLER_SCHEMA_BASE, BasePaymentHandler, new_transaction_id

logger = logging.getLogger(__name__)

TOKENIZATION_URLS = {
    "mollie": "https://js.mollie.com/v1/",
    "stripe": "https://js.stripe.com/v3/",
    "adyen": "https://checkoutshopper-live.adyen.com/checkoutshopper/sdk/",
}


def _contains(token: str, *needles: str) -> bool:
    return any(n in token for n in needles)


class TokenizerHandler(BasePaymentHandler):
    id = "business-tokenizer"
    name = "dev.ucp.business_tokenizer"
    description = "Process pre-tokenized card payments via PSP"
    instrument_schemas = [f"{HANDLER_SCHEMA_BASE}/business-tokenizer/card.json"]

    def __init__(
        self,
        settings: TokenizerSettings,
        server_url: str = "http://localhost:3000",
        ucp_version: str = "2026-01-11",
    ) -> None:
        super().__init__(ucp_version)
        self.settings = settings
        self.server_url = server_url.rstrip("/")

    @property
    def psp_type(self) -> str:
        return self.settings.psp_type

    async def _process(self, session: CheckoutSession, attempt: PaymentAttempt) -> PaymentResult:
        token = attempt.credential.token
        logger.debug(f"Routing tokenized payment: session_id={session.session_id}, psp={self.psp_type}")
        route = {
            "mollie": self._process_mollie,
            "stripe": self._process_stripe,
            "adyen": self._process_adyen,
        }.get(self.psp_type, self._process_mock)
        return route(token)

    def _process_mollie(self, token: str) -> PaymentResult:
        if _contains(token, "3ds", "challenge"):
            return PaymentResult.requires_action(
                f"https://www.mollie.com/checkout/select-issuer/creditcard/{token}",
                new_transaction_id("tr"),
            )
        if _contains(token, "fail", "decline"):
            return PaymentResult.failed("card_declined", "The card was declined by the issuer")
        if "insufficient" in token:
            return PaymentResult.failed("insufficient_funds", "Insufficient funds on the card")
        return PaymentResult.captured(new_transaction_id("tr"))

    def _process_stripe(self, token: str) -> PaymentResult:
        if _contains(token, "3ds", "authenticate"):
            return PaymentResult.requires_action(
                f"https://hooks.stripe.com/3d_secure_2/authenticate/{token}",
                new_transaction_id("pi"),
            )
        if _contains(token, "fail", "decline"):
            return PaymentResult.failed("card_declined", "Your card was declined")
        return PaymentResult.captured(new_transaction_id("pi"))

    def _process_adyen(self, token: str) -> PaymentResult:
        if _contains(token, "3ds", "redirect"):
            return PaymentResult.requires_action(
                f"https://checkoutshopper-test.adyen.com/checkoutshopper/threeDS2.shtml?token={token}",
                new_transaction_id("adyen"),
            )
        if "fail" in token:
            return PaymentResult.failed("refused", "Payment was refused by Adyen")
        return PaymentResult.captured(new_transaction_id("adyen"))

    def _process_mock(self, token: str) -> PaymentResult:
        if _contains(token, "3ds", "challenge"):
            return PaymentResult.requires_action(
                f"{self.server_url}/mock-3ds?token={token}",
                new_transaction_id("mock"),
            )
        if _contains(token, "fail", "decline"):
            return PaymentResult.failed("card_declined", "Mock: Card declined")
        if "pending" in token:
            return PaymentResult.pending(new_transaction_id("mock_pending"))
        return PaymentResult.captured(new_transaction_id("mock"))

    def tokenization_url(self) -> str:
        if self.settings.tokenization_url:
            return self.settings.tokenization_url
        return TOKENIZATION_URLS.get(self.psp_type, f"{self.server_url}/mock-tokenizer.js")

    async def test_connection(self) -> str:
        return f"Tokenizer ready (psp={self.psp_type})"

    def handler_config(self) -> Dict[str, Any]:
        return {
            "psp_type": self.psp_type,
            "public_key": self.settings.public_key,
            "tokenization_url": self.tokenization_url(),
            "supported_brands": list(self.settings.supported_brands),
            "supports_3ds": self.settings.supports_3ds,
        }
