"""
Tests for payment handlers and the handler registry.

Tests cover:
- Google Pay token validation
- Tokenizer PSP simulations
- Mollie mock mode
- Per-shop enable/disable and descriptors
"""
from __future__ import annotations

import json

import httpx
import pytest

from ucp_commerce.config import GooglePaySettings, MollieSettings, TokenizerSettings, UCPSettings
from ucp_commerce.exceptions import HandlerNotFoundError
from ucp_commerce.handlers.google_pay import GooglePayHandler, is_valid_google_pay_token
from ucp_commerce.handlers.mollie import MollieHandler
from ucp_commerce.handlers.registry import (
    HandlerConfiguration,
    PaymentHandlerRegistry,
    build_default_registry,
)
from ucp_commerce.handlers.tokenizer import TokenizerHandler
from ucp_commerce.models.checkout import CheckoutSession
from ucp_commerce.models.payments import PaymentAttempt, PaymentCredential, PaymentResultStatus, PaymentType


@pytest.fixture
def session() -> CheckoutSession:
    return CheckoutSession(session_id="cs_handler", shop_id="default", cart_token="cart")


def attempt(token: str, handler_id: str = "business-tokenizer", **kwargs) -> PaymentAttempt:
    return PaymentAttempt(
        handler_id=handler_id,
        credential=PaymentCredential(type=kwargs.pop("credential_type", "card"), token=token),
        amount_minor=6493,
        currency="EUR",
        **kwargs,
    )


class TestGooglePayHandler:
    """Tests for GooglePayHandler."""

    def test_token_validation(self):
        assert is_valid_google_pay_token("opaque-test-token")
        assert not is_valid_google_pay_token("short")
        assert not is_valid_google_pay_token("")
        assert is_valid_google_pay_token(json.dumps({"signature": "sig", "signedMessage": "msg"}))
        assert not is_valid_google_pay_token(json.dumps({"signature": "sig"}))

    def test_configuration_requires_merchant(self):
        assert not GooglePayHandler(GooglePaySettings()).is_configured()
        assert GooglePayHandler(GooglePaySettings(merchant_id="m-1")).is_configured()

    @pytest.mark.asyncio
    async def test_valid_token_captured(self, session):
        handler = GooglePayHandler(GooglePaySettings(merchant_id="m-1"))
        result = await handler.process_payment(session, attempt("opaque-test-token", "google-pay"))

        assert result.status == PaymentResultStatus.CAPTURED
        assert result.transaction_id.startswith("gpay_")

    @pytest.mark.asyncio
    async def test_invalid_token(self, session):
        handler = GooglePayHandler(GooglePaySettings(merchant_id="m-1"))
        result = await handler.process_payment(session, attempt("short", "google-pay"))

        assert not result.success
        assert result.error_code == "invalid_token"

    def test_descriptor(self):
        handler = GooglePayHandler(GooglePaySettings(merchant_id="m-1"))
        descriptor = handler.get_handler_config()

        assert descriptor["id"] == "google-pay"
        assert descriptor["name"] == "com.google.pay"
        assert descriptor["config"]["merchant_id"] == "m-1"
        assert descriptor["config_schema"].endswith("/google-pay/config.json")
        assert handler.can_handle("com.google.pay")


class TestTokenizerHandler:
    """Outcomes of the simulated PSPs are driven by token contents."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "token,status,prefix",
        [
            ("tok_visa", PaymentResultStatus.CAPTURED, "mock_"),
            ("tok_3ds", PaymentResultStatus.REQUIRES_ACTION, "mock_"),
            ("tok_challenge", PaymentResultStatus.REQUIRES_ACTION, "mock_"),
            ("tok_pending", PaymentResultStatus.PENDING, "mock_pending_"),
        ],
    )
    async def test_mock_psp(self, session, token, status, prefix):
        handler = TokenizerHandler(TokenizerSettings(), server_url="http://shop.test")
        result = await handler.process_payment(session, attempt(token))

        assert result.status == status
        assert result.transaction_id.startswith(prefix)

    @pytest.mark.asyncio
    async def test_mock_psp_action_url(self, session):
        handler = TokenizerHandler(TokenizerSettings(), server_url="http://shop.test/")
        result = await handler.process_payment(session, attempt("tok_3ds"))
        assert result.action_url == "http://shop.test/mock-3ds?token=tok_3ds"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["tok_fail", "tok_decline"])
    async def test_mock_psp_declines(self, session, token):
        handler = TokenizerHandler(TokenizerSettings())
        result = await handler.process_payment(session, attempt(token))

        assert result.status == PaymentResultStatus.FAILED
        assert result.error_code == "card_declined"

    @pytest.mark.asyncio
    async def test_stripe_routing(self, session):
        handler = TokenizerHandler(TokenizerSettings(psp_type="stripe"))
        captured = await handler.process_payment(session, attempt("tok_ok"))
        escalated = await handler.process_payment(session, attempt("tok_authenticate"))

        assert captured.transaction_id.startswith("pi_")
        assert escalated.action_url.startswith("https://hooks.stripe.com/")

    @pytest.mark.asyncio
    async def test_mollie_insufficient_funds(self, session):
        handler = TokenizerHandler(TokenizerSettings(psp_type="mollie"))
        result = await handler.process_payment(session, attempt("tok_insufficient"))
        assert result.error_code == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_adyen_refused(self, session):
        handler = TokenizerHandler(TokenizerSettings(psp_type="adyen"))
        result = await handler.process_payment(session, attempt("tok_fail"))
        assert result.error_code == "refused"

    @pytest.mark.asyncio
    async def test_missing_token(self, session):
        handler = TokenizerHandler(TokenizerSettings())
        result = await handler.process_payment(session, attempt(""))
        assert result.error_code == "validation_error"

    def test_tokenization_url(self):
        assert TokenizerHandler(TokenizerSettings(psp_type="stripe")).tokenization_url() == "https://js.stripe.com/v3/"
        mock = TokenizerHandler(TokenizerSettings(), server_url="http://shop.test")
        assert mock.tokenization_url() == "http://shop.test/mock-tokenizer.js"


class TestMollieHandler:
    """Tests for MollieHandler."""

    def test_method_mapping(self):
        assert MollieHandler.mollie_method(attempt("", "mollie", credential_type="ideal")) == "ideal"
        assert MollieHandler.mollie_method(attempt("tok", "mollie")) == "creditcard"
        wallet = attempt("", "mollie", credential_type="", type=PaymentType.WALLET)
        assert MollieHandler.mollie_method(wallet) == "paypal"

    @pytest.mark.asyncio
    async def test_mock_redirect_method(self, session):
        handler = MollieHandler(MollieSettings(api_key="test_key"), server_url="http://shop.test")
        result = await handler.process_payment(session, attempt("", "mollie", credential_type="ideal"))

        assert result.status == PaymentResultStatus.REQUIRES_ACTION
        assert result.action_url.startswith("http://shop.test/mock-mollie/checkout/tr_mock_")

    @pytest.mark.asyncio
    async def test_mock_direct_method(self, session):
        handler = MollieHandler(MollieSettings(api_key="test_key"))
        result = await handler.process_payment(session, attempt("", "mollie", credential_type="paypal"))

        assert result.status == PaymentResultStatus.CAPTURED

    @pytest.mark.asyncio
    async def test_live_api_call(self, session):
        seen = []

        def respond(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "tr_live", "status": "paid", "_links": {}})

        handler = MollieHandler(
            MollieSettings(api_key="live_key", api_url="https://mollie.test/v2"),
            use_mock=False,
            transport=httpx.MockTransport(respond),
        )
        result = await handler.process_payment(session, attempt("tok_card", "mollie", credential_type="paypal"))
        await handler.close()

        assert result.status == PaymentResultStatus.CAPTURED
        assert result.transaction_id == "tr_live"
        body = json.loads(seen[0].content)
        assert body["amount"] == {"currency": "EUR", "value": "64.93"}
        assert body["metadata"]["ucp_session_id"] == "cs_handler"
        assert seen[0].headers["Authorization"] == "Bearer live_key"

    @pytest.mark.asyncio
    async def test_api_error_becomes_failure(self, session):
        handler = MollieHandler(
            MollieSettings(api_key="live_key"),
            use_mock=False,
            transport=httpx.MockTransport(lambda request: httpx.Response(422, json={"detail": "bad"})),
        )
        result = await handler.process_payment(session, attempt("tok_card", "mollie"))
        await handler.close()

        assert result.status == PaymentResultStatus.FAILED
        assert result.error_code == "mollie_error"


class TestPaymentHandlerRegistry:
    """Tests for PaymentHandlerRegistry."""

    @pytest.fixture
    def registry(self) -> PaymentHandlerRegistry:
        return build_default_registry(
            UCPSettings(google_pay=GooglePaySettings(merchant_id="m-1"), server_url="http://shop.test")
        )

    def test_default_handlers(self, registry):
        assert [h.id for h in registry.all_handlers()] == ["google-pay", "business-tokenizer", "mollie"]
        assert registry.get_handler("com.google.pay").id == "google-pay"
        assert registry.validate_handler_id("mollie")
        assert not registry.validate_handler_id("bitcoin")

    def test_only_configured_handlers_without_override(self, registry):
        enabled = [h.id for h in registry.enabled_handlers("shop-a")]
        assert enabled == ["google-pay", "business-tokenizer"]

    def test_shop_override(self, registry):
        registry.configure_shop_handlers(
            "shop-a",
            [HandlerConfiguration(handler_id="business-tokenizer", enabled=True, config={"public_key": "pk"})],
        )

        descriptors = registry.handlers_for_shop("shop-a")
        assert [d["id"] for d in descriptors] == ["business-tokenizer"]
        assert descriptors[0]["config"]["public_key"] == "pk"
        assert [h.id for h in registry.enabled_handlers("shop-b")] == ["google-pay", "business-tokenizer"]

        with pytest.raises(HandlerNotFoundError):
            registry.resolve_for_shop("shop-a", "google-pay")

    def test_configure_unknown_handler(self, registry):
        with pytest.raises(HandlerNotFoundError):
            registry.configure_shop_handlers("shop-a", [HandlerConfiguration(handler_id="bitcoin")])

    def test_enable_and_disable(self, registry):
        registry.enable_handler_for_shop("shop-a", "mollie", {"profile_id": "pfl_1"})
        assert registry.resolve_for_shop("shop-a", "mollie").id == "mollie"

        assert registry.disable_handler_for_shop("shop-a", "mollie")
        with pytest.raises(HandlerNotFoundError):
            registry.resolve_for_shop("shop-a", "mollie")
        assert not registry.disable_handler_for_shop("shop-a", "bitcoin")

    def test_available_handler_types(self, registry):
        types = {t["id"]: t for t in registry.available_handler_types()}
        assert types["google-pay"]["configured"] is True
        assert types["mollie"]["configured"] is False

    def test_config_schema(self, registry):
        schema = registry.handler_config_schema("business-tokenizer")
        assert schema["$id"].endswith("/business-tokenizer/config.json")
        assert schema["properties"]["supports_3ds"] == {"type": "boolean"}
        assert schema["properties"]["supported_brands"] == {"type": "array"}

    @pytest.mark.asyncio
    async def test_connection_checks(self, registry):
        assert (await registry.test_handler_connection("google-pay"))["success"] is True
        assert (await registry.test_handler_connection("mollie"))["success"] is False
        missing = await registry.test_handler_connection("bitcoin")
        assert missing == {"success": False, "message": 'Handler "bitcoin" not found'}
