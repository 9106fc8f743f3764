"""Pytest configuration and fixtures for UCP commerce tests."""
from __future__ import annotations

from typing import AsyncGenerator, List

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from ucp_commerce.api.dependencies import build_container
from ucp_commerce.api.main import create_app
from ucp_commerce.backend.memory import InMemoryCommerceBackend
from ucp_commerce.config import GooglePaySettings, UCPSettings, WebhookSettings
from ucp_commerce.models.checkout import Address, LineItemRequest

PLATFORM_PROFILE = "https://agent.example/.well-known/ucp"


class PlatformStub:
    """Records webhook POSTs and answers with a configurable status."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"received": True})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def make_address(**overrides) -> Address:
    fields = {
        "first_name": "Jan",
        "last_name": "Jansen",
        "street_address": "Damrak 1",
        "address_locality": "Amsterdam",
        "postal_code": "1012 LG",
        "address_country": "NL",
    }
    fields.update(overrides)
    return Address(**fields)


def address_payload(**overrides) -> dict:
    return make_address(**overrides).to_dict()


@pytest.fixture
def settings() -> UCPSettings:
    return UCPSettings(
        environment="dev",
        server_url="http://test-server",
        log_json=False,
        google_pay=GooglePaySettings(merchant_id="merchant-123"),
        webhooks=WebhookSettings(jitter_factor=0, sweep_enabled=False),
    )


@pytest.fixture
def backend() -> InMemoryCommerceBackend:
    return InMemoryCommerceBackend()


@pytest.fixture
def platform() -> PlatformStub:
    return PlatformStub()


@pytest.fixture
def container(settings, backend, platform):
    return build_container(settings, webhook_transport=platform.transport, mock_backend=backend)


@pytest.fixture
def checkout(container):
    return container.checkout


@pytest.fixture
def app(container):
    """Create a test application around the shared container."""
    return create_app(container=container)


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def ready_session(checkout) -> str:
    """A session with two units of product-1, an NL address and standard shipping."""
    view = await checkout.create(
        "default",
        [LineItemRequest(product_id="product-1", quantity=2)],
        platform_profile_url=PLATFORM_PROFILE,
    )
    await checkout.update(
        view["id"],
        shipping_address=make_address(),
        selected_fulfillment_id="standard-shipping",
    )
    return view["id"]
