"""Service container shared by the HTTP routers.

One container is built per application by ``build_container`` and exposed to
routers through ``get_container``; tests either pass their own container to
``create_app`` or override ``get_container``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from ..backend.factory import BackendFactory
from ..backend.memory import InMemoryCommerceBackend
from ..cache import CacheBackend, create_cache
from ..config import UCPSettings
from ..handlers.registry import PaymentHandlerRegistry, build_default_registry
from ..services.checkout import CheckoutSessionService
from ..services.order_status import OrderStatusSyncService
from ..services.orders import OrderService
from ..services.payments import PaymentProcessor
from ..services.profile import ProfileBuilder
from ..services.webhooks import WebhookDeliveryService
from ..signing import ES256KeyManager
from ..stores.deliveries import WebhookDeliveryStore, create_delivery_store
from ..stores.sessions import CheckoutSessionStore, create_session_store
from ..stores.shops import PendingRegistrationStore, ShopStore, create_shop_store
from ..transports.jsonrpc import JsonRpcDispatcher
from ..transports.mcp import McpToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: UCPSettings
    sessions: CheckoutSessionStore
    deliveries: WebhookDeliveryStore
    shops: ShopStore
    cache: CacheBackend
    registrations: PendingRegistrationStore
    backends: BackendFactory
    registry: PaymentHandlerRegistry
    signer: ES256KeyManager
    orders: OrderService
    processor: PaymentProcessor
    checkout: CheckoutSessionService
    webhooks: WebhookDeliveryService
    order_status: OrderStatusSyncService
    profile: ProfileBuilder
    mcp_tools: McpToolRegistry
    dispatcher: JsonRpcDispatcher

    async def close(self) -> None:
        """Release clients and pools in reverse dependency order."""
        await self.webhooks.close()
        await self.registry.close()
        await self.backends.close()
        await self.sessions.close()
        await self.deliveries.close()
        await self.shops.close()
        await self.cache.close()
        logger.info("Service container closed")


def build_container(
    settings: UCPSettings,
    webhook_transport: Optional[httpx.AsyncBaseTransport] = None,
    mock_backend: Optional[InMemoryCommerceBackend] = None,
    registry: Optional[PaymentHandlerRegistry] = None,
) -> ServiceContainer:
    """Wire every store and service from settings."""
    sessions = create_session_store(settings.database_url)
    deliveries = create_delivery_store(settings.database_url)
    shops = create_shop_store(settings.database_url)
    cache = create_cache(settings.redis_url or None)
    registrations = PendingRegistrationStore(cache, ttl_seconds=settings.registration_ttl_seconds)

    backends = BackendFactory(
        shops,
        use_mock=settings.use_mock_backend,
        mock_backend=mock_backend,
    )
    registry = registry or build_default_registry(settings)
    signer = ES256KeyManager.from_settings(settings.signing_key_pem, settings.signing_key_id)

    orders = OrderService(backends)
    processor = PaymentProcessor(sessions, backends, registry, orders)
    checkout = CheckoutSessionService(sessions, backends, registry, processor, settings)
    webhooks = WebhookDeliveryService.from_settings(
        settings.webhooks, deliveries, sessions, signer, transport=webhook_transport
    )
    order_status = OrderStatusSyncService(sessions, webhooks, backends)
    profile = ProfileBuilder(settings, registry, signer, cache)
    mcp_tools = McpToolRegistry(checkout)
    dispatcher = JsonRpcDispatcher(mcp_tools)

    logger.info(
        f"Service container built: env={settings.environment}, "
        f"postgres={settings.use_postgres}, mock_backend={settings.use_mock_backend}, "
        f"handlers={len(registry.all_handlers())}"
    )
    return ServiceContainer(
        settings=settings,
        sessions=sessions,
        deliveries=deliveries,
        shops=shops,
        cache=cache,
        registrations=registrations,
        backends=backends,
        registry=registry,
        signer=signer,
        orders=orders,
        processor=processor,
        checkout=checkout,
        webhooks=webhooks,
        order_status=order_status,
        profile=profile,
        mcp_tools=mcp_tools,
        dispatcher=dispatcher,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def resolve_shop_id(request: Request, container: ServiceContainer) -> str:
    return request.headers.get("X-Shop-ID") or container.settings.default_shop_id
