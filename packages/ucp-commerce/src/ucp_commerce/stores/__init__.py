"""Persistence for sessions, webhook deliveries and shops."""

from .deliveries import (
    InMemoryWebhookDeliveryStore,
    PostgresWebhookDeliveryStore,
    WebhookDeliveryStore,
    create_delivery_store,
    new_delivery_id,
)
from .sessions import (
    CheckoutSessionStore,
    InMemoryCheckoutSessionStore,
    PostgresCheckoutSessionStore,
    create_session_store,
    new_session_id,
    session_expiry,
)
from .shops import (
    InMemoryShopStore,
    PendingRegistrationStore,
    PostgresShopStore,
    ShopCredentials,
    ShopStore,
    create_shop_store,
)

__all__ = [
    "CheckoutSessionStore",
    "InMemoryCheckoutSessionStore",
    "PostgresCheckoutSessionStore",
    "create_session_store",
    "new_session_id",
    "session_expiry",
    "WebhookDeliveryStore",
    "InMemoryWebhookDeliveryStore",
    "PostgresWebhookDeliveryStore",
    "create_delivery_store",
    "new_delivery_id",
    "ShopCredentials",
    "ShopStore",
    "InMemoryShopStore",
    "PostgresShopStore",
    "PendingRegistrationStore",
    "create_shop_store",
]
