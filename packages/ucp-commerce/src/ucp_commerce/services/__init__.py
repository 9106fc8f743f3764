"""Domain services."""

from .checkout import (
    SERVER_CAPABILITIES,
    CheckoutSessionService,
    capability_matches,
    negotiate_capabilities,
)
from .order_status import OrderStatusSyncService, OrderStatusTranslator
from .orders import OrderService
from .payments import CompletionResult, PaymentProcessor
from .profile import ProfileBuilder
from .webhooks import RetryConfig, WebhookDeliveryService, webhook_url_for

__all__ = [
    "SERVER_CAPABILITIES",
    "CheckoutSessionService",
    "CompletionResult",
    "OrderService",
    "OrderStatusSyncService",
    "OrderStatusTranslator",
    "PaymentProcessor",
    "ProfileBuilder",
    "RetryConfig",
    "WebhookDeliveryService",
    "capability_matches",
    "negotiate_capabilities",
    "webhook_url_for",
]
