"""UCP commerce data models."""

from .checkout import (
    CANCELABLE_STATUSES,
    COMPLETABLE_STATUSES,
    EXPIRABLE_STATUSES,
    Address,
    Buyer,
    CheckoutSession,
    CheckoutStatus,
    LineItemRequest,
    utcnow,
)
from .orders import (
    OrderStateChange,
    OrderStateType,
    OrderSyncResult,
    TrackingInfo,
    UCPOrderStatus,
)
from .payments import (
    PaymentAttempt,
    PaymentCredential,
    PaymentResult,
    PaymentResultStatus,
    PaymentType,
    RiskSignals,
)
from .webhooks import (
    OrderEvent,
    WebhookDelivery,
    WebhookDeliveryResult,
    WebhookDeliveryStatus,
)

__all__ = [
    # Checkout
    "CANCELABLE_STATUSES",
    "COMPLETABLE_STATUSES",
    "EXPIRABLE_STATUSES",
    "Address",
    "Buyer",
    "CheckoutSession",
    "CheckoutStatus",
    "LineItemRequest",
    "utcnow",
    # Orders
    "OrderStateChange",
    "OrderStateType",
    "OrderSyncResult",
    "TrackingInfo",
    "UCPOrderStatus",
    # Payments
    "PaymentAttempt",
    "PaymentCredential",
    "PaymentResult",
    "PaymentResultStatus",
    "PaymentType",
    "RiskSignals",
    # Webhooks
    "OrderEvent",
    "WebhookDelivery",
    "WebhookDeliveryResult",
    "WebhookDeliveryStatus",
]
