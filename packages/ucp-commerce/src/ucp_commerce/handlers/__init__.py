"""Payment handlers."""

from .base import BasePaymentHandler, PaymentHandler, new_transaction_id
from .google_pay import GooglePayHandler
from .mollie import MollieHandler
from .registry import HandlerConfiguration, PaymentHandlerRegistry, build_default_registry
from .tokenizer import TokenizerHandler

__all__ = [
    "BasePaymentHandler",
    "GooglePayHandler",
    "HandlerConfiguration",
    "MollieHandler",
    "PaymentHandler",
    "PaymentHandlerRegistry",
    "TokenizerHandler",
    "build_default_registry",
    "new_transaction_id",
]
