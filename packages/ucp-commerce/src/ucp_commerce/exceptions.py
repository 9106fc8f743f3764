"""Exception hierarchy for the UCP commerce server.

Every error that reaches an agent carries a stable, lower-snake error code
(``session_not_found``, ``card_declined`` ...), a human message and optional
details. The family base classes fix the HTTP status used by the REST
surface; the MCP transport turns the same exceptions into ``isError``
content blocks instead.

Usage:
    from ucp_commerce.exceptions import SessionNotFoundError

    raise SessionNotFoundError(session_id)
"""
from __future__ import annotations

from typing import Any, Optional


class UCPException(Exception):
    """Base exception for all UCP errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "session_not_found")
        details: Optional additional context
    """

    error_code: str = "internal_error"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Families
# =============================================================================

class UCPNotFoundError(UCPException):
    """Requested resource not found."""

    error_code = "not_found"
    http_status = 404


class UCPValidationError(UCPException):
    """Invalid input data."""

    error_code = "validation_error"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, error_code=error_code, details=details)


class UCPBusinessRuleError(UCPException):
    """Request is well formed but violates a business rule."""

    error_code = "business_rule_violation"
    http_status = 400


class UCPAuthenticationError(UCPException):
    """Signature or credential check failed."""

    error_code = "unauthorized"
    http_status = 401


class UCPPaymentError(UCPException):
    """Payment did not settle. The code is taken verbatim from the processor."""

    error_code = "payment_failed"
    http_status = 402


class UCPConflictError(UCPException):
    """Concurrent modification of the same resource."""

    error_code = "conflict"
    http_status = 409


class UCPInternalError(UCPException):
    """Infrastructure or unexpected failure."""

    error_code = "internal_error"
    http_status = 500


# =============================================================================
# Not found
# =============================================================================

class SessionNotFoundError(UCPNotFoundError):
    error_code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__("Session not found", details={"session_id": session_id})


class ProductUnavailableError(UCPNotFoundError):
    error_code = "product_unavailable"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found", details={"product_id": product_id})


class HandlerNotFoundError(UCPNotFoundError):
    error_code = "handler_not_found"

    def __init__(self, handler_id: str) -> None:
        super().__init__(
            f'Payment handler "{handler_id}" not found',
            details={"handler_id": handler_id},
        )


class DeliveryNotFoundError(UCPNotFoundError):
    error_code = "delivery_not_found"

    def __init__(self, delivery_id: str) -> None:
        super().__init__("Delivery not found", details={"delivery_id": delivery_id})


class ShopNotFoundError(UCPNotFoundError):
    error_code = "shop_not_found"

    def __init__(self, shop_id: str) -> None:
        super().__init__("Shop not found", details={"shop_id": shop_id})


# =============================================================================
# Validation / business rules
# =============================================================================

class InvalidAddressError(UCPValidationError):
    error_code = "invalid_address"


class SessionExpiredError(UCPBusinessRuleError):
    error_code = "session_expired"

    def __init__(self, session_id: str) -> None:
        super().__init__("Session has expired", details={"session_id": session_id})


class InsufficientInventoryError(UCPBusinessRuleError):
    error_code = "insufficient_inventory"

    def __init__(self, product_name: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {product_name}",
            details={"requested": requested, "available": available},
        )


class InvalidSessionStateError(UCPBusinessRuleError):
    """Operation not allowed in the session's current status."""

    error_code = "invalid_session_state"


class DeliveryAlreadySentError(UCPBusinessRuleError):
    error_code = "delivery_already_sent"

    def __init__(self, delivery_id: str) -> None:
        super().__init__("Delivery already successful", details={"delivery_id": delivery_id})


# =============================================================================
# Payment / conflict / internal
# =============================================================================

class PaymentError(UCPPaymentError):
    """Raised by the payment pipeline with the processor's own code."""

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, error_code=code, details=details)


class CheckoutInProgressError(UCPConflictError):
    error_code = "checkout_in_progress"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Another completion attempt is already in progress for this session",
            details={"session_id": session_id},
        )


class OrderCreationFailedError(UCPInternalError):
    """Payment settled but the backend order could not be created."""

    error_code = "order_creation_failed"

    def __init__(
        self,
        session_id: str,
        transaction_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> None:
        details = {"session_id": session_id}
        if transaction_id:
            details["transaction_id"] = transaction_id
        message = "Payment was processed but order could not be created. Please contact support."
        if order_id:
            details["order_id"] = order_id
            message = "Payment was processed but the order could not be attached to the session. Please contact support."
        super().__init__(message, details=details)


class BackendError(UCPInternalError):
    """Commerce backend call failed."""

    error_code = "backend_error"


class WebhookSignatureError(UCPAuthenticationError):
    error_code = "invalid_signature"

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


__all__ = [
    "UCPException",
    "UCPNotFoundError",
    "UCPValidationError",
    "UCPBusinessRuleError",
    "UCPAuthenticationError",
    "UCPPaymentError",
    "UCPConflictError",
    "UCPInternalError",
    "SessionNotFoundError",
    "ProductUnavailableError",
    "HandlerNotFoundError",
    "DeliveryNotFoundError",
    "ShopNotFoundError",
    "InvalidAddressError",
    "SessionExpiredError",
    "InsufficientInventoryError",
    "InvalidSessionStateError",
    "DeliveryAlreadySentError",
    "PaymentError",
    "CheckoutInProgressError",
    "OrderCreationFailedError",
    "BackendError",
    "WebhookSignatureError",
]
