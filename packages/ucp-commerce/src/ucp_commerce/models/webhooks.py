"""Outbound webhook delivery record."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .checkout import utcnow


class WebhookDeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"


class OrderEvent(str, Enum):
    """Protocol order events pushed to platforms."""

    UPDATED = "order.updated"
    SHIPPED = "order.shipped"
    DELIVERED = "order.delivered"
    CANCELED = "order.canceled"


@dataclass(slots=True)
class WebhookDelivery:
    """One durable, retryable delivery of an event to a platform callback.

    The payload is a snapshot taken at enqueue time; retries replay it
    unchanged.
    """

    delivery_id: str
    shop_id: str
    event: str
    target_url: str
    payload: Dict[str, Any]
    session_id: Optional[str] = None
    order_id: Optional[str] = None
    status: WebhookDeliveryStatus = WebhookDeliveryStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.delivery_id,
            "shop_id": self.shop_id,
            "session_id": self.session_id,
            "order_id": self.order_id,
            "event": self.event,
            "target_url": self.target_url,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class WebhookDeliveryResult:
    success: bool
    delivery_id: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "delivery_id": self.delivery_id}
        if self.error:
            result["error"] = self.error
        return result
