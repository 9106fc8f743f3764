"""Order state types shared by the status translator and the order services."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderStateType(str, Enum):
    """The backend runs three independent state machines per order."""

    ORDER = "order"
    DELIVERY = "delivery"
    TRANSACTION = "transaction"


class UCPOrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    RETURNED = "returned"


@dataclass(slots=True)
class TrackingInfo:
    carrier: str
    tracking_number: str
    tracking_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"carrier": self.carrier, "tracking_number": self.tracking_number}
        if self.tracking_url:
            result["tracking_url"] = self.tracking_url
        return result


@dataclass(slots=True)
class OrderStateChange:
    """A backend state-machine transition for one order."""

    order_id: str
    new_state: str
    state_type: OrderStateType = OrderStateType.ORDER
    previous_state: Optional[str] = None
    order_number: Optional[str] = None
    tracking_codes: List[str] = field(default_factory=list)
    carrier: Optional[str] = None


@dataclass(slots=True)
class OrderSyncResult:
    success: bool
    event: Optional[str] = None
    status: Optional[str] = None
    delivery_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        for key in ("event", "status", "delivery_id", "error"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result
