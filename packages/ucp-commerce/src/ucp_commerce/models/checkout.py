"""Checkout session record and its value objects."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckoutStatus(str, Enum):
    """Protocol-visible status of a checkout session."""

    INCOMPLETE = "incomplete"
    READY_FOR_COMPLETE = "ready_for_complete"
    COMPLETE_IN_PROGRESS = "complete_in_progress"
    REQUIRES_ESCALATION = "requires_escalation"
    COMPLETED = "completed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (CheckoutStatus.COMPLETED, CheckoutStatus.CANCELED)


# Statuses from which a completion attempt may start
COMPLETABLE_STATUSES = frozenset({
    CheckoutStatus.INCOMPLETE,
    CheckoutStatus.READY_FOR_COMPLETE,
    CheckoutStatus.REQUIRES_ESCALATION,
})

# Statuses that may move to canceled, by request or lazy expiry. A session
# with a payment in flight is never canceled underneath it.
CANCELABLE_STATUSES = COMPLETABLE_STATUSES
EXPIRABLE_STATUSES = CANCELABLE_STATUSES


@dataclass(slots=True)
class Address:
    """Postal address in protocol shape."""

    first_name: str
    last_name: str
    street_address: str
    address_locality: str
    postal_code: str
    address_country: str
    extended_address: Optional[str] = None
    address_region: Optional[str] = None
    phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Address":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(slots=True)
class Buyer:
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(slots=True)
class LineItemRequest:
    """A line item as requested by the agent on session creation."""

    product_id: str
    quantity: int = 1
    variant_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValueError("quantity must be at least 1")

    @property
    def referenced_id(self) -> str:
        return self.variant_id or self.product_id


@dataclass(slots=True)
class CheckoutSession:
    """Persisted checkout session.

    The protocol view is projected from this record plus the live backend
    cart; nothing about cart contents or totals is stored here.
    """

    session_id: str
    shop_id: str
    cart_token: str
    status: CheckoutStatus = CheckoutStatus.INCOMPLETE

    # Platform negotiation
    platform_profile_url: Optional[str] = None
    platform_id: Optional[str] = None
    platform_capabilities: List[str] = field(default_factory=list)
    active_capabilities: List[str] = field(default_factory=list)
    active_extensions: List[str] = field(default_factory=lambda: ["fulfillment", "discounts"])

    # Buyer and checkout data
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    selected_fulfillment_id: Optional[str] = None
    discount_codes: List[str] = field(default_factory=list)

    # Result
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    payment_handler_id: Optional[str] = None
    transaction_id: Optional[str] = None
    pending_transaction_id: Optional[str] = None

    # Timing
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=lambda: utcnow() + timedelta(hours=6))
    completed_at: Optional[datetime] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    @property
    def is_ready_for_order(self) -> bool:
        return self.shipping_address is not None and bool(self.selected_fulfillment_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "shop_id": self.shop_id,
            "cart_token": self.cart_token,
            "status": self.status.value,
            "platform_profile_url": self.platform_profile_url,
            "platform_id": self.platform_id,
            "platform_capabilities": list(self.platform_capabilities),
            "active_capabilities": list(self.active_capabilities),
            "active_extensions": list(self.active_extensions),
            "buyer_email": self.buyer_email,
            "buyer_phone": self.buyer_phone,
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
            "billing_address": self.billing_address.to_dict() if self.billing_address else None,
            "selected_fulfillment_id": self.selected_fulfillment_id,
            "discount_codes": list(self.discount_codes),
            "order_id": self.order_id,
            "order_number": self.order_number,
            "payment_handler_id": self.payment_handler_id,
            "transaction_id": self.transaction_id,
            "pending_transaction_id": self.pending_transaction_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckoutSession":
        def _dt(value: Any) -> Optional[datetime]:
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        def _addr(value: Any) -> Optional[Address]:
            if value is None or isinstance(value, Address):
                return value
            return Address.from_dict(value)

        return cls(
            session_id=data["session_id"],
            shop_id=data["shop_id"],
            cart_token=data["cart_token"],
            status=CheckoutStatus(data.get("status", "incomplete")),
            platform_profile_url=data.get("platform_profile_url"),
            platform_id=data.get("platform_id"),
            platform_capabilities=list(data.get("platform_capabilities") or []),
            active_capabilities=list(data.get("active_capabilities") or []),
            active_extensions=list(data.get("active_extensions") or []),
            buyer_email=data.get("buyer_email"),
            buyer_phone=data.get("buyer_phone"),
            shipping_address=_addr(data.get("shipping_address")),
            billing_address=_addr(data.get("billing_address")),
            selected_fulfillment_id=data.get("selected_fulfillment_id"),
            discount_codes=list(data.get("discount_codes") or []),
            order_id=data.get("order_id"),
            order_number=data.get("order_number"),
            payment_handler_id=data.get("payment_handler_id"),
            transaction_id=data.get("transaction_id"),
            pending_transaction_id=data.get("pending_transaction_id"),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
            expires_at=_dt(data.get("expires_at")) or utcnow(),
            completed_at=_dt(data.get("completed_at")),
            metadata=dict(data.get("metadata") or {}),
        )
