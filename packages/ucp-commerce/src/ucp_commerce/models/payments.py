"""Payment attempt and result types shared by handlers and the processor."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .checkout import Address


class PaymentResultStatus(str, Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"


SUCCESS_STATUSES = frozenset({PaymentResultStatus.AUTHORIZED, PaymentResultStatus.CAPTURED})


class PaymentType(str, Enum):
    CARD = "card"
    WALLET = "wallet"
    BANK_TRANSFER = "bank_transfer"


@dataclass(slots=True)
class PaymentCredential:
    type: str
    token: str
    issuer: Optional[str] = None


@dataclass(slots=True)
class PaymentAttempt:
    """A single completion attempt's payment data. Never persisted."""

    handler_id: str
    credential: PaymentCredential
    type: PaymentType = PaymentType.CARD
    id: Optional[str] = None
    brand: Optional[str] = None
    last_digits: Optional[str] = None
    billing_address: Optional[Address] = None

    # Filled in by the processor from the live cart
    amount_minor: Optional[int] = None
    currency: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentAttempt":
        credential = data.get("credential") or {}
        billing = data.get("billing_address")
        raw_type = data.get("type") or "card"
        return cls(
            id=data.get("id"),
            handler_id=data.get("handler_id", ""),
            type=PaymentType(raw_type) if raw_type in PaymentType._value2member_map_ else PaymentType.CARD,
            brand=data.get("brand"),
            last_digits=data.get("last_digits"),
            billing_address=Address.from_dict(billing) if billing else None,
            credential=PaymentCredential(
                type=credential.get("type", ""),
                token=credential.get("token", ""),
                issuer=credential.get("issuer"),
            ),
        )


@dataclass(slots=True)
class RiskSignals:
    session_id: Optional[str] = None
    score: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PaymentResult:
    """Normalized processor outcome.

    ``success`` is derived from ``status``; a result is never both successful
    and carrying an error, a failure always carries a code, and a
    requires_action result always carries the redirect URL.
    """

    status: PaymentResultStatus
    transaction_id: Optional[str] = None
    action_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status == PaymentResultStatus.REQUIRES_ACTION and not self.action_url:
            raise ValueError("requires_action result needs an action_url")
        if self.status == PaymentResultStatus.FAILED and not self.error_code:
            raise ValueError("failed result needs an error_code")
        if self.status in SUCCESS_STATUSES and (self.error_code or self.error_message):
            raise ValueError("successful result cannot carry an error")

    @property
    def success(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @classmethod
    def captured(cls, transaction_id: str, **raw: Any) -> "PaymentResult":
        return cls(status=PaymentResultStatus.CAPTURED, transaction_id=transaction_id, raw=raw)

    @classmethod
    def authorized(cls, transaction_id: str, **raw: Any) -> "PaymentResult":
        return cls(status=PaymentResultStatus.AUTHORIZED, transaction_id=transaction_id, raw=raw)

    @classmethod
    def failed(cls, code: str, message: str, **raw: Any) -> "PaymentResult":
        return cls(
            status=PaymentResultStatus.FAILED,
            error_code=code,
            error_message=message,
            raw=raw,
        )

    @classmethod
    def requires_action(
        cls, action_url: str, transaction_id: Optional[str] = None, **raw: Any
    ) -> "PaymentResult":
        return cls(
            status=PaymentResultStatus.REQUIRES_ACTION,
            action_url=action_url,
            transaction_id=transaction_id,
            raw=raw,
        )

    @classmethod
    def pending(cls, transaction_id: Optional[str] = None, **raw: Any) -> "PaymentResult":
        return cls(status=PaymentResultStatus.PENDING, transaction_id=transaction_id, raw=raw)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "status": self.status.value,
        }
        if self.transaction_id:
            result["transaction_id"] = self.transaction_id
        if self.action_url:
            result["action_url"] = self.action_url
        if self.error_code:
            result["error"] = {"code": self.error_code, "message": self.error_message}
        return result
