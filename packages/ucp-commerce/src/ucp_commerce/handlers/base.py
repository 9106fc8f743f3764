"""Base payment handler protocol and shared behaviour."""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..models.checkout import CheckoutSession
from ..models.payments import PaymentAttempt, PaymentResult, PaymentResultStatus

logger = logging.getLogger(__name__)

HANDLER_SPEC_BASE = "https://ucp.dev/handlers"
HANDLER_SCHEMA_BASE = "https://ucp.dev/schemas/handlers"


def new_transaction_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


@runtime_checkable
class PaymentHandler(Protocol):
    """Protocol for UCP payment handlers.

    A handler turns an opaque payment credential into a settlement outcome
    for one family of payment methods.
    """

    id: str
    name: str

    def can_handle(self, handler_id: str) -> bool:
        """Check if this handler answers to the given id or alias."""
        ...

    async def process_payment(self, session: CheckoutSession, attempt: PaymentAttempt) -> PaymentResult:
        """Execute a payment attempt.

        Never raises for processor-side failures; those come back as a
        failed ``PaymentResult`` carrying the processor's error code.
        """
        ...

    def get_handler_config(self) -> Dict[str, Any]:
        """Descriptor advertised in the profile and checkout documents."""
        ...

    def is_configured(self) -> bool:
        ...


class BasePaymentHandler(ABC):
    """Common validation, logging and descriptor layout for handlers."""

    id: str = ""
    name: str = ""
    description: str = "Payment handler"
    instrument_schemas: List[str] = []
    processing_error_code = "processing_error"

    def __init__(self, ucp_version: str = "2026-01-11") -> None:
        self.ucp_version = ucp_version

    def can_handle(self, handler_id: str) -> bool:
        return handler_id in (self.id, self.name)

    def is_configured(self) -> bool:
        return True

    def validate_attempt(self, attempt: PaymentAttempt) -> Optional[str]:
        """Return an error message when the attempt cannot be processed."""
        if not attempt.credential or not attempt.credential.token:
            return "Payment credential token is required"
        if not attempt.handler_id:
            return "Handler ID is required"
        return None

    async def process_payment(self, session: CheckoutSession, attempt: PaymentAttempt) -> PaymentResult:
        logger.info(
            f"Processing payment: session_id={session.session_id}, handler={self.id}, "
            f"type={attempt.type.value}, brand={attempt.brand}, last_digits={attempt.last_digits}"
        )

        error = self.validate_attempt(attempt)
        if error:
            result = PaymentResult.failed("validation_error", error)
        else:
            try:
                result = await self._process(session, attempt)
            except Exception as e:
                logger.exception(
                    f"Payment processing failed: session_id={session.session_id}, handler={self.id}"
                )
                result = PaymentResult.failed(self.processing_error_code, str(e) or "Unknown error")

        self._log_result(session, result)
        return result

    @abstractmethod
    async def _process(self, session: CheckoutSession, attempt: PaymentAttempt) -> PaymentResult:
        """Handler specific processing of a validated attempt."""

    @abstractmethod
    def handler_config(self) -> Dict[str, Any]:
        """Handler specific ``config`` block of the descriptor."""

    def get_handler_config(self) -> Dict[str, Any]:
        slug = self.id
        return {
            "id": self.id,
            "name": self.name,
            "version": self.ucp_version,
            "spec": f"{HANDLER_SPEC_BASE}/{slug}",
            "config_schema": f"{HANDLER_SCHEMA_BASE}/{slug}/config.json",
            "instrument_schemas": list(self.instrument_schemas),
            "config": self.handler_config(),
        }

    async def test_connection(self) -> str:
        """Connectivity self-test; raises on failure, returns a message on success."""
        return f'Handler "{self.id}" is ready'

    def _log_result(self, session: CheckoutSession, result: PaymentResult) -> None:
        context = (
            f"session_id={session.session_id}, handler={self.id}, "
            f"status={result.status.value}, transaction_id={result.transaction_id}"
        )
        if result.success:
            logger.info(f"Payment processed successfully: {context}")
        elif result.status == PaymentResultStatus.REQUIRES_ACTION:
            logger.info(f"Payment requires additional action: {context}")
        elif result.status == PaymentResultStatus.PENDING:
            logger.info(f"Payment pending: {context}")
        else:
            logger.warning(
                f"Payment failed: {context}, error_code={result.error_code}, "
                f"error={result.error_message}"
            )


__all__ = [
    "BasePaymentHandler",
    "PaymentHandler",
    "new_transaction_id",
]
