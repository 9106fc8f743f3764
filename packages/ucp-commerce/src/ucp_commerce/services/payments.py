"""
Payment processing pipeline for checkout completion.

The session moves into ``complete_in_progress`` through a compare-and-swap
on its stored status before any processor is called, so of two concurrent
completion attempts exactly one reaches the processor; the other is refused
with ``checkout_in_progress``. Cancel and lazy expiry never touch a session
in ``complete_in_progress``.

Outcomes:
    requires_action  -> requires_escalation, resumable via ``resume_payment``
    failed / pending -> reverted to incomplete, error raised with the
                        processor's code (``payment_pending`` for pending)
    success          -> backend order created, session completed; a success
                        without a transaction id is treated as a failure

A settled payment whose order cannot be created, or whose order cannot be
attached to the session, is logged at CRITICAL and surfaced as
``order_creation_failed``. It is never retried automatically.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..backend.factory import BackendFactory
from ..backend.mapper import CartMapper
from ..exceptions import (
    CheckoutInProgressError,
    InvalidSessionStateError,
    OrderCreationFailedError,
    PaymentError,
    SessionExpiredError,
    SessionNotFoundError,
)
from ..handlers.registry import PaymentHandlerRegistry
from ..metrics import record_checkout_completed, record_checkout_expired, record_payment
from ..models.checkout import COMPLETABLE_STATUSES, CheckoutSession, CheckoutStatus
from ..models.payments import PaymentAttempt, PaymentResultStatus, RiskSignals
from ..stores.sessions import CheckoutSessionStore
from .orders import OrderService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CompletionResult:
    """Outcome of a completion attempt that did not raise."""

    session: CheckoutSession
    transaction_id: Optional[str] = None
    continue_url: Optional[str] = None

    @property
    def requires_escalation(self) -> bool:
        return self.session.status == CheckoutStatus.REQUIRES_ESCALATION

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "session_id": self.session.session_id,
            "status": self.session.status.value,
        }
        if self.session.order_id:
            result["order_id"] = self.session.order_id
            result["order_number"] = self.session.order_number
        if self.transaction_id:
            result["transaction_id"] = self.transaction_id
        if self.continue_url:
            result["continue_url"] = self.continue_url
        return result


class PaymentProcessor:
    def __init__(
        self,
        store: CheckoutSessionStore,
        backends: BackendFactory,
        registry: PaymentHandlerRegistry,
        orders: OrderService,
        mapper: Optional[CartMapper] = None,
    ) -> None:
        self._store = store
        self._backends = backends
        self._registry = registry
        self._orders = orders
        self._mapper = mapper or CartMapper()

    async def _load(self, session_id: str) -> CheckoutSession:
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status == CheckoutStatus.COMPLETED:
            raise InvalidSessionStateError("Session already completed", error_code="session_completed")
        if session.status == CheckoutStatus.CANCELED:
            raise InvalidSessionStateError("Session was cancelled", error_code="session_cancelled")
        if session.is_expired():
            if await self._store.expire(session_id) is not None:
                record_checkout_expired(session.shop_id)
            raise SessionExpiredError(session_id)
        if session.status == CheckoutStatus.COMPLETE_IN_PROGRESS:
            raise CheckoutInProgressError(session_id)
        return session

    async def _revert(self, session_id: str) -> None:
        reverted = await self._store.transition_status(
            session_id,
            {CheckoutStatus.COMPLETE_IN_PROGRESS},
            CheckoutStatus.INCOMPLETE,
            pending_transaction_id=None,
        )
        if reverted is None:
            logger.warning(f"Could not revert session to incomplete: session_id={session_id}")

    async def process_checkout(
        self,
        session_id: str,
        attempt: PaymentAttempt,
        risk: Optional[RiskSignals] = None,
    ) -> CompletionResult:
        session = await self._load(session_id)

        if not session.is_ready_for_order:
            raise InvalidSessionStateError(
                "Shipping address and fulfillment option are required before completing",
                error_code="session_incomplete",
            )

        handler = self._registry.resolve_for_shop(session.shop_id, attempt.handler_id)

        backend = await self._backends.for_shop(session.shop_id)
        cart = await backend.get_cart(session.cart_token)
        attempt.amount_minor = self._mapper.total_amount(cart)
        attempt.currency = self._mapper.currency

        claimed = await self._store.transition_status(
            session_id,
            COMPLETABLE_STATUSES,
            CheckoutStatus.COMPLETE_IN_PROGRESS,
            payment_handler_id=handler.id,
        )
        if claimed is None:
            raise CheckoutInProgressError(session_id)

        logger.info(
            f"Completing checkout: session_id={session_id}, handler={handler.id}, "
            f"amount={attempt.amount_minor}, risk_score={risk.score if risk else None}"
        )

        started = time.perf_counter()
        try:
            result = await handler.process_payment(claimed, attempt)
        except Exception:
            record_payment(handler.id, "error", time.perf_counter() - started)
            await self._revert(session_id)
            raise
        record_payment(handler.id, result.status.value, time.perf_counter() - started)

        if result.status == PaymentResultStatus.REQUIRES_ACTION:
            escalated = await self._store.transition_status(
                session_id,
                {CheckoutStatus.COMPLETE_IN_PROGRESS},
                CheckoutStatus.REQUIRES_ESCALATION,
                payment_handler_id=handler.id,
                pending_transaction_id=result.transaction_id,
            )
            if escalated is None:
                raise CheckoutInProgressError(session_id)
            return CompletionResult(
                session=escalated,
                transaction_id=result.transaction_id,
                continue_url=result.action_url,
            )

        if result.success:
            return await self._finalize(claimed, handler.id, result.transaction_id, failure_code="payment_failed")

        await self._revert(session_id)
        if result.status == PaymentResultStatus.PENDING:
            raise PaymentError(
                "payment_pending",
                "Payment is pending confirmation; retry completion once it settles",
                details={"transaction_id": result.transaction_id} if result.transaction_id else None,
            )
        raise PaymentError(result.error_code or "payment_failed", result.error_message or "Payment failed")

    async def resume_payment(self, session_id: str, action_result: Dict[str, Any]) -> CompletionResult:
        """Continue a session after the buyer finished a payment action (3DS, redirect)."""
        session = await self._load(session_id)
        if session.status != CheckoutStatus.REQUIRES_ESCALATION:
            raise InvalidSessionStateError("Session does not require payment action")

        claimed = await self._store.transition_status(
            session_id,
            {CheckoutStatus.REQUIRES_ESCALATION},
            CheckoutStatus.COMPLETE_IN_PROGRESS,
        )
        if claimed is None:
            raise CheckoutInProgressError(session_id)

        if not action_result.get("success"):
            record_payment(claimed.payment_handler_id, "action_failed")
            await self._revert(session_id)
            raise PaymentError(
                "authentication_failed",
                action_result.get("error") or "Payment authentication failed",
            )

        record_payment(claimed.payment_handler_id, "action_completed")
        transaction_id = action_result.get("transaction_id") or claimed.pending_transaction_id
        return await self._finalize(
            claimed, claimed.payment_handler_id, transaction_id, failure_code="authentication_failed"
        )

    async def _finalize(
        self,
        session: CheckoutSession,
        handler_id: Optional[str],
        transaction_id: Optional[str],
        failure_code: str,
    ) -> CompletionResult:
        if not transaction_id:
            # A completed session always references the settled transaction
            logger.error(
                f"Payment reported success without a transaction id: "
                f"session_id={session.session_id}, handler={handler_id}"
            )
            await self._revert(session.session_id)
            raise PaymentError(failure_code, "Payment could not be confirmed: no transaction id was returned")

        try:
            order = await self._orders.create_order(session, transaction_id, handler_id)
        except Exception as e:
            logger.critical(
                f"CRITICAL: Payment succeeded but order creation failed: "
                f"session_id={session.session_id}, handler={handler_id}, "
                f"transaction_id={transaction_id}, error={e}"
            )
            await self._revert(session.session_id)
            raise OrderCreationFailedError(session.session_id, transaction_id) from e

        completed = await self._store.complete(
            session.session_id,
            order_id=order.id,
            order_number=order.order_number,
            transaction_id=transaction_id,
            payment_handler_id=handler_id,
        )
        if completed is None:
            logger.critical(
                f"CRITICAL: Order created but session could not be completed: "
                f"session_id={session.session_id}, order_id={order.id}, "
                f"order_number={order.order_number}, transaction_id={transaction_id}"
            )
            raise OrderCreationFailedError(session.session_id, transaction_id, order_id=order.id)

        logger.info(
            f"Checkout completed: session_id={session.session_id}, "
            f"order_number={order.order_number}, transaction_id={transaction_id}"
        )
        elapsed = (completed.completed_at - completed.created_at).total_seconds() if completed.completed_at else None
        record_checkout_completed(completed.shop_id, elapsed)
        return CompletionResult(session=completed, transaction_id=transaction_id)
