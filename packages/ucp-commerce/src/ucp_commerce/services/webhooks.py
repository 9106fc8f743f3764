"""
Outbound platform webhook delivery with retry support.

Every event is persisted before the first attempt, so a delivery that fails
immediately survives restarts and is picked up by the retry sweep:

- signed POST with a bounded timeout
- 2xx marks the delivery sent (terminal)
- anything else increments attempts and schedules an exponential backoff
  retry until ``max_attempts``, after which the delivery is failed
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..config import WebhookSettings
from ..exceptions import DeliveryAlreadySentError, DeliveryNotFoundError
from ..metrics import record_webhook_delivery, set_webhook_retry_queue_size
from ..models.checkout import utcnow
from ..models.webhooks import (
    WebhookDelivery,
    WebhookDeliveryResult,
    WebhookDeliveryStatus,
)
from ..signing import WebhookSigner
from ..stores.deliveries import WebhookDeliveryStore, new_delivery_id
from ..stores.sessions import CheckoutSessionStore

logger = logging.getLogger(__name__)

PROFILE_SUFFIX = "/.well-known/ucp"


@dataclass
class RetryConfig:
    """Configuration for webhook retry behavior."""

    max_attempts: int = 5
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 3600.0  # 1 hour max
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1  # 10% jitter

    @classmethod
    def from_settings(cls, settings: WebhookSettings) -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay_seconds=settings.initial_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            jitter_factor=settings.jitter_factor,
        )

    def base_delay(self, attempts: int) -> float:
        exponent = max(attempts - 1, 0)
        return min(self.initial_delay_seconds * (self.backoff_multiplier ** exponent), self.max_delay_seconds)

    def get_delay(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` failed ones."""
        delay = self.base_delay(attempts)
        jitter = delay * self.jitter_factor
        return max(0.0, delay + random.uniform(-jitter, jitter))


def webhook_url_for(profile_url: str, event: str) -> str:
    """Platform callback for an event, derived from its profile URL.

    ``https://agent.example/.well-known/ucp`` + ``order.shipped`` gives
    ``https://agent.example/webhooks/order/shipped``.
    """
    base = profile_url.rstrip("/")
    if base.endswith(PROFILE_SUFFIX):
        base = base[: -len(PROFILE_SUFFIX)]
    base = base.rstrip("/")
    return f"{base}/webhooks/{event.replace('.', '/')}"


class WebhookDeliveryService:
    """Queues, signs, delivers and retries platform webhooks."""

    def __init__(
        self,
        store: WebhookDeliveryStore,
        sessions: CheckoutSessionStore,
        signer: WebhookSigner,
        retry_config: Optional[RetryConfig] = None,
        http_timeout: float = 30.0,
        retry_interval_seconds: float = 30.0,
        retry_batch_size: int = 50,
        retention_days: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sessions = sessions
        self.signer = signer
        self.retry_config = retry_config or RetryConfig()
        self.http_timeout = http_timeout
        self.retry_interval_seconds = retry_interval_seconds
        self.retry_batch_size = retry_batch_size
        self.retention_days = retention_days
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings: WebhookSettings,
        store: WebhookDeliveryStore,
        sessions: CheckoutSessionStore,
        signer: WebhookSigner,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "WebhookDeliveryService":
        return cls(
            store=store,
            sessions=sessions,
            signer=signer,
            retry_config=RetryConfig.from_settings(settings),
            http_timeout=settings.timeout_seconds,
            retry_interval_seconds=settings.retry_interval_seconds,
            retry_batch_size=settings.retry_batch_size,
            retention_days=settings.retention_days,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.http_timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Stop the sweep and close the HTTP client."""
        await self.stop()
        if self._client:
            await self._client.aclose()
            self._client = None

    # Queueing

    async def queue_order_webhook(
        self,
        shop_id: str,
        event: str,
        session_id: str,
        order: Dict[str, Any],
    ) -> WebhookDeliveryResult:
        """Persist an order event for the session's platform and try it once.

        Nothing is stored when the platform never declared a profile URL.
        """
        session = await self.sessions.get(session_id)
        if session is None or not session.platform_profile_url:
            logger.warning(
                f"No platform webhook URL for session: session_id={session_id}, event={event}"
            )
            return WebhookDeliveryResult(success=False, delivery_id="", error="No webhook URL configured")

        payload = {
            "event": event,
            "order": {**order, "ucp_session_id": session_id},
            "timestamp": self._clock().isoformat(),
        }
        delivery = WebhookDelivery(
            delivery_id=new_delivery_id(),
            shop_id=shop_id,
            session_id=session_id,
            order_id=order.get("id"),
            event=event,
            target_url=webhook_url_for(session.platform_profile_url, event),
            payload=payload,
            created_at=self._clock(),
        )
        delivery = await self.store.create(delivery)
        logger.info(
            f"Queued webhook: delivery_id={delivery.delivery_id}, event={event}, "
            f"target={delivery.target_url}"
        )

        result = await self.attempt_delivery(delivery)
        if not result.success:
            return WebhookDeliveryResult(
                success=False,
                delivery_id=delivery.delivery_id,
                error="Initial delivery failed, queued for retry",
            )
        return result

    # Delivery

    def _headers(self, delivery: WebhookDelivery) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-UCP-Signature": self.signer.sign_payload(delivery.payload),
            "X-UCP-Event": delivery.event,
            "X-UCP-Delivery-ID": delivery.delivery_id,
        }

    async def attempt_delivery(self, delivery: WebhookDelivery) -> WebhookDeliveryResult:
        """One signed POST of the stored payload snapshot."""
        if delivery.status == WebhookDeliveryStatus.SENT:
            return WebhookDeliveryResult(success=True, delivery_id=delivery.delivery_id)

        attempts = min(delivery.attempts + 1, self.retry_config.max_attempts)
        error: Optional[str] = None
        started = time.perf_counter()
        try:
            client = await self._get_client()
            response = await client.post(
                delivery.target_url,
                content=json.dumps(delivery.payload).encode(),
                headers=self._headers(delivery),
            )
            if 200 <= response.status_code < 300:
                await self.store.mark_sent(delivery.delivery_id, attempts)
                record_webhook_delivery(delivery.event, True, time.perf_counter() - started)
                logger.info(
                    f"Webhook delivered: delivery_id={delivery.delivery_id}, "
                    f"event={delivery.event}, attempts={attempts}"
                )
                return WebhookDeliveryResult(success=True, delivery_id=delivery.delivery_id)
            error = f"HTTP {response.status_code}: {response.text[:200]}"
        except httpx.TimeoutException:
            error = "Request timed out"
        except httpx.RequestError as e:
            error = f"Request error: {e}"

        record_webhook_delivery(delivery.event, False, time.perf_counter() - started)
        await self._handle_failure(delivery, attempts, error)
        return WebhookDeliveryResult(success=False, delivery_id=delivery.delivery_id, error=error)

    async def _handle_failure(self, delivery: WebhookDelivery, attempts: int, error: str) -> None:
        if attempts >= self.retry_config.max_attempts:
            await self.store.mark_failed(delivery.delivery_id, error, attempts)
            logger.warning(
                f"Webhook delivery failed permanently: delivery_id={delivery.delivery_id}, "
                f"target={delivery.target_url}, attempts={attempts}, error={error}"
            )
            return

        delay = self.retry_config.get_delay(attempts)
        next_retry_at = self._clock() + timedelta(seconds=delay)
        await self.store.mark_failed_with_retry(delivery.delivery_id, error, next_retry_at, attempts)
        logger.info(
            f"Webhook delivery failed, scheduling retry: delivery_id={delivery.delivery_id}, "
            f"attempt={attempts}/{self.retry_config.max_attempts}, next_retry_in={delay:.1f}s"
        )

    async def _record_crash(self, delivery: WebhookDelivery, error: Exception) -> None:
        """Count a crashed attempt so a poisoned delivery still ends in failed."""
        record_webhook_delivery(delivery.event, False)
        attempts = min(delivery.attempts + 1, self.retry_config.max_attempts)
        try:
            await self._handle_failure(delivery, attempts, f"Delivery error: {error}")
        except Exception:
            logger.exception(f"Could not record webhook failure: delivery_id={delivery.delivery_id}")

    async def process_retry_queue(self) -> int:
        """Re-attempt every due pending/retrying delivery; returns how many were tried."""
        due = await self.store.find_pending_retries(limit=self.retry_batch_size, now=self._clock())
        set_webhook_retry_queue_size(len(due))
        for delivery in due:
            try:
                await self.attempt_delivery(delivery)
            except Exception as e:
                logger.exception(f"Webhook retry attempt crashed: delivery_id={delivery.delivery_id}")
                await self._record_crash(delivery, e)
        if due:
            logger.info(f"Processed webhook retry queue: attempted={len(due)}")
        return len(due)

    async def retry_delivery(self, delivery_id: str) -> WebhookDeliveryResult:
        """Operator-triggered resend, ignoring the retry schedule."""
        delivery = await self.store.get(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        if delivery.status == WebhookDeliveryStatus.SENT:
            raise DeliveryAlreadySentError(delivery_id)
        logger.info(f"Manually retrying delivery: delivery_id={delivery_id}, attempts={delivery.attempts}")
        return await self.attempt_delivery(delivery)

    # Maintenance and reporting

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        days = self.retention_days if retention_days is None else retention_days
        cutoff = self._clock() - timedelta(days=days)
        removed = await self.store.delete_old_delivered(cutoff)
        logger.info(f"Cleaned up delivered webhooks: removed={removed}, older_than_days={days}")
        return removed

    async def get_stats(self, shop_id: str) -> Dict[str, int]:
        return await self.store.get_stats(shop_id)

    async def recent_deliveries(
        self,
        shop_id: Optional[str] = None,
        status: Optional[WebhookDeliveryStatus] = None,
        limit: int = 50,
    ) -> List[WebhookDelivery]:
        return await self.store.find_many(shop_id=shop_id, status=status, limit=limit)

    # Background sweep

    async def start(self) -> None:
        """Start the periodic retry sweep."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Webhook retry sweep started: interval={self.retry_interval_seconds}s")

    async def stop(self) -> None:
        """Stop the periodic retry sweep."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Webhook retry sweep stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.process_retry_queue()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in webhook retry sweep: {e}")
            await asyncio.sleep(self.retry_interval_seconds)
