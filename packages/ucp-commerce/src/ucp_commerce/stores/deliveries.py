"""Webhook delivery persistence.

A delivery in status ``sent`` is never written again: every mutating
operation is conditional on the stored status not being ``sent``.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.checkout import utcnow
from ..models.webhooks import WebhookDelivery, WebhookDeliveryStatus
from .database import PostgresStore, dump_json, is_postgres_dsn, load_json

logger = logging.getLogger(__name__)


def new_delivery_id() -> str:
    return f"whd_{uuid.uuid4().hex}"


class WebhookDeliveryStore(ABC):
    """Storage interface for outbound webhook deliveries."""

    @abstractmethod
    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        ...

    @abstractmethod
    async def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        ...

    @abstractmethod
    async def find_pending_retries(
        self, limit: int = 50, now: Optional[datetime] = None
    ) -> List[WebhookDelivery]:
        """Pending or retrying deliveries that are due, oldest first."""

    @abstractmethod
    async def mark_sent(self, delivery_id: str, attempts: int) -> Optional[WebhookDelivery]:
        ...

    @abstractmethod
    async def mark_failed_with_retry(
        self, delivery_id: str, error: str, next_retry_at: datetime, attempts: int
    ) -> Optional[WebhookDelivery]:
        ...

    @abstractmethod
    async def mark_failed(self, delivery_id: str, error: str, attempts: int) -> Optional[WebhookDelivery]:
        ...

    @abstractmethod
    async def find_many(
        self,
        shop_id: Optional[str] = None,
        status: Optional[WebhookDeliveryStatus] = None,
        limit: int = 50,
    ) -> List[WebhookDelivery]:
        """Newest first."""

    @abstractmethod
    async def get_stats(self, shop_id: str) -> Dict[str, int]:
        ...

    @abstractmethod
    async def delete_old_delivered(self, before: datetime) -> int:
        ...

    async def close(self) -> None:
        return None


class InMemoryWebhookDeliveryStore(WebhookDeliveryStore):
    def __init__(self) -> None:
        self._deliveries: Dict[str, WebhookDelivery] = {}
        self._lock = asyncio.Lock()

    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        async with self._lock:
            self._deliveries[delivery.delivery_id] = copy.deepcopy(delivery)
        return copy.deepcopy(delivery)

    async def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        delivery = self._deliveries.get(delivery_id)
        return copy.deepcopy(delivery) if delivery else None

    async def find_pending_retries(
        self, limit: int = 50, now: Optional[datetime] = None
    ) -> List[WebhookDelivery]:
        now = now or utcnow()
        due = [
            d for d in self._deliveries.values()
            if d.status in (WebhookDeliveryStatus.PENDING, WebhookDeliveryStatus.RETRYING)
            and (d.next_retry_at is None or d.next_retry_at <= now)
        ]
        due.sort(key=lambda d: d.created_at)
        return [copy.deepcopy(d) for d in due[:limit]]

    async def _mutate(self, delivery_id: str, **changes: Any) -> Optional[WebhookDelivery]:
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None or delivery.status == WebhookDeliveryStatus.SENT:
                return None
            for key, value in changes.items():
                setattr(delivery, key, value)
            delivery.last_attempt_at = utcnow()
            return copy.deepcopy(delivery)

    async def mark_sent(self, delivery_id: str, attempts: int) -> Optional[WebhookDelivery]:
        return await self._mutate(
            delivery_id,
            status=WebhookDeliveryStatus.SENT,
            attempts=attempts,
            delivered_at=utcnow(),
            next_retry_at=None,
        )

    async def mark_failed_with_retry(
        self, delivery_id: str, error: str, next_retry_at: datetime, attempts: int
    ) -> Optional[WebhookDelivery]:
        return await self._mutate(
            delivery_id,
            status=WebhookDeliveryStatus.RETRYING,
            attempts=attempts,
            last_error=error,
            next_retry_at=next_retry_at,
        )

    async def mark_failed(self, delivery_id: str, error: str, attempts: int) -> Optional[WebhookDelivery]:
        return await self._mutate(
            delivery_id,
            status=WebhookDeliveryStatus.FAILED,
            attempts=attempts,
            last_error=error,
            next_retry_at=None,
        )

    async def find_many(
        self,
        shop_id: Optional[str] = None,
        status: Optional[WebhookDeliveryStatus] = None,
        limit: int = 50,
    ) -> List[WebhookDelivery]:
        matches = [
            d for d in self._deliveries.values()
            if (shop_id is None or d.shop_id == shop_id) and (status is None or d.status == status)
        ]
        matches.sort(key=lambda d: d.created_at, reverse=True)
        return [copy.deepcopy(d) for d in matches[:limit]]

    async def get_stats(self, shop_id: str) -> Dict[str, int]:
        rows = [d for d in self._deliveries.values() if d.shop_id == shop_id]
        return {
            "total": len(rows),
            "sent": sum(1 for d in rows if d.status == WebhookDeliveryStatus.SENT),
            "failed": sum(1 for d in rows if d.status == WebhookDeliveryStatus.FAILED),
            "pending": sum(
                1 for d in rows
                if d.status in (WebhookDeliveryStatus.PENDING, WebhookDeliveryStatus.RETRYING)
            ),
        }

    async def delete_old_delivered(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                did for did, d in self._deliveries.items()
                if d.status == WebhookDeliveryStatus.SENT
                and d.delivered_at is not None
                and d.delivered_at < before
            ]
            for did in doomed:
                del self._deliveries[did]
        return len(doomed)


class PostgresWebhookDeliveryStore(PostgresStore, WebhookDeliveryStore):
    SCHEMA = """
        CREATE TABLE IF NOT EXISTS ucp_webhook_deliveries (
            delivery_id VARCHAR(64) PRIMARY KEY,
            shop_id VARCHAR(255) NOT NULL,
            session_id VARCHAR(64),
            order_id VARCHAR(255),
            event VARCHAR(64) NOT NULL,
            target_url TEXT NOT NULL,
            payload JSONB NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            next_retry_at TIMESTAMPTZ,
            last_attempt_at TIMESTAMPTZ,
            delivered_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_ucp_deliveries_due
          ON ucp_webhook_deliveries(status, next_retry_at, created_at);
        CREATE INDEX IF NOT EXISTS idx_ucp_deliveries_shop
          ON ucp_webhook_deliveries(shop_id, created_at DESC);
    """

    @staticmethod
    def _row_to_delivery(row: Any) -> WebhookDelivery:
        data = dict(row)
        return WebhookDelivery(
            delivery_id=data["delivery_id"],
            shop_id=data["shop_id"],
            session_id=data.get("session_id"),
            order_id=data.get("order_id"),
            event=data["event"],
            target_url=data["target_url"],
            payload=load_json(data["payload"]) or {},
            status=WebhookDeliveryStatus(data["status"]),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error"),
            next_retry_at=data.get("next_retry_at"),
            last_attempt_at=data.get("last_attempt_at"),
            delivered_at=data.get("delivered_at"),
            created_at=data["created_at"],
        )

    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO ucp_webhook_deliveries (
                    delivery_id, shop_id, session_id, order_id, event, target_url,
                    payload, status, attempts, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10)
                RETURNING *
                """,
                delivery.delivery_id,
                delivery.shop_id,
                delivery.session_id,
                delivery.order_id,
                delivery.event,
                delivery.target_url,
                dump_json(delivery.payload),
                delivery.status.value,
                delivery.attempts,
                delivery.created_at,
            )
        return self._row_to_delivery(row)

    async def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM ucp_webhook_deliveries WHERE delivery_id = $1", delivery_id
            )
        return self._row_to_delivery(row) if row else None

    async def find_pending_retries(
        self, limit: int = 50, now: Optional[datetime] = None
    ) -> List[WebhookDelivery]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM ucp_webhook_deliveries
                WHERE status IN ('pending', 'retrying')
                  AND (next_retry_at IS NULL OR next_retry_at <= $1)
                ORDER BY created_at ASC
                LIMIT $2
                """,
                now or utcnow(),
                limit,
            )
        return [self._row_to_delivery(r) for r in rows]

    async def _mark(
        self,
        delivery_id: str,
        status: WebhookDeliveryStatus,
        attempts: int,
        error: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
    ) -> Optional[WebhookDelivery]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE ucp_webhook_deliveries
                SET status = $2,
                    attempts = GREATEST(attempts, $3),
                    last_error = COALESCE($4, last_error),
                    next_retry_at = $5,
                    last_attempt_at = NOW(),
                    delivered_at = CASE WHEN $2 = 'sent' THEN NOW() ELSE delivered_at END
                WHERE delivery_id = $1 AND status <> 'sent'
                RETURNING *
                """,
                delivery_id,
                status.value,
                attempts,
                error,
                next_retry_at,
            )
        return self._row_to_delivery(row) if row else None

    async def mark_sent(self, delivery_id: str, attempts: int) -> Optional[WebhookDelivery]:
        return await self._mark(delivery_id, WebhookDeliveryStatus.SENT, attempts)

    async def mark_failed_with_retry(
        self, delivery_id: str, error: str, next_retry_at: datetime, attempts: int
    ) -> Optional[WebhookDelivery]:
        return await self._mark(
            delivery_id, WebhookDeliveryStatus.RETRYING, attempts, error, next_retry_at
        )

    async def mark_failed(self, delivery_id: str, error: str, attempts: int) -> Optional[WebhookDelivery]:
        return await self._mark(delivery_id, WebhookDeliveryStatus.FAILED, attempts, error)

    async def find_many(
        self,
        shop_id: Optional[str] = None,
        status: Optional[WebhookDeliveryStatus] = None,
        limit: int = 50,
    ) -> List[WebhookDelivery]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM ucp_webhook_deliveries
                WHERE ($1::text IS NULL OR shop_id = $1)
                  AND ($2::text IS NULL OR status = $2)
                ORDER BY created_at DESC
                LIMIT $3
                """,
                shop_id,
                status.value if status else None,
                limit,
            )
        return [self._row_to_delivery(r) for r in rows]

    async def get_stats(self, shop_id: str) -> Dict[str, int]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE status = 'sent') AS sent,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                    COUNT(*) FILTER (WHERE status IN ('pending', 'retrying')) AS pending
                FROM ucp_webhook_deliveries WHERE shop_id = $1
                """,
                shop_id,
            )
        return {key: int(row[key] or 0) for key in ("total", "sent", "failed", "pending")}

    async def delete_old_delivered(self, before: datetime) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM ucp_webhook_deliveries WHERE status = 'sent' AND delivered_at < $1",
                before,
            )
        return int(result.split()[-1]) if result else 0


def create_delivery_store(database_url: Optional[str]) -> WebhookDeliveryStore:
    if is_postgres_dsn(database_url):
        return PostgresWebhookDeliveryStore(dsn=database_url)
    return InMemoryWebhookDeliveryStore()
