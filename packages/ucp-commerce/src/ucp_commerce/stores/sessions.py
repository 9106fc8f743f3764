"""Checkout session persistence.

Status changes that guard payment go through ``transition_status``, a
compare-and-swap on the stored status, so two concurrent completion attempts
cannot both move a session into ``complete_in_progress``.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from ..models.checkout import (
    CANCELABLE_STATUSES,
    EXPIRABLE_STATUSES,
    Address,
    CheckoutSession,
    CheckoutStatus,
    utcnow,
)
from .database import PostgresStore, dump_json, is_postgres_dsn, load_json

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    "status",
    "shipping_address",
    "billing_address",
    "selected_fulfillment_id",
    "discount_codes",
    "payment_handler_id",
    "pending_transaction_id",
    "buyer_email",
    "buyer_phone",
    "metadata",
})


def new_session_id() -> str:
    return f"cs_{uuid.uuid4().hex}"


class CheckoutSessionStore(ABC):
    """Storage interface for checkout sessions."""

    @abstractmethod
    async def create(self, session: CheckoutSession) -> CheckoutSession:
        """Persist a new session."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        """Fetch a session by its protocol id."""

    @abstractmethod
    async def update(self, session_id: str, **fields: Any) -> Optional[CheckoutSession]:
        """Apply a partial update. Unknown fields are ignored."""

    @abstractmethod
    async def transition_status(
        self,
        session_id: str,
        expected: Iterable[CheckoutStatus],
        new_status: CheckoutStatus,
        **fields: Any,
    ) -> Optional[CheckoutSession]:
        """Move to ``new_status`` only if the current status is in ``expected``.

        Returns the updated session, or None when the session is missing or
        its status did not match.
        """

    @abstractmethod
    async def complete(
        self,
        session_id: str,
        order_id: str,
        order_number: str,
        transaction_id: Optional[str],
        payment_handler_id: Optional[str] = None,
    ) -> Optional[CheckoutSession]:
        """Attach the backend order and mark completed.

        Only succeeds from ``complete_in_progress`` with no order attached.
        """

    async def cancel(self, session_id: str) -> Optional[CheckoutSession]:
        """Cancel a session that has no payment in flight and is not terminal.

        Returns None when the session is missing or its status forbids it.
        """
        return await self.transition_status(session_id, CANCELABLE_STATUSES, CheckoutStatus.CANCELED)

    @abstractmethod
    async def find_by_shop(
        self, shop_id: str, status: Optional[CheckoutStatus] = None, limit: int = 50
    ) -> List[CheckoutSession]:
        """Newest first."""

    @abstractmethod
    async def find_by_order_id(self, shop_id: str, order_id: str) -> Optional[CheckoutSession]:
        """Resolve the session that owns a backend order."""

    @abstractmethod
    async def delete_expired(self, before: Optional[datetime] = None) -> int:
        """Delete expired sessions that never completed."""

    @abstractmethod
    async def get_stats(self, shop_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts per status plus a conversion rate."""

    async def expire(self, session_id: str) -> Optional[CheckoutSession]:
        """Lazily cancel an expired session; terminal sessions are left alone."""
        return await self.transition_status(session_id, EXPIRABLE_STATUSES, CheckoutStatus.CANCELED)

    async def close(self) -> None:
        return None


def _stats(counts: Dict[str, int], total: int) -> Dict[str, Any]:
    completed = counts.get(CheckoutStatus.COMPLETED.value, 0)
    return {
        "total": total,
        "completed": completed,
        "canceled": counts.get(CheckoutStatus.CANCELED.value, 0),
        "incomplete": counts.get(CheckoutStatus.INCOMPLETE.value, 0),
        "conversion_rate": (completed / total) * 100 if total else 0.0,
    }


class InMemoryCheckoutSessionStore(CheckoutSessionStore):
    """In-memory implementation. A lock makes each operation atomic."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CheckoutSession] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(session: Optional[CheckoutSession]) -> Optional[CheckoutSession]:
        return copy.deepcopy(session) if session is not None else None

    @staticmethod
    def _apply(session: CheckoutSession, fields: Dict[str, Any]) -> None:
        for key, value in fields.items():
            if key not in UPDATABLE_FIELDS:
                continue
            setattr(session, key, value)
        session.updated_at = utcnow()

    async def create(self, session: CheckoutSession) -> CheckoutSession:
        async with self._lock:
            self._sessions[session.session_id] = copy.deepcopy(session)
        logger.info(f"Created checkout session: session_id={session.session_id}, shop={session.shop_id}")
        return self._copy(session)

    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        return self._copy(self._sessions.get(session_id))

    async def update(self, session_id: str, **fields: Any) -> Optional[CheckoutSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            self._apply(session, fields)
            return self._copy(session)

    async def transition_status(
        self,
        session_id: str,
        expected: Iterable[CheckoutStatus],
        new_status: CheckoutStatus,
        **fields: Any,
    ) -> Optional[CheckoutSession]:
        expected = set(expected)
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status not in expected:
                return None
            self._apply(session, {**fields, "status": new_status})
            return self._copy(session)

    async def complete(
        self,
        session_id: str,
        order_id: str,
        order_number: str,
        transaction_id: Optional[str],
        payment_handler_id: Optional[str] = None,
    ) -> Optional[CheckoutSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if (
                session is None
                or session.status != CheckoutStatus.COMPLETE_IN_PROGRESS
                or session.order_id is not None
            ):
                return None
            now = utcnow()
            session.status = CheckoutStatus.COMPLETED
            session.order_id = order_id
            session.order_number = order_number
            session.transaction_id = transaction_id
            if payment_handler_id:
                session.payment_handler_id = payment_handler_id
            session.pending_transaction_id = None
            session.completed_at = now
            session.updated_at = now
            return self._copy(session)

    async def find_by_shop(
        self, shop_id: str, status: Optional[CheckoutStatus] = None, limit: int = 50
    ) -> List[CheckoutSession]:
        matches = [
            s for s in self._sessions.values()
            if s.shop_id == shop_id and (status is None or s.status == status)
        ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return [copy.deepcopy(s) for s in matches[:limit]]

    async def find_by_order_id(self, shop_id: str, order_id: str) -> Optional[CheckoutSession]:
        for session in self._sessions.values():
            if session.shop_id == shop_id and session.order_id == order_id:
                return self._copy(session)
        return None

    async def delete_expired(self, before: Optional[datetime] = None) -> int:
        cutoff = before or utcnow()
        async with self._lock:
            doomed = [
                sid for sid, s in self._sessions.items()
                if s.expires_at < cutoff
                and s.status in (CheckoutStatus.INCOMPLETE, CheckoutStatus.CANCELED)
            ]
            for sid in doomed:
                del self._sessions[sid]
        if doomed:
            logger.info(f"Deleted expired sessions: count={len(doomed)}")
        return len(doomed)

    async def get_stats(self, shop_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        sessions = [
            s for s in self._sessions.values()
            if s.shop_id == shop_id and (since is None or s.created_at >= since)
        ]
        counts: Dict[str, int] = {}
        for s in sessions:
            counts[s.status.value] = counts.get(s.status.value, 0) + 1
        return _stats(counts, len(sessions))


class PostgresCheckoutSessionStore(PostgresStore, CheckoutSessionStore):
    """PostgreSQL implementation using conditional UPDATEs for status changes."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS ucp_checkout_sessions (
            session_id VARCHAR(64) PRIMARY KEY,
            shop_id VARCHAR(255) NOT NULL,
            cart_token VARCHAR(255) NOT NULL,
            status VARCHAR(40) NOT NULL,
            platform_profile_url TEXT,
            platform_id VARCHAR(255),
            platform_capabilities JSONB NOT NULL DEFAULT '[]'::jsonb,
            active_capabilities JSONB NOT NULL DEFAULT '[]'::jsonb,
            active_extensions JSONB NOT NULL DEFAULT '[]'::jsonb,
            buyer_email VARCHAR(255),
            buyer_phone VARCHAR(64),
            shipping_address JSONB,
            billing_address JSONB,
            selected_fulfillment_id VARCHAR(255),
            discount_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
            order_id VARCHAR(255),
            order_number VARCHAR(255),
            payment_handler_id VARCHAR(255),
            transaction_id VARCHAR(255),
            pending_transaction_id VARCHAR(255),
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ
        );

        CREATE INDEX IF NOT EXISTS idx_ucp_sessions_shop
          ON ucp_checkout_sessions(shop_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_ucp_sessions_order
          ON ucp_checkout_sessions(shop_id, order_id);
    """

    JSON_FIELDS = frozenset({"shipping_address", "billing_address", "discount_codes", "metadata"})

    @staticmethod
    def _row_to_session(row: Any) -> CheckoutSession:
        data = dict(row)
        for key in (
            "platform_capabilities",
            "active_capabilities",
            "active_extensions",
            "discount_codes",
            "metadata",
            "shipping_address",
            "billing_address",
        ):
            data[key] = load_json(data.get(key))
        return CheckoutSession.from_dict(data)

    @classmethod
    def _encode(cls, key: str, value: Any) -> Any:
        if isinstance(value, CheckoutStatus):
            return value.value
        if isinstance(value, Address):
            return dump_json(value.to_dict())
        if key in cls.JSON_FIELDS:
            return dump_json(value)
        return value

    def _set_clause(self, fields: Dict[str, Any], start: int) -> tuple[list[str], list[Any]]:
        fragments: list[str] = []
        values: list[Any] = []
        idx = start
        for key, value in fields.items():
            if key not in UPDATABLE_FIELDS:
                continue
            cast = "::jsonb" if key in self.JSON_FIELDS else ""
            fragments.append(f"{key} = ${idx}{cast}")
            values.append(self._encode(key, value))
            idx += 1
        fragments.append("updated_at = NOW()")
        return fragments, values

    async def create(self, session: CheckoutSession) -> CheckoutSession:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO ucp_checkout_sessions (
                    session_id, shop_id, cart_token, status, platform_profile_url, platform_id,
                    platform_capabilities, active_capabilities, active_extensions,
                    buyer_email, buyer_phone, discount_codes, metadata,
                    created_at, updated_at, expires_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9::jsonb,
                    $10, $11, $12::jsonb, $13::jsonb, $14, $15, $16
                )
                RETURNING *
                """,
                session.session_id,
                session.shop_id,
                session.cart_token,
                session.status.value,
                session.platform_profile_url,
                session.platform_id,
                dump_json(session.platform_capabilities),
                dump_json(session.active_capabilities),
                dump_json(session.active_extensions),
                session.buyer_email,
                session.buyer_phone,
                dump_json(session.discount_codes),
                dump_json(session.metadata),
                session.created_at,
                session.updated_at,
                session.expires_at,
            )
        logger.info(f"Created checkout session: session_id={session.session_id}, shop={session.shop_id}")
        return self._row_to_session(row)

    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM ucp_checkout_sessions WHERE session_id = $1", session_id
            )
        return self._row_to_session(row) if row else None

    async def update(self, session_id: str, **fields: Any) -> Optional[CheckoutSession]:
        fragments, values = self._set_clause(fields, start=2)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE ucp_checkout_sessions SET {', '.join(fragments)} "
                "WHERE session_id = $1 RETURNING *",
                session_id,
                *values,
            )
        return self._row_to_session(row) if row else None

    async def transition_status(
        self,
        session_id: str,
        expected: Iterable[CheckoutStatus],
        new_status: CheckoutStatus,
        **fields: Any,
    ) -> Optional[CheckoutSession]:
        fragments, values = self._set_clause({**fields, "status": new_status}, start=3)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE ucp_checkout_sessions SET {', '.join(fragments)} "
                "WHERE session_id = $1 AND status = ANY($2::text[]) RETURNING *",
                session_id,
                [s.value for s in expected],
                *values,
            )
        return self._row_to_session(row) if row else None

    async def complete(
        self,
        session_id: str,
        order_id: str,
        order_number: str,
        transaction_id: Optional[str],
        payment_handler_id: Optional[str] = None,
    ) -> Optional[CheckoutSession]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE ucp_checkout_sessions
                SET status = 'completed', order_id = $2, order_number = $3,
                    transaction_id = $4,
                    payment_handler_id = COALESCE($5, payment_handler_id),
                    pending_transaction_id = NULL,
                    completed_at = NOW(), updated_at = NOW()
                WHERE session_id = $1 AND status = 'complete_in_progress' AND order_id IS NULL
                RETURNING *
                """,
                session_id,
                order_id,
                order_number,
                transaction_id,
                payment_handler_id,
            )
        return self._row_to_session(row) if row else None

    async def find_by_shop(
        self, shop_id: str, status: Optional[CheckoutStatus] = None, limit: int = 50
    ) -> List[CheckoutSession]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM ucp_checkout_sessions
                WHERE shop_id = $1 AND ($2::text IS NULL OR status = $2)
                ORDER BY created_at DESC LIMIT $3
                """,
                shop_id,
                status.value if status else None,
                limit,
            )
        return [self._row_to_session(r) for r in rows]

    async def find_by_order_id(self, shop_id: str, order_id: str) -> Optional[CheckoutSession]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM ucp_checkout_sessions WHERE shop_id = $1 AND order_id = $2",
                shop_id,
                order_id,
            )
        return self._row_to_session(row) if row else None

    async def delete_expired(self, before: Optional[datetime] = None) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM ucp_checkout_sessions
                WHERE status IN ('incomplete', 'canceled') AND expires_at < $1
                """,
                before or utcnow(),
            )
        count = int(result.split()[-1]) if result else 0
        if count:
            logger.info(f"Deleted expired sessions: count={count}")
        return count

    async def get_stats(self, shop_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS n FROM ucp_checkout_sessions
                WHERE shop_id = $1 AND ($2::timestamptz IS NULL OR created_at >= $2)
                GROUP BY status
                """,
                shop_id,
                since,
            )
        counts = {r["status"]: int(r["n"]) for r in rows}
        return _stats(counts, sum(counts.values()))


def create_session_store(database_url: Optional[str]) -> CheckoutSessionStore:
    if is_postgres_dsn(database_url):
        return PostgresCheckoutSessionStore(dsn=database_url)
    return InMemoryCheckoutSessionStore()


def session_expiry(hours: int) -> datetime:
    return utcnow() + timedelta(hours=hours)
