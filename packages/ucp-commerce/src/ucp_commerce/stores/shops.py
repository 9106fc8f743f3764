"""Per-shop backend credentials and pending app registrations."""
from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..cache import CacheBackend
from ..models.checkout import utcnow
from .database import PostgresStore, is_postgres_dsn

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ShopCredentials:
    """Credentials the backend hands over when the app is installed."""

    shop_id: str
    shop_url: str
    api_key: str
    secret_key: str
    app_name: str = "UcpCommerce"
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        # Secrets stay server side
        return {
            "shop_id": self.shop_id,
            "shop_url": self.shop_url,
            "app_name": self.app_name,
            "active": self.active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class ShopStore(ABC):
    @abstractmethod
    async def upsert(self, shop: ShopCredentials) -> ShopCredentials:
        """Create or replace credentials; re-activates a deactivated shop."""

    @abstractmethod
    async def get(self, shop_id: str) -> Optional[ShopCredentials]:
        ...

    @abstractmethod
    async def list_active(self) -> List[ShopCredentials]:
        ...

    @abstractmethod
    async def deactivate(self, shop_id: str) -> bool:
        ...

    @abstractmethod
    async def delete(self, shop_id: str) -> bool:
        ...

    async def close(self) -> None:
        return None


class InMemoryShopStore(ShopStore):
    def __init__(self) -> None:
        self._shops: Dict[str, ShopCredentials] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, shop: ShopCredentials) -> ShopCredentials:
        async with self._lock:
            existing = self._shops.get(shop.shop_id)
            stored = copy.deepcopy(shop)
            stored.active = True
            stored.updated_at = utcnow()
            if existing is not None:
                stored.created_at = existing.created_at
            self._shops[shop.shop_id] = stored
        logger.info(f"Shop credentials upserted: shop={shop.shop_id}")
        return copy.deepcopy(stored)

    async def get(self, shop_id: str) -> Optional[ShopCredentials]:
        shop = self._shops.get(shop_id)
        return copy.deepcopy(shop) if shop else None

    async def list_active(self) -> List[ShopCredentials]:
        return [copy.deepcopy(s) for s in self._shops.values() if s.active]

    async def deactivate(self, shop_id: str) -> bool:
        async with self._lock:
            shop = self._shops.get(shop_id)
            if shop is None:
                return False
            shop.active = False
            shop.updated_at = utcnow()
        logger.info(f"Shop deactivated: shop={shop_id}")
        return True

    async def delete(self, shop_id: str) -> bool:
        async with self._lock:
            removed = self._shops.pop(shop_id, None) is not None
        if removed:
            logger.info(f"Shop deleted: shop={shop_id}")
        return removed


class PostgresShopStore(PostgresStore, ShopStore):
    SCHEMA = """
        CREATE TABLE IF NOT EXISTS ucp_shops (
            shop_id VARCHAR(255) PRIMARY KEY,
            shop_url TEXT NOT NULL,
            api_key TEXT NOT NULL,
            secret_key TEXT NOT NULL,
            app_name VARCHAR(100) NOT NULL DEFAULT 'UcpCommerce',
            active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
    """

    @staticmethod
    def _row_to_shop(row: Any) -> ShopCredentials:
        return ShopCredentials(**dict(row))

    async def upsert(self, shop: ShopCredentials) -> ShopCredentials:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO ucp_shops (shop_id, shop_url, api_key, secret_key, app_name)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (shop_id) DO UPDATE SET
                    shop_url = EXCLUDED.shop_url,
                    api_key = EXCLUDED.api_key,
                    secret_key = EXCLUDED.secret_key,
                    active = TRUE,
                    updated_at = NOW()
                RETURNING *
                """,
                shop.shop_id,
                shop.shop_url,
                shop.api_key,
                shop.secret_key,
                shop.app_name,
            )
        logger.info(f"Shop credentials upserted: shop={shop.shop_id}")
        return self._row_to_shop(row)

    async def get(self, shop_id: str) -> Optional[ShopCredentials]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM ucp_shops WHERE shop_id = $1", shop_id)
        return self._row_to_shop(row) if row else None

    async def list_active(self) -> List[ShopCredentials]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM ucp_shops WHERE active ORDER BY created_at DESC"
            )
        return [self._row_to_shop(r) for r in rows]

    async def deactivate(self, shop_id: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE ucp_shops SET active = FALSE, updated_at = NOW() WHERE shop_id = $1",
                shop_id,
            )
        return result.endswith(" 1")

    async def delete(self, shop_id: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM ucp_shops WHERE shop_id = $1", shop_id)
        return result.endswith(" 1")


def create_shop_store(database_url: Optional[str]) -> ShopStore:
    if is_postgres_dsn(database_url):
        return PostgresShopStore(dsn=database_url)
    return InMemoryShopStore()


class PendingRegistrationStore:
    """Short-lived registration handshakes keyed by shop id.

    An entry lives between the registration request and its confirmation;
    once the TTL passes it is indistinguishable from one never created.
    """

    KEY_PREFIX = "ucp:registration:"

    def __init__(self, cache: CacheBackend, ttl_seconds: int = 600) -> None:
        self._cache = cache
        self._ttl = ttl_seconds

    async def put(self, shop_id: str, shop_url: str, shop_secret: str) -> None:
        await self._cache.set_json(
            self.KEY_PREFIX + shop_id,
            {"shop_url": shop_url, "shop_secret": shop_secret, "created_at": utcnow().isoformat()},
            ttl=self._ttl,
        )

    async def get(self, shop_id: str) -> Optional[Dict[str, Any]]:
        return await self._cache.get_json(self.KEY_PREFIX + shop_id)

    async def delete(self, shop_id: str) -> None:
        await self._cache.delete(self.KEY_PREFIX + shop_id)
