"""Resolves the commerce backend serving a shop."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from ..exceptions import UCPInternalError
from ..stores.shops import ShopStore
from .client import CommerceBackend
from .http import HttpCommerceBackend
from .memory import InMemoryCommerceBackend

logger = logging.getLogger(__name__)


class BackendFactory:
    """Hands out one backend per shop.

    In mock mode every shop shares a single in-memory backend and no shop
    registration is required. Otherwise the shop must be registered and
    active; its HTTP backend is created once and reused.
    """

    def __init__(
        self,
        shop_store: ShopStore,
        use_mock: bool = True,
        timeout: float = 30.0,
        mock_backend: Optional[InMemoryCommerceBackend] = None,
    ) -> None:
        self._shop_store = shop_store
        self._use_mock = use_mock
        self._timeout = timeout
        self._mock = mock_backend or InMemoryCommerceBackend()
        self._backends: Dict[str, CommerceBackend] = {}

    @property
    def uses_mock(self) -> bool:
        return self._use_mock

    async def for_shop(self, shop_id: str) -> CommerceBackend:
        if self._use_mock:
            return self._mock

        backend = self._backends.get(shop_id)
        if backend is not None:
            return backend

        shop = await self._shop_store.get(shop_id)
        if shop is None or not shop.active:
            logger.warning(f"No active shop registration: shop={shop_id}")
            raise UCPInternalError("Shop not found", details={"shop_id": shop_id})

        backend = HttpCommerceBackend(shop, timeout=self._timeout)
        self._backends[shop_id] = backend
        return backend

    async def forget(self, shop_id: str) -> None:
        """Drop a cached backend after its credentials changed."""
        backend = self._backends.pop(shop_id, None)
        if backend is not None:
            await backend.close()

    async def close(self) -> None:
        for backend in self._backends.values():
            await backend.close()
        self._backends.clear()
