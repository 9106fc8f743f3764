"""Discovery profile served at ``/.well-known/ucp``."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from ..cache import CacheBackend
from ..config import UCPSettings
from ..handlers.registry import PaymentHandlerRegistry
from ..signing import WebhookSigner

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"
CHECKOUT_CAPABILITY = "dev.ucp.shopping.checkout"

# name -> (spec slug, schema slug, extends)
CAPABILITIES = [
    ("dev.ucp.shopping.checkout", "checkout", None),
    ("dev.ucp.shopping.order", "order", None),
    ("dev.ucp.shopping.checkout.fulfillment", "fulfillment", CHECKOUT_CAPABILITY),
    ("dev.ucp.shopping.checkout.discounts", "discounts", CHECKOUT_CAPABILITY),
]


class ProfileBuilder:
    """Builds and caches the per-shop profile document."""

    CACHE_PREFIX = "ucp:profile:"

    def __init__(
        self,
        settings: UCPSettings,
        registry: PaymentHandlerRegistry,
        signer: WebhookSigner,
        cache: CacheBackend,
        enable_mcp: bool = True,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._signer = signer
        self._cache = cache
        self._enable_mcp = enable_mcp

    @property
    def ttl_seconds(self) -> int:
        return self._settings.profile_cache_ttl_seconds

    async def build_profile(self, shop_id: str) -> Dict[str, Any]:
        key = self.CACHE_PREFIX + shop_id
        cached = await self._cache.get_json(key)
        if cached is not None:
            return cached

        logger.debug(f"Building UCP profile: shop={shop_id}")
        profile = self._build(shop_id)
        await self._cache.set_json(key, profile, ttl=self.ttl_seconds)
        return profile

    def _build(self, shop_id: str) -> Dict[str, Any]:
        version = self._settings.ucp_version
        server_url = self._settings.server_url

        service: Dict[str, Any] = {
            "version": version,
            "spec": "https://ucp.dev/specification/overview",
            "rest": {
                "schema": "https://ucp.dev/services/shopping/rest.openapi.json",
                "endpoint": f"{server_url}/api/v1",
            },
        }
        if self._enable_mcp:
            service["mcp"] = {
                "schema": f"{server_url}/mcp/openrpc",
                "endpoint": f"{server_url}/mcp",
                "streaming_endpoint": f"{server_url}/mcp/sse",
                "protocol_version": MCP_PROTOCOL_VERSION,
            }

        return {
            "ucp": {
                "version": version,
                "services": {"dev.ucp.shopping": service},
                "capabilities": self.capabilities(),
            },
            "payment": {"handlers": self._registry.handlers_for_shop(shop_id)},
            "signing_keys": self._signer.public_keys(),
        }

    def capabilities(self) -> List[Dict[str, Any]]:
        version = self._settings.ucp_version
        result = []
        for name, slug, extends in CAPABILITIES:
            entry: Dict[str, Any] = {
                "name": name,
                "version": version,
                "spec": f"https://ucp.dev/specification/{slug}",
                "schema": f"https://ucp.dev/schemas/shopping/{slug}.json",
            }
            if extends:
                entry["extends"] = extends
            result.append(entry)
        return result

    async def invalidate_cache(self) -> None:
        removed = await self._cache.delete_prefix(self.CACHE_PREFIX)
        logger.debug(f"Profile cache invalidated: entries={removed}")
