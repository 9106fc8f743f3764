"""
Payment handler registry.

Holds the processors in an id-keyed map and applies per-shop overrides. A
shop without overrides gets every handler whose own configuration check
passes; a shop with overrides gets only its enabled entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import UCPSettings
from ..exceptions import HandlerNotFoundError
from ..models.checkout import utcnow
from .base import PaymentHandler
from .google_pay import GooglePayHandler
from .mollie import MollieHandler
from .tokenizer import TokenizerHandler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HandlerConfiguration:
    """Per-shop override for one handler."""

    handler_id: str
    enabled: bool = True
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handler_id": self.handler_id,
            "enabled": self.enabled,
            "config": dict(self.config),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class PaymentHandlerRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, PaymentHandler] = {}
        self._shop_configs: Dict[str, List[HandlerConfiguration]] = {}

    # ------------------------------------------------------------------
    # Registration and lookup
    # ------------------------------------------------------------------

    def register(self, handler: PaymentHandler) -> None:
        if handler.id in self._handlers:
            logger.warning(f"Replacing payment handler: handler_id={handler.id}")
        self._handlers[handler.id] = handler
        logger.info(f"Registered payment handler: handler_id={handler.id}, name={handler.name}")

    def unregister(self, handler_id: str) -> bool:
        removed = self._handlers.pop(handler_id, None) is not None
        if removed:
            logger.info(f"Unregistered payment handler: handler_id={handler_id}")
        return removed

    def get_handler(self, handler_id: str) -> Optional[PaymentHandler]:
        handler = self._handlers.get(handler_id)
        if handler is not None:
            return handler
        for candidate in self._handlers.values():
            if candidate.can_handle(handler_id):
                return candidate
        return None

    def has_handler(self, handler_id: str) -> bool:
        return self.get_handler(handler_id) is not None

    def all_handlers(self) -> List[PaymentHandler]:
        return list(self._handlers.values())

    def validate_handler_id(self, handler_id: str) -> bool:
        return self.has_handler(handler_id)

    # ------------------------------------------------------------------
    # Per-shop resolution
    # ------------------------------------------------------------------

    def _shop_override(self, shop_id: str, handler_id: str) -> Optional[HandlerConfiguration]:
        for entry in self._shop_configs.get(shop_id, []):
            if entry.handler_id == handler_id:
                return entry
        return None

    def enabled_handlers(self, shop_id: str) -> List[PaymentHandler]:
        """Handlers usable for a shop, in registration order."""
        overrides = self._shop_configs.get(shop_id)
        if overrides is None:
            return [h for h in self._handlers.values() if h.is_configured()]
        enabled = {c.handler_id for c in overrides if c.enabled}
        return [h for h in self._handlers.values() if h.id in enabled]

    def resolve_for_shop(self, shop_id: str, handler_id: str) -> PaymentHandler:
        """Resolve a handler a shop may use; raises when it is absent or disabled."""
        handler = self.get_handler(handler_id)
        if handler is None:
            raise HandlerNotFoundError(handler_id)
        if handler not in self.enabled_handlers(shop_id):
            logger.warning(f"Handler not enabled for shop: shop_id={shop_id}, handler_id={handler.id}")
            raise HandlerNotFoundError(handler_id)
        return handler

    def handlers_for_shop(self, shop_id: str) -> List[Dict[str, Any]]:
        """Descriptors advertised to platforms for a shop."""
        descriptors = []
        for handler in self.enabled_handlers(shop_id):
            descriptor = handler.get_handler_config()
            override = self._shop_override(shop_id, handler.id)
            if override and override.config:
                descriptor["config"] = {**descriptor.get("config", {}), **override.config}
            descriptors.append(descriptor)
        return descriptors

    # ------------------------------------------------------------------
    # Shop configuration
    # ------------------------------------------------------------------

    def configure_shop_handlers(self, shop_id: str, configs: List[HandlerConfiguration]) -> None:
        for entry in configs:
            if entry.handler_id not in self._handlers:
                raise HandlerNotFoundError(entry.handler_id)
        self._shop_configs[shop_id] = list(configs)
        logger.info(f"Configured shop payment handlers: shop_id={shop_id}, count={len(configs)}")

    def get_shop_configuration(self, shop_id: str) -> List[HandlerConfiguration]:
        return list(self._shop_configs.get(shop_id, []))

    def has_shop_configuration(self, shop_id: str) -> bool:
        return shop_id in self._shop_configs

    def enable_handler_for_shop(
        self, shop_id: str, handler_id: str, config: Optional[Dict[str, Any]] = None
    ) -> HandlerConfiguration:
        if handler_id not in self._handlers:
            raise HandlerNotFoundError(handler_id)

        entries = self._shop_configs.setdefault(shop_id, [])
        existing = self._shop_override(shop_id, handler_id)
        now = utcnow()
        if existing is not None:
            existing.enabled = True
            if config is not None:
                existing.config = dict(config)
            existing.updated_at = now
            entry = existing
        else:
            entry = HandlerConfiguration(
                handler_id=handler_id,
                enabled=True,
                config=dict(config or {}),
                created_at=now,
                updated_at=now,
            )
            entries.append(entry)

        logger.info(f"Enabled payment handler for shop: shop_id={shop_id}, handler_id={handler_id}")
        return entry

    def disable_handler_for_shop(self, shop_id: str, handler_id: str) -> bool:
        existing = self._shop_override(shop_id, handler_id)
        if existing is None:
            if handler_id not in self._handlers:
                return False
            existing = HandlerConfiguration(handler_id=handler_id, enabled=False)
            self._shop_configs.setdefault(shop_id, []).append(existing)
        existing.enabled = False
        existing.updated_at = utcnow()
        logger.info(f"Disabled payment handler for shop: shop_id={shop_id}, handler_id={handler_id}")
        return True

    # ------------------------------------------------------------------
    # Management helpers
    # ------------------------------------------------------------------

    async def test_handler_connection(self, handler_id: str) -> Dict[str, Any]:
        handler = self.get_handler(handler_id)
        if handler is None:
            return {"success": False, "message": f'Handler "{handler_id}" not found'}
        if not handler.is_configured():
            return {"success": False, "message": f'Handler "{handler.id}" is not properly configured'}

        test = getattr(handler, "test_connection", None)
        if test is None:
            return {"success": True, "message": f'Handler "{handler.id}" is configured'}
        try:
            message = await test()
        except Exception as e:
            logger.warning(f"Handler connection test failed: handler_id={handler.id}, error={e}")
            return {"success": False, "message": str(e) or "Connection test failed"}
        return {"success": True, "message": message}

    def available_handler_types(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": handler.id,
                "name": handler.name,
                "description": getattr(handler, "description", ""),
                "configured": handler.is_configured(),
            }
            for handler in self._handlers.values()
        ]

    def get_handler_config(self, handler_id: str) -> Dict[str, Any]:
        handler = self.get_handler(handler_id)
        if handler is None:
            raise HandlerNotFoundError(handler_id)
        return handler.get_handler_config()

    def handler_config_schema(self, handler_id: str) -> Dict[str, Any]:
        """JSON schema describing the handler's ``config`` block."""
        config = self.get_handler_config(handler_id)
        properties = {}
        for key, value in (config.get("config") or {}).items():
            if isinstance(value, bool):
                kind = "boolean"
            elif isinstance(value, (int, float)):
                kind = "number"
            elif isinstance(value, list):
                kind = "array"
            elif isinstance(value, dict):
                kind = "object"
            else:
                kind = "string"
            properties[key] = {"type": kind}
        return {
            "$id": config["config_schema"],
            "type": "object",
            "properties": properties,
        }

    async def close(self) -> None:
        for handler in self._handlers.values():
            close = getattr(handler, "close", None)
            if close is not None:
                await close()


def build_default_registry(settings: UCPSettings) -> PaymentHandlerRegistry:
    """Registry holding the built-in Google Pay, tokenizer and Mollie handlers."""
    registry = PaymentHandlerRegistry()
    registry.register(GooglePayHandler(settings.google_pay, ucp_version=settings.ucp_version))
    registry.register(
        TokenizerHandler(settings.tokenizer, server_url=settings.server_url, ucp_version=settings.ucp_version)
    )
    registry.register(
        MollieHandler(
            settings.mollie,
            server_url=settings.server_url,
            use_mock=settings.use_mock_backend,
            ucp_version=settings.ucp_version,
        )
    )
    return registry


__all__ = [
    "HandlerConfiguration",
    "PaymentHandlerRegistry",
    "build_default_registry",
]
