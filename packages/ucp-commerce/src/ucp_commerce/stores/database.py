"""PostgreSQL connection management shared by the asyncpg-backed stores."""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

import asyncpg
from asyncpg import Pool

logger = logging.getLogger(__name__)


def is_postgres_dsn(dsn: Optional[str]) -> bool:
    return bool(dsn) and dsn.startswith(("postgresql://", "postgres://"))


class PostgresStore:
    """Base for stores persisting to PostgreSQL.

    Subclasses set ``SCHEMA`` to idempotent DDL; it runs once on first use.
    """

    SCHEMA: str = ""

    def __init__(self, dsn: Optional[str] = None, pool: Optional[Pool] = None) -> None:
        self._dsn = dsn or ""
        if self._dsn.startswith("postgres://"):
            self._dsn = self._dsn.replace("postgres://", "postgresql://", 1)
        self._pool = pool
        self._schema_ready = False

    async def _get_pool(self) -> Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=1, max_size=10, command_timeout=60
            )
        if not self._schema_ready and self.SCHEMA:
            async with self._pool.acquire() as conn:
                await conn.execute(self.SCHEMA)
            self._schema_ready = True
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._schema_ready = False


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value
