"""Postgres access for the sync engine and API.

The pool is owned by a ``Database`` object created at app startup (or by a
cron invocation) and passed explicitly to whatever needs it.  Nothing in
the engine reaches for a module-level client.

All writes go through the Supabase service-role connection string, so Row
Level Security is bypassed.  Callers are responsible for scoping queries by
``user_id``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("prime.db")


class Database:
    """Thin wrapper around an ``asyncpg.Pool``.

    Usage::

        db = await Database.connect(settings)
        try:
            rows = await db.fetch("SELECT * FROM device_connections WHERE is_active")
        finally:
            await db.close()
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, settings: Settings | None = None) -> "Database":
        """Create the asyncpg connection pool."""
        s = settings or get_settings()
        pool = await asyncpg.create_pool(
            s.database_url,
            min_size=s.db_pool_min_size,
            max_size=s.db_pool_max_size,
            command_timeout=30,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)",
            s.db_pool_min_size,
            s.db_pool_max_size,
        )
        return cls(pool)

    async def close(self) -> None:
        """Drain the pool."""
        await self._pool.close()
        logger.info("Database pool closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection and open a transaction on it.

        Usage::

            async with db.transaction() as conn:
                await conn.execute("DELETE FROM whoop_tokens WHERE user_id = $1", uid)
                await conn.execute("UPDATE device_connections SET is_active = false ...")
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a single statement and return its status string."""
        async with self._pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def executemany(self, query: str, args: list[tuple]) -> None:
        """Execute a statement once per parameter tuple in one transaction."""
        if not args:
            return
        async with self.transaction() as conn:
            await conn.executemany(query, args)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        async with self._pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(query, *args)
