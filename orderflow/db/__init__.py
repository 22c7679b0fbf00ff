"""Async Postgres connection pool using asyncpg."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import asyncpg

from ..settings import settings

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / "schema.sql"

_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """Return (and lazily create) the asyncpg connection pool."""
    global _pool
    if _pool is None:
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not set; orders cannot be stored without Postgres")
        _pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
    return _pool


async def init_schema() -> None:
    """Create the dishes / orders / order_items tables if they are missing."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_FILE.read_text(encoding="utf-8"))
    logger.info("database schema ready")


async def close_pool() -> None:
    """Shut down the connection pool (call on app shutdown)."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
