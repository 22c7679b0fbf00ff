"""Read-only dish lookup used to snapshot names onto order lines."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Iterable, Protocol

from ..db import get_pool
from ..schemas.orders import CatalogDish


class Catalog(Protocol):
    async def get_dishes(self, ids: Iterable[int]) -> Dict[int, CatalogDish]: ...


class PostgresCatalog:
    def __init__(self, pool_getter: Callable[[], Awaitable[Any]] = get_pool):
        self._get_pool = pool_getter

    async def get_dishes(self, ids: Iterable[int]) -> Dict[int, CatalogDish]:
        """Load dishes by id; unknown ids are simply absent from the result."""
        wanted = sorted(set(ids))
        if not wanted:
            return {}
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, name, price, is_available FROM dishes WHERE id = ANY($1::int[])",
                wanted,
            )
        return {r["id"]: CatalogDish.model_validate(dict(r)) for r in rows}
