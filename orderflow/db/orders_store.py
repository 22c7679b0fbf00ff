"""Postgres-backed order repository (orders + order_items)."""
from __future__ import annotations

import logging
import math
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncpg

from . import get_pool
from ..errors import DuplicatePayment, OrderNumberConflict, PersistenceError
from ..schemas.orders import NewOrder, NewOrderLine, Order, OrderLine, OrderPage, OrderStats, Pagination
from ..services.order_status import check_order_transition, check_payment_transition

logger = logging.getLogger(__name__)

PoolGetter = Callable[[], Awaitable[Any]]

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_ORDER_COLUMNS = (
    "order_number", "customer_name", "customer_email", "customer_phone",
    "total_amount", "tax_amount", "delivery_fee", "order_type",
    "delivery_address", "delivery_time", "special_instructions",
    "payment_method", "payment_provider", "payment_id", "payment_status",
    "paid_at", "status",
)

_INSERT_ORDER = f"""
    INSERT INTO orders ({", ".join(_ORDER_COLUMNS)}, created_at, updated_at)
    VALUES ({", ".join(f"${i}" for i in range(1, len(_ORDER_COLUMNS) + 1))}, NOW(), NOW())
    RETURNING id
"""

_INSERT_LINE = """
    INSERT INTO order_items (order_id, dish_id, dish_name, quantity, unit_price, special_requests)
    VALUES ($1, $2, $3, $4, $5, $6)
"""


def _order_from_row(row, items: Optional[List[OrderLine]] = None) -> Order:
    data = dict(row)
    data["items"] = items or []
    return Order.model_validate(data)


def _line_from_row(row) -> OrderLine:
    return OrderLine.model_validate(dict(row))


class OrderRepository:
    def __init__(self, pool_getter: PoolGetter = get_pool):
        self._get_pool = pool_getter

    async def _pool(self):
        try:
            return await self._get_pool()
        except (RuntimeError, *_DB_ERRORS) as exc:
            raise PersistenceError(f"database unavailable: {exc}") from exc

    # ---------- Writes ----------

    async def create_order(self, draft: NewOrder, lines: List[NewOrderLine]) -> Order:
        """
        Insert the order and all of its line items in one transaction, then
        read the stored order back.

        Raises OrderNumberConflict / DuplicatePayment on the matching unique
        constraint and PersistenceError for anything else the database throws.
        """
        if not lines:
            raise ValueError("an order needs at least one line item")

        pool = await self._pool()
        values = [getattr(draft, col) for col in _ORDER_COLUMNS]
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    order_id = await conn.fetchval(_INSERT_ORDER, *values)
                    await conn.executemany(
                        _INSERT_LINE,
                        [
                            (order_id, li.dish_id, li.dish_name, li.quantity,
                             li.unit_price, li.special_requests)
                            for li in lines
                        ],
                    )
                order = await self._fetch_order(conn, order_id)
        except asyncpg.UniqueViolationError as exc:
            constraint = getattr(exc, "constraint_name", None) or str(exc)
            if "order_number" in constraint:
                raise OrderNumberConflict(draft.order_number) from exc
            if "payment_id" in constraint:
                raise DuplicatePayment(draft.payment_id or "") from exc
            raise PersistenceError(f"unique violation: {constraint}") from exc
        except _DB_ERRORS as exc:
            raise PersistenceError(f"could not store order {draft.order_number}: {exc}") from exc

        if order is None:
            raise PersistenceError(f"order {draft.order_number} missing after commit")
        logger.info("order %s stored with %d line(s)", order.order_number, len(order.items))
        return order

    async def update_order_status(self, order_id: int, new_status: str,
                                  notes: Optional[str] = None) -> bool:
        """False when the order does not exist; InvalidTransition on an illegal edge."""
        pool = await self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchval(
                    "SELECT status FROM orders WHERE id = $1 FOR UPDATE", order_id
                )
                if current is None:
                    return False
                status = check_order_transition(current, new_status)
                await conn.execute(
                    """
                    UPDATE orders
                    SET status = $2,
                        notes = COALESCE($3, notes),
                        updated_at = NOW()
                    WHERE id = $1
                    """,
                    order_id,
                    status.value,
                    notes,
                )
        return True

    async def update_order_payment_status(self, order_id: int, new_payment_status: str) -> bool:
        pool = await self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchval(
                    "SELECT payment_status FROM orders WHERE id = $1 FOR UPDATE", order_id
                )
                if current is None:
                    return False
                status = check_payment_transition(current, new_payment_status)
                await conn.execute(
                    "UPDATE orders SET payment_status = $2, updated_at = NOW() WHERE id = $1",
                    order_id,
                    status.value,
                )
        return True

    # ---------- Reads ----------

    async def _fetch_order(self, conn, order_id: int) -> Optional[Order]:
        row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        if not row:
            return None
        item_rows = await conn.fetch(
            "SELECT * FROM order_items WHERE order_id = $1 ORDER BY id", order_id
        )
        return _order_from_row(row, [_line_from_row(r) for r in item_rows])

    async def _fetch_order_where(self, column: str, value: Any) -> Optional[Order]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            order_id = await conn.fetchval(f"SELECT id FROM orders WHERE {column} = $1", value)
            if order_id is None:
                return None
            return await self._fetch_order(conn, order_id)

    async def get_order(self, order_id: int) -> Optional[Order]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            return await self._fetch_order(conn, order_id)

    async def get_order_by_number(self, order_number: str) -> Optional[Order]:
        return await self._fetch_order_where("order_number", order_number)

    async def get_order_by_payment_id(self, payment_id: str) -> Optional[Order]:
        return await self._fetch_order_where("payment_id", payment_id)

    async def list_orders(
        self,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> OrderPage:
        """Newest first; line items are not loaded for list views."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        where_clauses = ["1=1"]
        params: List[Any] = []
        if status:
            params.append(status)
            where_clauses.append(f"status = ${len(params)}")
        if payment_status:
            params.append(payment_status)
            where_clauses.append(f"payment_status = ${len(params)}")
        if search:
            params.append(f"%{search.strip().lower()}%")
            n = len(params)
            where_clauses.append(
                f"(LOWER(customer_name) LIKE ${n} OR LOWER(customer_email) LIKE ${n} "
                f"OR LOWER(order_number) LIKE ${n})"
            )
        where_sql = " AND ".join(where_clauses)

        pool = await self._pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM orders WHERE {where_sql}", *params)
            rows = await conn.fetch(
                f"""
                SELECT * FROM orders
                WHERE {where_sql}
                ORDER BY created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                limit,
                (page - 1) * limit,
            )

        total = int(total or 0)
        return OrderPage(
            orders=[_order_from_row(r) for r in rows],
            pagination=Pagination(
                page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)
            ),
        )

    async def orders_stats(self) -> OrderStats:
        pool = await self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*)                                              AS total_orders,
                    COUNT(*) FILTER (WHERE status = 'pending')            AS pending_orders,
                    COUNT(*) FILTER (WHERE status = 'delivered')          AS completed_orders,
                    COALESCE(SUM(total_amount)
                             FILTER (WHERE payment_status = 'completed'), 0) AS total_revenue
                FROM orders
                """
            )
        return OrderStats.model_validate(dict(row))
