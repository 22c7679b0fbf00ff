"""
Best-effort notifications after an order is placed or changes status.

Nothing in here raises: every failure is logged as NotificationFailed and
dropped, so a mail provider outage can never turn a paid order into an error.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional

import httpx

from ..errors import NotificationFailed
from ..schemas.orders import Order
from .mailer import Mailer

logger = logging.getLogger(__name__)


class AdminAlerter:
    """Internal "new order" alerts: always logged, optionally POSTed to a webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    async def alert(self, title: str, message: str, link: Optional[str] = None) -> None:
        logger.info("[ADMIN ALERT] %s: %s", title, message)
        if not self.webhook_url:
            return
        payload: Dict[str, Any] = {"title": title, "message": message, "link": link}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.webhook_url, json=payload)
            resp.raise_for_status()


class NotificationDispatcher:
    def __init__(self, mailer: Mailer, alerter: AdminAlerter, admin_orders_url: str = "/admin/orders"):
        self.mailer = mailer
        self.alerter = alerter
        self.admin_orders_url = admin_orders_url

    async def _attempt(self, channel: str, order: Order, coro: Awaitable[None]) -> bool:
        try:
            await coro
            return True
        except Exception as exc:  # every channel failure is non-fatal
            failure = NotificationFailed(f"{channel} failed: {exc}", channel=channel)
            logger.warning(
                "%s for order %s: %s",
                failure.kind,
                order.order_number,
                failure.message,
                extra={"order_number": order.order_number, "channel": channel},
            )
            return False

    async def _noop(self) -> None:
        return None

    async def dispatch_order_placed(self, order: Order) -> Dict[str, bool]:
        """Customer confirmation and admin alert, concurrently and independently."""
        if order.customer_email:
            confirmation = self.mailer.send_order_confirmation(order)
        else:
            confirmation = self._noop()
        alert = self.alerter.alert(
            "New order received",
            f"Order #{order.order_number} from {order.customer_name} - ${order.total_amount:.2f}",
            f"{self.admin_orders_url}/{order.id}",
        )
        sent_confirmation, sent_alert = await asyncio.gather(
            self._attempt("customer_confirmation", order, confirmation),
            self._attempt("admin_alert", order, alert),
        )
        return {"customer_confirmation": sent_confirmation, "admin_alert": sent_alert}

    async def dispatch_status_changed(self, order: Order, status: str) -> bool:
        if not order.customer_email:
            return False
        return await self._attempt(
            "status_update", order, self.mailer.send_status_update(order, status)
        )
