"""Customer emails (order confirmation, status updates)."""
from __future__ import annotations

import html
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import httpx

from ..schemas.orders import Order

logger = logging.getLogger(__name__)

SENDGRID_API_BASE = "https://api.sendgrid.com"
SEND_ENDPOINT = "/v3/mail/send"

STATUS_LABELS: Dict[str, str] = {
    "pending": "Received",
    "confirmed": "Confirmed",
    "preparing": "Being prepared",
    "ready": "Ready",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
}


def _wrap(content: str, title: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body style="font-family: Arial, sans-serif; background: #f5f5f5;">
  <div style="max-width: 600px; margin: 0 auto; background: white; padding: 30px;">
    {content}
  </div>
  <p style="text-align: center; color: #888; font-size: 12px;">&copy; {datetime.now().year}</p>
</body>
</html>"""


def render_order_confirmation(order: Order) -> Tuple[str, str, str]:
    """Return (subject, plain text, html) for a freshly placed order."""
    subject = f"Order #{order.order_number} confirmed"

    text_lines = [f"Thank you for your order, {order.customer_name}!", ""]
    rows = []
    for li in order.items:
        line_total = li.unit_price * li.quantity
        text_lines.append(f"{li.quantity} x {li.dish_name}  ${line_total:.2f}")
        rows.append(
            "<tr>"
            f"<td>{html.escape(li.dish_name)}</td>"
            f"<td>{li.quantity}</td>"
            f"<td>${li.unit_price:.2f}</td>"
            f"<td>${line_total:.2f}</td>"
            "</tr>"
        )
    text_lines += [
        "",
        f"Tax: ${order.tax_amount:.2f}",
        f"Delivery: ${order.delivery_fee:.2f}",
        f"Total: ${order.total_amount:.2f}",
        f"Type: {order.order_type}",
    ]
    extra = []
    if order.delivery_address:
        text_lines.append(f"Address: {order.delivery_address}")
        extra.append(f"<p><strong>Address:</strong> {html.escape(order.delivery_address)}</p>")
    if order.delivery_time:
        text_lines.append(f"Requested time: {order.delivery_time}")
        extra.append(f"<p><strong>Requested time:</strong> {html.escape(order.delivery_time)}</p>")

    body = f"""
    <h2>Thank you for your order, {html.escape(order.customer_name)}!</h2>
    <p>Your order <strong>#{html.escape(order.order_number)}</strong> has been received.</p>
    <table style="width: 100%; border-collapse: collapse;">
      <thead><tr><th>Item</th><th>Qty</th><th>Price</th><th>Total</th></tr></thead>
      <tbody>{"".join(rows)}</tbody>
      <tfoot>
        <tr><td colspan="3">Tax</td><td>${order.tax_amount:.2f}</td></tr>
        <tr><td colspan="3">Delivery</td><td>${order.delivery_fee:.2f}</td></tr>
        <tr><td colspan="3"><strong>Total</strong></td><td><strong>${order.total_amount:.2f}</strong></td></tr>
      </tfoot>
    </table>
    <p><strong>Type:</strong> {"Delivery" if order.order_type == "delivery" else "Pickup"}</p>
    {"".join(extra)}
    """
    return subject, "\n".join(text_lines), _wrap(body, "Order confirmation")


def render_status_update(order: Order, status: str) -> Tuple[str, str, str]:
    label = STATUS_LABELS.get(status, status)
    subject = f"Order #{order.order_number} update: {label}"
    text = (
        f"Hello {order.customer_name},\n\n"
        f"Your order #{order.order_number} is now: {label}."
    )
    body = f"""
    <h2>Order update</h2>
    <p>Hello {html.escape(order.customer_name)},</p>
    <p>Your order <strong>#{html.escape(order.order_number)}</strong> is now:
       <strong>{html.escape(label)}</strong></p>
    """
    return subject, text, _wrap(body, "Order update")


class Mailer:
    """Transactional mail through the SendGrid v3 Web API."""

    def __init__(
        self,
        api_key: Optional[str],
        sender: str = "orders@localhost",
        api_base: str = SENDGRID_API_BASE,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.sender = sender
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _payload(self, to: str, subject: str, text: str, html_body: str) -> Dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html_body},
            ],
        }

    async def send(self, to: str, subject: str, text: str, html_body: str) -> None:
        if not self.enabled:
            logger.info("mail API not configured; skipping mail to %s (%s)", to, subject)
            return
        async with httpx.AsyncClient(
            base_url=self.api_base, timeout=self.timeout, transport=self._transport
        ) as client:
            resp = await client.post(
                SEND_ENDPOINT,
                json=self._payload(to, subject, text, html_body),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            resp.raise_for_status()
        logger.info("mail sent to %s: %s", to, subject)

    async def send_order_confirmation(self, order: Order) -> None:
        await self.send(order.customer_email, *render_order_confirmation(order))

    async def send_status_update(self, order: Order, status: str) -> None:
        await self.send(order.customer_email, *render_status_update(order, status))
