"""Error taxonomy for the checkout / settlement pipeline."""
from __future__ import annotations

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base class; `kind` is the stable identifier returned to callers."""

    kind = "settlement_error"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context: Dict[str, Any] = context


class InvalidRequest(SettlementError):
    """Malformed input, rejected before any external call."""

    kind = "invalid_request"


class InvalidAmount(InvalidRequest):
    """Negative, non-finite or oversized monetary amount."""

    kind = "invalid_amount"


class PaymentDeclined(SettlementError):
    """The gateway answered, and the charge did not complete."""

    kind = "payment_declined"

    def __init__(self, message: str = "", *, payment_id: Optional[str] = None,
                 gateway_status: Optional[str] = None, **context: Any):
        super().__init__(message or "payment was declined", **context)
        self.payment_id = payment_id
        self.gateway_status = gateway_status


class GatewayUnavailable(SettlementError):
    """Network, protocol or timeout failure talking to the gateway."""

    kind = "gateway_unavailable"


class PersistFailed(SettlementError):
    """Order could not be stored after the charge went through."""

    kind = "persist_failed"


class NotificationFailed(SettlementError):
    kind = "notification_failed"


class InvalidTransition(SettlementError):
    kind = "invalid_transition"

    def __init__(self, current: str, requested: str, message: str = ""):
        super().__init__(message or f"cannot move from {current!r} to {requested!r}")
        self.current = current
        self.requested = requested


# ---------- Repository-level errors ----------

class PersistenceError(Exception):
    """Storage failed while writing; distinct from "order not found"."""


class OrderNumberConflict(PersistenceError):
    def __init__(self, order_number: str):
        super().__init__(f"order number {order_number} already exists")
        self.order_number = order_number


class DuplicatePayment(PersistenceError):
    def __init__(self, payment_id: str):
        super().__init__(f"an order already references payment {payment_id}")
        self.payment_id = payment_id
