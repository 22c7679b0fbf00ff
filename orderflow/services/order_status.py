"""Order and payment status state machines."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from ..errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def is_terminal(status: OrderStatus) -> bool:
    return not ORDER_TRANSITIONS[OrderStatus(status)]


def check_order_transition(current: str, requested: str) -> OrderStatus:
    """Return the requested status, or raise InvalidTransition."""
    cur, new = OrderStatus(current), OrderStatus(requested)
    if is_terminal(cur):
        raise InvalidTransition(cur.value, new.value, f"order is already {cur.value}")
    if new not in ORDER_TRANSITIONS[cur]:
        raise InvalidTransition(cur.value, new.value)
    return new


def check_payment_transition(current: str, requested: str) -> PaymentStatus:
    cur, new = PaymentStatus(current), PaymentStatus(requested)
    if new not in PAYMENT_TRANSITIONS[cur]:
        raise InvalidTransition(cur.value, new.value)
    return new
