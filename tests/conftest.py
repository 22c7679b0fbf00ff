"""Shared fixtures: in-memory collaborators so tests run without Stripe or Postgres."""
from __future__ import annotations

import asyncio
import itertools
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

# Set dummy env vars BEFORE any app imports
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_dummy")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SENDGRID_API_KEY", None)

import pytest

from orderflow.errors import (
    DuplicatePayment,
    GatewayUnavailable,
    OrderNumberConflict,
    PaymentDeclined,
    PersistenceError,
)
from orderflow.schemas.orders import (
    CatalogDish,
    ChargeResult,
    NewOrder,
    NewOrderLine,
    Order,
    OrderLine,
    OrderPage,
    OrderStats,
    Pagination,
    SettlementRequest,
)
from orderflow.services.order_status import check_order_transition, check_payment_transition
from orderflow.services.settlement import SettlementOrchestrator


# ---------- Fake payment gateway ----------

class FakeGateway:
    """Replays the first result for a repeated idempotency key, like Stripe does."""

    provider = "fake"

    def __init__(self):
        self.outcome = "completed"   # completed | declined | unavailable
        self.delay = 0.0
        self.calls = 0
        self.by_key: Dict[str, ChargeResult] = {}
        self._ids = itertools.count(1)

    async def charge(self, source_token, amount_minor, currency, idempotency_key):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        if self.outcome == "declined":
            raise PaymentDeclined("card was declined", gateway_status="card_declined")
        if self.outcome == "unavailable":
            raise GatewayUnavailable("payment gateway unavailable")
        n = next(self._ids)
        result = ChargeResult(
            payment_id=f"pi_test_{n}",
            status="completed",
            receipt_reference=f"https://receipts.test/{n}",
            amount_minor=amount_minor,
            currency=currency,
            raw_status="succeeded",
        )
        self.by_key[idempotency_key] = result
        return result


# ---------- Fake order repository ----------

class FakeRepository:
    """
    In-memory stand-in for OrderRepository with the same unique constraints.

    `failures` is consumed one entry per create_order call: an exception
    instance is raised before writing, "hang" blocks past any timeout, and
    "commit_then_fail" stores the order and then raises.
    """

    def __init__(self):
        self.orders: Dict[int, Order] = {}
        self.failures: List[Any] = []
        self.create_calls = 0
        self._ids = itertools.count(1)

    def seed(self, draft: NewOrder, lines: List[NewOrderLine]) -> Order:
        if any(o.order_number == draft.order_number for o in self.orders.values()):
            raise OrderNumberConflict(draft.order_number)
        if draft.payment_id and any(o.payment_id == draft.payment_id for o in self.orders.values()):
            raise DuplicatePayment(draft.payment_id)
        order_id = next(self._ids)
        now = datetime.now(timezone.utc)
        items = [
            OrderLine(id=order_id * 100 + i, order_id=order_id, **li.model_dump())
            for i, li in enumerate(lines, 1)
        ]
        order = Order(id=order_id, created_at=now, updated_at=now, items=items, **draft.model_dump())
        self.orders[order_id] = order
        return order

    async def create_order(self, draft, lines):
        self.create_calls += 1
        failure = self.failures.pop(0) if self.failures else None
        if isinstance(failure, BaseException):
            raise failure
        if failure == "hang":
            await asyncio.sleep(5)
        order = self.seed(draft, lines)
        if failure == "commit_then_fail":
            raise PersistenceError("connection reset after commit")
        return order

    async def get_order(self, order_id):
        return self.orders.get(order_id)

    async def get_order_by_number(self, order_number):
        return next((o for o in self.orders.values() if o.order_number == order_number), None)

    async def get_order_by_payment_id(self, payment_id):
        return next((o for o in self.orders.values() if o.payment_id == payment_id), None)

    async def update_order_status(self, order_id, new_status, notes=None):
        order = self.orders.get(order_id)
        if order is None:
            return False
        status = check_order_transition(order.status, new_status)
        self.orders[order_id] = order.model_copy(
            update={"status": status.value, "notes": notes or order.notes}
        )
        return True

    async def update_order_payment_status(self, order_id, new_payment_status):
        order = self.orders.get(order_id)
        if order is None:
            return False
        status = check_payment_transition(order.payment_status, new_payment_status)
        self.orders[order_id] = order.model_copy(update={"payment_status": status.value})
        return True

    async def list_orders(self, status=None, payment_status=None, search=None, page=1, limit=10):
        rows = [
            o for o in self.orders.values()
            if (not status or o.status == status)
            and (not payment_status or o.payment_status == payment_status)
            and (not search or search.lower() in o.customer_name.lower())
        ]
        rows.sort(key=lambda o: o.id, reverse=True)
        start = (page - 1) * limit
        return OrderPage(
            orders=rows[start:start + limit],
            pagination=Pagination(page=page, limit=limit, total=len(rows),
                                  total_pages=-(-len(rows) // limit)),
        )

    async def orders_stats(self):
        orders = list(self.orders.values())
        return OrderStats(
            total_orders=len(orders),
            pending_orders=sum(o.status == "pending" for o in orders),
            completed_orders=sum(o.status == "delivered" for o in orders),
            total_revenue=sum((o.total_amount for o in orders if o.payment_status == "completed"),
                              Decimal("0")),
        )


# ---------- Fake notifier / catalog ----------

class FakeNotifier:
    def __init__(self):
        self.fail = False
        self.placed: List[Order] = []
        self.status_changes: List[tuple] = []

    async def dispatch_order_placed(self, order):
        if self.fail:
            raise RuntimeError("mail provider down")
        self.placed.append(order)
        return {"customer_confirmation": True, "admin_alert": True}

    async def dispatch_status_changed(self, order, status):
        self.status_changes.append((order.id, status))
        return True


class FakeCatalog:
    def __init__(self, dishes: Optional[List[CatalogDish]] = None):
        self.dishes = {d.id: d for d in dishes or []}

    async def get_dishes(self, ids):
        return {i: self.dishes[i] for i in ids if i in self.dishes}


# ---------- Fixtures ----------

@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def repository():
    return FakeRepository()


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def catalog():
    return FakeCatalog([
        CatalogDish(id=1, name="Butter Chicken", price=Decimal("17.00")),
        CatalogDish(id=2, name="Garlic Naan", price=Decimal("3.50")),
        CatalogDish(id=3, name="Seasonal Curry", price=Decimal("15.00"), is_available=False),
    ])


@pytest.fixture()
def make_orchestrator(gateway, repository, notifier):
    def _make(**kwargs):
        kwargs.setdefault("persist_retry_backoff", 0)
        return SettlementOrchestrator(gateway, repository, notifier, **kwargs)
    return _make


@pytest.fixture()
def checkout_payload():
    """Wire-format checkout body: 2 x 17.00 + tax 3.50 + delivery 5.00 = 42.50."""
    def _payload(amount="42.50", items=None, order=None, **extra) -> Dict[str, Any]:
        body = {
            "sourceToken": "pm_card_visa",
            "amount": amount,
            "currency": "CAD",
            "order": {
                "customerName": "Jane Doe",
                "customerEmail": "jane@example.com",
                "customerPhone": "514-555-0100",
                "orderType": "delivery",
                "deliveryAddress": "123 Rue Main, Montreal",
                "deliveryFee": "5.00",
                "taxAmount": "3.50",
                **(order or {}),
            },
            "lineItems": items if items is not None else [
                {"catalogItemId": 1, "quantity": 2, "unitPrice": "17.00", "name": "Butter Chicken"},
            ],
        }
        body.update(extra)
        return body
    return _payload


@pytest.fixture()
def make_request(checkout_payload):
    def _make(**kwargs) -> SettlementRequest:
        return SettlementRequest.model_validate(checkout_payload(**kwargs))
    return _make


@pytest.fixture()
def settle():
    """Run settle() and wait for background notifications in the same loop."""
    def _run(orchestrator, req):
        async def _go():
            try:
                return await orchestrator.settle(req)
            finally:
                await orchestrator.drain()
        return asyncio.run(_go())
    return _run


@pytest.fixture()
def sample_order():
    return Order(
        id=1,
        order_number="DC-7KQ2M9XH",
        customer_name="Jane Doe",
        customer_email="jane@example.com",
        total_amount=Decimal("42.50"),
        tax_amount=Decimal("3.50"),
        delivery_fee=Decimal("5.00"),
        order_type="delivery",
        delivery_address="123 Rue Main, Montreal",
        payment_method="card",
        payment_provider="stripe",
        payment_id="pi_123",
        payment_status="completed",
        paid_at=datetime(2026, 1, 5, 18, 30, tzinfo=timezone.utc),
        status="pending",
        items=[
            OrderLine(id=10, order_id=1, dish_id=1, dish_name="Butter Chicken",
                      quantity=2, unit_price=Decimal("17.00")),
        ],
    )


@pytest.fixture()
def client(make_orchestrator, repository, notifier):
    """FastAPI TestClient (sync) wired to the in-memory fakes."""
    from fastapi.testclient import TestClient
    from orderflow.deps import get_notifier, get_orchestrator, get_repository
    from orderflow.main import app

    orchestrator = make_orchestrator()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()
