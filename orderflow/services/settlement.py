"""
Checkout settlement: charge the card, store the order, notify.

States of one attempt:

    initiated -> charging -> charged -> persisting -> persisted
                    |                      |
               charge_failed         persist_failed (payment captured,
                                     order pending manual review)

Once the charge call has been issued the attempt always runs to one of the
terminal states, even if the caller goes away.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

from ..errors import (
    DuplicatePayment,
    GatewayUnavailable,
    InvalidRequest,
    OrderNumberConflict,
    PaymentDeclined,
    PersistenceError,
    PersistFailed,
)
from ..schemas.orders import (
    MAX_CUSTOMER_EMAIL,
    MAX_CUSTOMER_NAME,
    MAX_CUSTOMER_PHONE,
    MAX_DELIVERY_TIME,
    MAX_DISH_NAME,
    MAX_ORDER_NUMBER,
    CatalogDish,
    ChargeResult,
    NewOrder,
    NewOrderLine,
    Order,
    SettlementPendingReview,
    SettlementRequest,
    SettlementResult,
    SettlementSucceeded,
)
from . import money
from .catalog import Catalog
from .notifications import NotificationDispatcher
from .order_numbers import generate_order_number
from .order_status import OrderStatus, PaymentStatus
from .payments import PaymentGateway, mask_token

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ORDER_TYPES = ("delivery", "pickup")
MAX_LINE_ITEMS = 50
MAX_QUANTITY = 99


def new_idempotency_key() -> str:
    """128 random bits, hex encoded."""
    return secrets.token_hex(16)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PreparedCheckout:
    amount: Decimal
    amount_minor: int
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    delivery_fee: Decimal
    lines: List[NewOrderLine]


class SettlementOrchestrator:
    def __init__(
        self,
        gateway: PaymentGateway,
        repository,
        notifier: NotificationDispatcher,
        catalog: Optional[Catalog] = None,
        *,
        tax_rate: Decimal = Decimal("0.14975"),
        max_amount: Decimal = money.MAX_MAJOR_AMOUNT,
        amount_tolerance: Decimal = money.CENTS,
        persist_timeout: float = 10.0,
        persist_retry_backoff: float = 0.5,
        order_number_prefix: str = "DC",
        order_number_length: int = 8,
        number_generator: Callable[..., str] = generate_order_number,
        key_factory: Callable[[], str] = new_idempotency_key,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if len(order_number_prefix) + 1 + order_number_length > MAX_ORDER_NUMBER:
            raise ValueError(
                f"order numbers {order_number_prefix}-<{order_number_length} chars> "
                f"do not fit in {MAX_ORDER_NUMBER} characters"
            )
        self.gateway = gateway
        self.repository = repository
        self.notifier = notifier
        self.catalog = catalog
        self.tax_rate = tax_rate
        self.max_amount = max_amount
        self.amount_tolerance = amount_tolerance
        self.persist_timeout = persist_timeout
        self.persist_retry_backoff = persist_retry_backoff
        self.order_number_prefix = order_number_prefix
        self.order_number_length = order_number_length
        self._number_generator = number_generator
        self._key_factory = key_factory
        self._clock = clock
        self._background: Set[asyncio.Task] = set()

    # ---------- Public API ----------

    async def settle(self, req: SettlementRequest) -> SettlementResult:
        """
        Run one checkout.

        Raises InvalidRequest, PaymentDeclined or GatewayUnavailable; in all
        three cases no order exists. Returns SettlementSucceeded, or
        SettlementPendingReview when the card was charged but the order could
        not be stored.
        """
        prepared = await self._validate(req)
        # from here on money may move: do not let caller cancellation abandon it
        return await asyncio.shield(self._settle(req, prepared))

    async def drain(self) -> None:
        """Wait for queued notifications (app shutdown, tests)."""
        while True:
            pending = [t for t in self._background if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ---------- Validation ----------

    async def _validate(self, req: SettlementRequest) -> PreparedCheckout:
        draft = req.order
        if not (req.source_token or "").strip():
            raise InvalidRequest("payment token is required")
        if not req.line_items:
            raise InvalidRequest("at least one item is required")
        if len(req.line_items) > MAX_LINE_ITEMS:
            raise InvalidRequest(f"too many items (max {MAX_LINE_ITEMS})")

        name = (draft.customer_name or "").strip()
        if not name or len(name) > MAX_CUSTOMER_NAME:
            raise InvalidRequest(f"customer name is required (max {MAX_CUSTOMER_NAME} characters)")
        email = (draft.customer_email or "").strip()
        if not EMAIL_RE.match(email) or len(email) > MAX_CUSTOMER_EMAIL:
            raise InvalidRequest("a valid customer email is required")
        if draft.customer_phone and len(draft.customer_phone.strip()) > MAX_CUSTOMER_PHONE:
            raise InvalidRequest("phone number is too long")
        if draft.order_type not in ORDER_TYPES:
            raise InvalidRequest(f"order type must be one of {', '.join(ORDER_TYPES)}")
        if draft.order_type == "delivery" and not (draft.delivery_address or "").strip():
            raise InvalidRequest("delivery orders need a delivery address")
        if draft.delivery_time and len(draft.delivery_time.strip()) > MAX_DELIVERY_TIME:
            raise InvalidRequest(f"delivery time is too long (max {MAX_DELIVERY_TIME} characters)")

        currency = (req.currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise InvalidRequest("currency must be a 3-letter code")

        amount = money.quantize(req.amount, self.max_amount)
        if amount <= 0:
            raise InvalidRequest("amount must be positive")
        delivery_fee = money.quantize(draft.delivery_fee, self.max_amount)

        for li in req.line_items:
            if not 1 <= li.quantity <= MAX_QUANTITY:
                raise InvalidRequest(f"quantity must be between 1 and {MAX_QUANTITY}")
            if money.quantize(li.unit_price, self.max_amount) <= 0:
                raise InvalidRequest("unit prices must be positive")

        lines = await self._snapshot_lines(req)
        subtotal = sum((money.line_total(li.quantity, li.unit_price) for li in lines), Decimal("0.00"))
        if draft.tax_amount is not None:
            tax_amount = money.quantize(draft.tax_amount, self.max_amount)
        else:
            tax_amount = money.estimate_tax(subtotal, self.tax_rate)

        expected = subtotal + tax_amount + delivery_fee
        if not money.amounts_match(amount, expected, self.amount_tolerance):
            raise InvalidRequest(
                f"amount {amount} does not match items {subtotal} + tax {tax_amount} "
                f"+ delivery {delivery_fee} = {expected}"
            )

        return PreparedCheckout(
            amount=amount,
            amount_minor=money.to_minor_units(amount, self.max_amount),
            currency=currency,
            subtotal=subtotal,
            tax_amount=tax_amount,
            delivery_fee=delivery_fee,
            lines=lines,
        )

    async def _snapshot_lines(self, req: SettlementRequest) -> List[NewOrderLine]:
        """
        Freeze name and unit price onto each line. With a catalog, both come
        from the dish row and a client price that differs from it is rejected.
        """
        dishes: Dict[int, CatalogDish] = {}
        if self.catalog is not None:
            ids = [li.catalog_item_id for li in req.line_items]
            dishes = await self.catalog.get_dishes(ids)
            missing = sorted({i for i in ids if i not in dishes or not dishes[i].is_available})
            if missing:
                raise InvalidRequest(f"unknown or unavailable menu items: {missing}")

        lines = []
        for li in req.line_items:
            unit_price = money.quantize(li.unit_price)
            dish = dishes.get(li.catalog_item_id)
            if dish is not None:
                name = dish.name
                if unit_price != money.quantize(dish.price):
                    raise InvalidRequest(
                        f"price {unit_price} for {dish.name!r} does not match the menu price {dish.price}"
                    )
            else:
                name = (li.name or "").strip() or f"Item {li.catalog_item_id}"
            if len(name) > MAX_DISH_NAME:
                raise InvalidRequest(f"item name is too long (max {MAX_DISH_NAME} characters)")
            lines.append(NewOrderLine(
                dish_id=li.catalog_item_id,
                dish_name=name,
                quantity=li.quantity,
                unit_price=unit_price,
                special_requests=(li.special_request or "").strip() or None,
            ))
        return lines

    # ---------- Settlement ----------

    def _state(self, key: str, state: str) -> None:
        logger.debug("settlement %s -> %s", key, state, extra={"idempotency_key": key})

    async def _settle(self, req: SettlementRequest, prepared: PreparedCheckout) -> SettlementResult:
        key = req.idempotency_key or self._key_factory()
        self._state(key, "initiated")

        self._state(key, "charging")
        try:
            charge = await self.gateway.charge(
                req.source_token, prepared.amount_minor, prepared.currency, key
            )
        except PaymentDeclined:
            self._state(key, "charge_failed")
            logger.info("checkout declined (source %s)", mask_token(req.source_token))
            raise
        except GatewayUnavailable:
            self._state(key, "charge_failed")
            raise
        self._state(key, "charged")

        existing = await self._find_order_for_payment(charge.payment_id)
        if existing is not None:
            # replay of a submission that was already stored
            logger.info("payment %s already recorded as order %s",
                        charge.payment_id, existing.order_number)
            return self._succeeded(existing, charge)

        if charge.amount_minor != prepared.amount_minor:
            logger.warning("payment %s settled %s minor units, requested %s; storing the settled amount",
                           charge.payment_id, charge.amount_minor, prepared.amount_minor)

        draft: Optional[NewOrder] = None
        self._state(key, "persisting")
        try:
            draft = self._build_order(req, prepared, charge)
            order = await self._persist(draft, prepared.lines)
        except Exception as exc:  # any failure here leaves a captured payment unrecorded
            self._state(key, "persist_failed")
            self._report_lost_order(draft, prepared, charge, exc)
            return SettlementPendingReview(
                payment_id=charge.payment_id,
                status=charge.status,
                receipt_reference=charge.receipt_reference,
                total_amount_minor=charge.amount_minor,
                currency=charge.currency,
            )
        self._state(key, "persisted")

        self._notify_in_background(order)
        return self._succeeded(order, charge)

    def _build_order(self, req: SettlementRequest, prepared: PreparedCheckout,
                     charge: ChargeResult) -> NewOrder:
        draft = req.order
        return NewOrder(
            order_number=self._new_order_number(),
            customer_name=draft.customer_name.strip(),
            customer_email=draft.customer_email.strip(),
            customer_phone=(draft.customer_phone or "").strip() or None,
            total_amount=money.to_major_units(charge.amount_minor, maximum=None),
            tax_amount=prepared.tax_amount,
            delivery_fee=prepared.delivery_fee,
            order_type=draft.order_type,
            delivery_address=draft.delivery_address.strip() if draft.order_type == "delivery" else None,
            delivery_time=(draft.delivery_time or "").strip() or None,
            special_instructions=(draft.special_instructions or "").strip() or None,
            payment_method="card",
            payment_provider=self.gateway.provider,
            payment_id=charge.payment_id,
            payment_status=PaymentStatus.COMPLETED.value,
            paid_at=self._clock(),
            status=OrderStatus.PENDING.value,
        )

    def _new_order_number(self) -> str:
        return self._number_generator(self.order_number_prefix, self.order_number_length)

    async def _persist(self, draft: NewOrder, lines: List[NewOrderLine]) -> Order:
        """
        At most one order-number regeneration and one transient retry.
        The gateway is never called again from here.
        """
        regenerated = False
        retried = False
        while True:
            try:
                return await asyncio.wait_for(
                    self.repository.create_order(draft, lines), timeout=self.persist_timeout
                )
            except OrderNumberConflict:
                if regenerated:
                    raise PersistFailed("order number collided twice")
                regenerated = True
                old = draft.order_number
                draft = draft.model_copy(update={"order_number": self._new_order_number()})
                logger.warning("order number %s taken, retrying as %s", old, draft.order_number)
            except DuplicatePayment:
                existing = await self._find_order_for_payment(draft.payment_id)
                if existing is not None:
                    return existing
                raise PersistFailed("payment already recorded but order not readable")
            except (PersistenceError, asyncio.TimeoutError) as exc:
                if retried:
                    raise PersistFailed(f"order store failed after retry: {exc}") from exc
                retried = True
                logger.error("storing order %s failed (%s); retrying in %.2fs",
                             draft.order_number, type(exc).__name__,
                             self.persist_retry_backoff)
                await asyncio.sleep(self.persist_retry_backoff)
                # a timed-out write may still have committed
                existing = await self._find_order_for_payment(draft.payment_id)
                if existing is not None:
                    return existing

    async def _find_order_for_payment(self, payment_id: Optional[str]) -> Optional[Order]:
        if not payment_id:
            return None
        try:
            return await asyncio.wait_for(
                self.repository.get_order_by_payment_id(payment_id), timeout=self.persist_timeout
            )
        except (PersistenceError, asyncio.TimeoutError) as exc:
            logger.warning("could not look up order for payment %s: %s", payment_id, exc)
            return None

    def _report_lost_order(self, draft: Optional[NewOrder], prepared: PreparedCheckout,
                           charge: ChargeResult, exc: BaseException) -> None:
        payload = {
            "payment_id": charge.payment_id,
            "receipt_reference": charge.receipt_reference,
            "charged_minor": charge.amount_minor,
            "currency": charge.currency,
            "order": draft.model_dump(mode="json") if draft is not None else None,
            "subtotal": str(prepared.subtotal),
            "lines": [li.model_dump(mode="json") for li in prepared.lines],
            "error": f"{type(exc).__name__}: {exc}",
        }
        logger.critical(
            "order_persist_failed payment_id=%s: card charged but order not stored; "
            "manual reconciliation required %s",
            charge.payment_id,
            json.dumps(payload, default=str),
            extra={"payment_id": charge.payment_id, "reconciliation": payload},
        )

    def _succeeded(self, order: Order, charge: ChargeResult) -> SettlementSucceeded:
        return SettlementSucceeded(
            order_id=order.id,
            order_number=order.order_number,
            payment_id=charge.payment_id,
            status=charge.status,
            receipt_reference=charge.receipt_reference,
            total_amount_minor=charge.amount_minor,
            currency=charge.currency,
            order=order,
        )

    # ---------- Notifications ----------

    def _notify_in_background(self, order: Order) -> None:
        task = asyncio.create_task(self._notify(order))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify(self, order: Order) -> None:
        try:
            await self.notifier.dispatch_order_placed(order)
        except Exception:
            logger.exception("notification dispatch crashed for order %s", order.order_number)
