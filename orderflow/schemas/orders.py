from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# VARCHAR widths in db/schema.sql; input is checked against these before charging
MAX_CUSTOMER_NAME = 100
MAX_CUSTOMER_EMAIL = 100
MAX_CUSTOMER_PHONE = 20
MAX_DELIVERY_TIME = 50
MAX_DISH_NAME = 200
MAX_ORDER_NUMBER = 20


class WireModel(BaseModel):
    # camelCase on the wire (matches the frontend JSON), snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Checkout input ----------

class LineItemIn(WireModel):
    catalog_item_id: int
    quantity: int
    unit_price: Decimal
    name: Optional[str] = None
    special_request: Optional[str] = None


class OrderDraft(WireModel):
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    order_type: str = "delivery"          # delivery | pickup
    delivery_address: Optional[str] = None
    delivery_time: Optional[str] = None   # requested time, recorded as given
    special_instructions: Optional[str] = None
    delivery_fee: Decimal = Decimal("0")
    # when omitted, estimated from the subtotal with the flat TAX_RATE
    tax_amount: Optional[Decimal] = None


class SettlementRequest(WireModel):
    source_token: str
    amount: Decimal                       # major units, e.g. 42.50
    currency: str = "CAD"
    # resend the same key when retrying the same submission
    idempotency_key: Optional[str] = None
    order: OrderDraft
    line_items: List[LineItemIn]


# ---------- Catalog (read-only) ----------

class CatalogDish(WireModel):
    id: int
    name: str
    price: Decimal
    is_available: bool = True


# ---------- Gateway ----------

class ChargeResult(WireModel):
    payment_id: str
    status: Literal["completed", "failed", "other"]
    receipt_reference: Optional[str] = None
    amount_minor: int
    currency: str
    raw_status: Optional[str] = None


# ---------- Stored order ----------

class NewOrderLine(WireModel):
    dish_id: int
    dish_name: str
    quantity: int
    unit_price: Decimal
    special_requests: Optional[str] = None


class OrderLine(NewOrderLine):
    id: int
    order_id: int


class NewOrder(WireModel):
    order_number: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    total_amount: Decimal
    tax_amount: Decimal = Decimal("0.00")
    delivery_fee: Decimal = Decimal("0.00")
    order_type: str
    delivery_address: Optional[str] = None
    delivery_time: Optional[str] = None
    special_instructions: Optional[str] = None
    payment_method: Optional[str] = None
    payment_provider: Optional[str] = None
    payment_id: Optional[str] = None
    payment_status: str = "pending"
    paid_at: Optional[datetime] = None
    status: str = "pending"


class Order(NewOrder):
    id: int
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderLine] = Field(default_factory=list)

    @property
    def subtotal(self) -> Decimal:
        return sum((li.unit_price * li.quantity for li in self.items), Decimal("0.00"))


# ---------- Settlement results ----------

class SettlementSucceeded(WireModel):
    kind: Literal["succeeded"] = "succeeded"
    order_id: int
    order_number: str
    payment_id: str
    status: str
    receipt_reference: Optional[str] = None
    total_amount_minor: int
    currency: str
    order: Order


class SettlementPendingReview(WireModel):
    """Card was charged; the order record could not be stored yet."""

    kind: Literal["payment_captured_pending_review"] = "payment_captured_pending_review"
    payment_id: str
    status: str
    receipt_reference: Optional[str] = None
    total_amount_minor: int
    currency: str
    message: str = (
        "Your payment went through. We could not confirm your order automatically; "
        "our team will contact you shortly. Please do not pay again."
    )


SettlementResult = Annotated[
    Union[SettlementSucceeded, SettlementPendingReview],
    Field(discriminator="kind"),
]


# ---------- Admin order views ----------

class OrderStatusIn(WireModel):
    status: str
    notes: Optional[str] = None


class PaymentStatusIn(WireModel):
    payment_status: str


class Pagination(WireModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderPage(WireModel):
    orders: List[Order]
    pagination: Pagination


class OrderStats(WireModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    total_revenue: Decimal
