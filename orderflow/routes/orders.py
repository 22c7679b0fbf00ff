from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from ..db.orders_store import OrderRepository
from ..deps import get_notifier, get_repository
from ..schemas.orders import Order, OrderPage, OrderStats, OrderStatusIn, PaymentStatusIn
from ..services.notifications import NotificationDispatcher
from ..services.order_status import OrderStatus, PaymentStatus


router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("", response_model=OrderPage)
async def list_orders_endpoint(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    repo: OrderRepository = Depends(get_repository),
):
    """Recent orders for the admin UI, newest first."""
    return await repo.list_orders(
        status=status, payment_status=payment_status, search=search, page=page, limit=limit
    )


@router.get("/stats", response_model=OrderStats)
async def orders_stats_endpoint(repo: OrderRepository = Depends(get_repository)):
    return await repo.orders_stats()


@router.get("/by-number/{order_number}", response_model=Order)
async def get_order_by_number_endpoint(order_number: str,
                                       repo: OrderRepository = Depends(get_repository)):
    order = await repo.get_order_by_number(order_number.upper())
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return order


@router.get("/{order_id}", response_model=Order)
async def get_order_endpoint(order_id: int, repo: OrderRepository = Depends(get_repository)):
    order = await repo.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return order


@router.patch("/{order_id}/status")
async def update_status_endpoint(
    order_id: int,
    body: OrderStatusIn,
    background: BackgroundTasks,
    repo: OrderRepository = Depends(get_repository),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    try:
        status = OrderStatus(body.status)
    except ValueError:
        raise HTTPException(status_code=422, detail="invalid status")

    # InvalidTransition -> 409 via the handler in main.py
    if not await repo.update_order_status(order_id, status.value, body.notes):
        raise HTTPException(status_code=404, detail="order not found")

    order = await repo.get_order(order_id)
    if order is not None:
        background.add_task(notifier.dispatch_status_changed, order, status.value)
    return {"ok": True, "status": status.value}


@router.patch("/{order_id}/payment-status")
async def update_payment_status_endpoint(
    order_id: int,
    body: PaymentStatusIn,
    repo: OrderRepository = Depends(get_repository),
):
    try:
        payment_status = PaymentStatus(body.payment_status)
    except ValueError:
        raise HTTPException(status_code=422, detail="invalid payment status")

    if not await repo.update_order_payment_status(order_id, payment_status.value):
        raise HTTPException(status_code=404, detail="order not found")
    return {"ok": True, "paymentStatus": payment_status.value}
