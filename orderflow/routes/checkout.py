from __future__ import annotations
from fastapi import APIRouter, Depends, Response

from ..deps import get_orchestrator
from ..schemas.orders import SettlementPendingReview, SettlementRequest, SettlementResult
from ..services.payments import public_config
from ..services.settlement import SettlementOrchestrator


router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.get("/config")
def checkout_config():
    """Publishable key + currency for the card form."""
    return public_config()


@router.post("", response_model=SettlementResult)
async def checkout(
    body: SettlementRequest,
    response: Response,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """
    Charge the card and create the order.

    200 -> order placed; 202 -> card charged but order needs manual follow-up.
    Declines / gateway errors / bad input are turned into JSON errors by the
    handlers registered in main.py.
    """
    result = await orchestrator.settle(body)
    if isinstance(result, SettlementPendingReview):
        response.status_code = 202
    return result
