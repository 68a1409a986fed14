from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from creditcore.core.pagination import Page, paginate
from creditcore.core.security import Identity
from creditcore.core.exceptions import NotFoundError
from creditcore.deps import get_identity, get_ledger, get_tracker, require_verified
from creditcore.models.order import Order
from creditcore.services import spend as spend_service
from creditcore.services.orders import OrderTracker
from creditcore.services.wallets import WalletLedger

router = APIRouter()


class SpendRequest(BaseModel):
    tool_type: str = Field(min_length=1, max_length=64)
    amount: int = Field(ge=0)
    description: str = Field(default="", max_length=500)
    count: int = Field(default=1, ge=1)
    input_data: dict[str, Any] = Field(default_factory=dict)


def order_out(o: Order) -> dict:
    return {
        "id": str(o.id),
        "user_id": o.user_id,
        "tool_type": o.tool_type,
        "status": o.status.value,
        "input_data": o.input_data,
        "output_data": o.output_data,
        "cost": o.cost,
        "error_message": o.error_message,
        "created_at": o.created_at.isoformat(),
        "updated_at": o.updated_at.isoformat(),
    }


@router.post("/spend")
async def orders_spend(
    body: SpendRequest,
    identity: Identity = Depends(require_verified),
    tracker: OrderTracker = Depends(get_tracker),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Charge points for one generation. 402 INSUFFICIENT_FUNDS, 429 DAILY_LIMIT/COOLDOWN."""
    order = await spend_service.spend(
        tracker,
        ledger,
        identity.uid,
        body.tool_type,
        body.amount,
        body.description,
        count=body.count,
        input_data=body.input_data,
    )
    return order_out(order)


@router.get("")
async def orders_list(
    identity: Identity = Depends(get_identity),
    tracker: OrderTracker = Depends(get_tracker),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return orders for current user (newest first)."""
    limit, offset = paginate(limit, offset)
    orders = await tracker.get_user_orders(identity.uid, limit, offset)
    return Page[dict](items=[order_out(o) for o in orders], limit=limit, offset=offset)


@router.get("/{order_id}")
async def orders_get(
    order_id: str,
    identity: Identity = Depends(get_identity),
    tracker: OrderTracker = Depends(get_tracker),
):
    order = await tracker.get_order_by_id(order_id)
    if order.user_id != identity.uid:
        raise NotFoundError("Order not found")
    return order_out(order)
