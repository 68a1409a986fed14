from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from creditcore.core.audit import log_event
from creditcore.core.config import get_settings
from creditcore.core.pagination import Page, paginate
from creditcore.deps import get_ledger, get_tracker, require_admin
from creditcore.models.order import OrderStatus
from creditcore.models.wallet import PlanType, Wallet
from creditcore.routers.orders import order_out
from creditcore.routers.wallet import transaction_out, wallet_out
from creditcore.services import spend as spend_service
from creditcore.services.orders import OrderTracker
from creditcore.services.wallets import WalletLedger

router = APIRouter()


class CreditRequest(BaseModel):
    amount: int = Field(gt=0)
    description: str = Field(min_length=1, max_length=500)
    plan_type: PlanType | None = None
    idempotency_key: str | None = None


class ReconcileRequest(BaseModel):
    older_than_minutes: int | None = Field(default=None, ge=1)


@router.post("/wallets/{user_id}/credit")
async def admin_credit(
    user_id: str,
    body: CreditRequest,
    admin: Wallet = Depends(require_admin),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Admin: grant points, optionally upgrading the wallet to a paid plan."""
    entry = await ledger.credit_points(
        user_id,
        body.amount,
        f"{body.description} (Admin)",
        idempotency_key=body.idempotency_key,
        plan_type=body.plan_type,
    )
    await log_event(
        user_id,
        "admin_credit",
        "wallet",
        user_id,
        {"amount": body.amount, "plan_type": body.plan_type.value if body.plan_type else None},
        actor_id=admin.user_id,
    )
    return transaction_out(entry)


@router.post("/orders/reconcile")
async def admin_reconcile(
    body: ReconcileRequest,
    admin: Wallet = Depends(require_admin),
    tracker: OrderTracker = Depends(get_tracker),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Admin: resolve orders stuck in pending (normally run by the worker)."""
    minutes = body.older_than_minutes or get_settings().pending_order_timeout_minutes
    return await spend_service.reconcile_stale_orders(tracker, ledger, minutes)


class WalletStatusRequest(BaseModel):
    is_disabled: bool


@router.get("/wallets")
async def admin_list_wallets(
    admin: Wallet = Depends(require_admin),
    ledger: WalletLedger = Depends(get_ledger),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: every wallet, newest first."""
    limit, offset = paginate(limit, offset)
    wallets = await ledger.list_wallets(limit, offset)
    return Page[dict](items=[wallet_out(w) for w in wallets], limit=limit, offset=offset)


@router.post("/wallets/{user_id}/status")
async def admin_set_status(
    user_id: str,
    body: WalletStatusRequest,
    admin: Wallet = Depends(require_admin),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Admin: ban or unban a wallet."""
    wallet = await ledger.set_disabled(user_id, body.is_disabled)
    await log_event(
        user_id, "wallet_status_changed", "wallet", user_id,
        {"is_disabled": body.is_disabled}, actor_id=admin.user_id,
    )
    return wallet_out(wallet)


@router.post("/wallets/{user_id}/downgrade")
async def admin_downgrade(
    user_id: str,
    admin: Wallet = Depends(require_admin),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Admin: move a paid wallet back to trial."""
    wallet = await ledger.downgrade_to_trial(user_id)
    await log_event(user_id, "wallet_downgraded", "wallet", user_id, actor_id=admin.user_id)
    return wallet_out(wallet)


@router.get("/orders")
async def admin_list_orders(
    admin: Wallet = Depends(require_admin),
    tracker: OrderTracker = Depends(get_tracker),
    status: OrderStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: orders of all users, newest first, optionally by status."""
    limit, offset = paginate(limit, offset)
    orders = await tracker.get_all_orders(limit, offset, status)
    return Page[dict](items=[order_out(o) for o in orders], limit=limit, offset=offset)
