import asyncio

import orjson
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from creditcore.core.pagination import Page, paginate
from creditcore.core.security import Identity
from creditcore.deps import get_identity, get_ledger
from creditcore.models.wallet import Wallet
from creditcore.models.wallet_transaction import WalletTransaction
from creditcore.services.wallets import WalletLedger

router = APIRouter()

KEEPALIVE_SECONDS = 15


def wallet_out(w: Wallet) -> dict:
    return {
        "user_id": w.user_id,
        "email": w.email,
        "display_name": w.display_name,
        "avatar_ref": w.avatar_ref,
        "balance": w.balance,
        "account_type": w.account_type.value,
        "plan_type": w.plan_type.value if w.plan_type else None,
        "is_admin": w.is_admin,
        "is_disabled": w.is_disabled,
        "daily_usage_count": w.daily_usage_count,
        "last_reset_date": w.last_reset_date,
        "last_usage_at": w.last_usage_at.isoformat() if w.last_usage_at else None,
    }


def transaction_out(e: WalletTransaction) -> dict:
    return {
        "id": str(e.id),
        "amount": e.amount,
        "balance_after": e.balance_after,
        "kind": e.kind.value,
        "description": e.description,
        "order_id": e.order_id,
        "created_at": e.created_at.isoformat(),
    }


@router.post("/init")
async def wallet_init(
    identity: Identity = Depends(get_identity),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Create the wallet on first sign-in; existing wallets are left as they are."""
    wallet = await ledger.initialize_wallet(
        identity.uid, identity.email, identity.display_name, identity.avatar_ref
    )
    return wallet_out(wallet)


@router.get("")
async def wallet_profile(
    identity: Identity = Depends(get_identity),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Return current wallet (balance, plan, usage counters)."""
    return wallet_out(await ledger.get_profile(identity.uid))


@router.get("/transactions")
async def wallet_transactions(
    identity: Identity = Depends(get_identity),
    ledger: WalletLedger = Depends(get_ledger),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    limit, offset = paginate(limit, offset)
    entries = await ledger.get_transactions(identity.uid, limit, offset)
    return Page[dict](items=[transaction_out(e) for e in entries], limit=limit, offset=offset)


@router.get("/stream")
async def wallet_stream(
    request: Request,
    identity: Identity = Depends(get_identity),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Server-Sent Events: one `data: {"balance": n}` event per balance change."""
    queue: asyncio.Queue[int] = asyncio.Queue()
    sub = await ledger.subscribe_to_balance(identity.uid, queue.put_nowait)

    async def event_generator():
        try:
            while not await request.is_disconnected():
                try:
                    balance = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {orjson.dumps({'balance': balance}).decode()}\n\n"
        finally:
            sub.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
