"""Order/ledger orchestration: charge for a generation and resolve stale orders."""

from datetime import timedelta
from typing import Any

from creditcore.core.audit import log_event
from creditcore.core.exceptions import AppError, InvalidOrderTransitionError, NotFoundError
from creditcore.core.logging import get_logger
from creditcore.models.order import Order, OrderStatus
from creditcore.services.orders import OrderTracker
from creditcore.services.wallets import WalletLedger

log = get_logger(__name__)

EXPIRED_MESSAGE = "Order expired before the charge was confirmed"


async def spend(
    tracker: OrderTracker,
    ledger: WalletLedger,
    user_id: str,
    tool_type: str,
    amount: int,
    description: str,
    count: int = 1,
    input_data: dict[str, Any] | None = None,
) -> Order:
    """
    create_order -> deduct_points -> mark completed.

    Any deduction error marks the order failed and is re-raised as-is, so the
    caller can branch on its kind (top-up prompt, wait message, retry).
    """
    payload = {"description": description, "amount": amount, "count": count, **(input_data or {})}
    order_id = await tracker.create_order(user_id, tool_type, payload, amount)
    try:
        entry = await ledger.deduct_points(user_id, amount, description, order_id, count)
    except AppError as e:
        await _fail(tracker, order_id, e.message, {"error": e.code, "details": e.details})
        raise
    except Exception as e:
        await _fail(tracker, order_id, str(e), {"error": "INTERNAL_ERROR"})
        raise

    try:
        return await tracker.update_order_status(
            order_id,
            OrderStatus.COMPLETED,
            {"resultCode": "SUCCESS", "balance_after": entry.balance_after},
        )
    except Exception as e:
        log.error("order_completion_failed", order_id=order_id, user_id=user_id, reason=str(e))
        if not isinstance(e, InvalidOrderTransitionError):
            await _fail(tracker, order_id, str(e), {"error": "COMPLETION_FAILED"})
        # The sweep may have resolved the order meanwhile; its final status decides.
        order = await tracker.get_order_by_id(order_id)
        if order.status == OrderStatus.COMPLETED:
            log.info("order_completed_by_reconcile", order_id=order_id)
            return order
        if order.status == OrderStatus.FAILED:
            await ledger.refund_order(order, f"Refund: order {order_id} could not be completed")
        # Still pending: charged, so the sweep completes it.
        raise


async def _fail(tracker: OrderTracker, order_id: str, message: str, output: dict[str, Any]) -> None:
    try:
        await tracker.update_order_status(order_id, OrderStatus.FAILED, output, message)
    except AppError as e:
        # Left pending; the reconciliation sweep resolves it.
        log.warning("order_fail_mark_failed", order_id=order_id, reason=e.message)
    log.info("spend_failed", order_id=order_id, reason=message)


async def reconcile_stale_orders(
    tracker: OrderTracker,
    ledger: WalletLedger,
    older_than_minutes: int,
    limit: int = 200,
) -> dict[str, int]:
    """
    Resolve orders stuck in pending (crash between creation and status update).
    A recorded debit means the charge happened: completed. No debit: failed.
    """
    cutoff = tracker.clock() - timedelta(minutes=older_than_minutes)
    stale = await tracker.find_stale_pending(cutoff, limit=limit)
    completed = failed = 0
    for order in stale:
        order_id = str(order.id)
        debit = await ledger.get_debit_for_order(order_id)
        try:
            if debit is not None:
                await tracker.update_order_status(
                    order_id,
                    OrderStatus.COMPLETED,
                    {"resultCode": "RECONCILED", "balance_after": debit.balance_after},
                )
                completed += 1
            else:
                await tracker.update_order_status(order_id, OrderStatus.FAILED, None, EXPIRED_MESSAGE)
                failed += 1
        except (InvalidOrderTransitionError, NotFoundError) as e:
            # Resolved concurrently by its caller.
            log.info("reconcile_skipped", order_id=order_id, reason=e.message)
    result = {"scanned": len(stale), "completed": completed, "failed": failed}
    if stale:
        log.info("orders_reconciled", **result)
        await log_event(None, "orders_reconciled", "order", None, result)
    return result

