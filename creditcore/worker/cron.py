"""Cron: reconcile orders stuck in pending."""

from typing import Any

from creditcore.core.config import get_settings
from creditcore.core.logging import get_logger
from creditcore.services.spend import reconcile_stale_orders

log = get_logger(__name__)


async def run_reconcile_pending_orders(ctx: dict[str, Any]) -> dict[str, int]:
    """Orders pending past the timeout: completed if charged, else failed."""
    timeout = get_settings().pending_order_timeout_minutes
    result = await reconcile_stale_orders(ctx["tracker"], ctx["ledger"], timeout)
    log.info("reconcile_pending_orders", timeout_minutes=timeout, **result)
    return result
