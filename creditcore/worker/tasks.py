"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from creditcore.core.config import get_settings
from creditcore.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from creditcore.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def reconcile_pending_orders(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: resolve orders left pending longer than PENDING_ORDER_TIMEOUT_MINUTES."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from creditcore.worker.cron import run_reconcile_pending_orders
    return await _run_with_dlq("reconcile_pending_orders", job_id, [], {}, run_reconcile_pending_orders(ctx))


async def startup(ctx: dict) -> None:
    from creditcore.db.init import init_db
    from creditcore.services.orders import OrderTracker
    from creditcore.services.wallets import WalletLedger
    await init_db(ctx.get("mongo_client"))
    ctx["tracker"] = OrderTracker()
    ctx["ledger"] = WalletLedger()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
