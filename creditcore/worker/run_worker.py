"""Run ARQ worker. Usage: python -m creditcore.worker.run_worker (or `arq creditcore.worker.run_worker.WorkerSettings`)"""

from arq import run_worker
from arq.cron import cron

from creditcore.core.config import get_settings
from creditcore.core.logging import configure_logging
from creditcore.worker.tasks import get_redis_settings, reconcile_pending_orders, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [reconcile_pending_orders]
    cron_jobs = [
        cron(reconcile_pending_orders, minute=set(range(0, 60, 5)), second=0),  # every 5 minutes
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    configure_logging(debug=get_settings().debug)
    run_worker(WorkerSettings)
