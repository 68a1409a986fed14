import time
import uuid
from typing import Any

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from creditcore.core.config import get_settings
from creditcore.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from creditcore.core.logging import bind_request_id, clear_request_context, configure_logging, get_logger
from creditcore.db.init import init_db
from creditcore.routers import admin, orders, wallet
from creditcore.services.balance_feed import BalanceHub, ChangeStreamRelay
from creditcore.services.orders import OrderTracker
from creditcore.services.wallets import WalletLedger

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)


def create_app(mongo_client: Any = None) -> FastAPI:
    """Build the API. `mongo_client` overrides the MONGODB_URI client (tests)."""
    app = FastAPI(
        title="creditcore API",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request, call_next):
        clear_request_context()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_request_id(request_id)
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        log.info(
            "request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(AppError, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Routers
    app.include_router(wallet.router, prefix="/v1/wallet", tags=["wallet"])
    app.include_router(orders.router, prefix="/v1/orders", tags=["orders"])
    app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])

    hub = BalanceHub()
    app.state.hub = hub
    app.state.ledger = WalletLedger(hub=hub, settings=settings)
    app.state.tracker = OrderTracker()
    app.state.relay = ChangeStreamRelay(hub) if settings.balance_change_stream else None

    @app.on_event("startup")
    async def startup():
        if settings.sentry_dsn:
            import sentry_sdk
            sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
            log.info("startup", msg="Sentry enabled")
        await init_db(mongo_client)
        log.info("startup", msg="DB connected")
        if app.state.relay is not None:
            app.state.relay.start()

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.relay is not None:
            await app.state.relay.stop()

    @app.get("/health")
    async def health():
        """Health check for load balancers and monitoring."""
        return {"status": "ok"}

    return app


app = create_app()
