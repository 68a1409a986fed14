import functools
from typing import Any, Awaitable, Callable, TypeVar

import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConnectionFailure, ExecutionTimeout

from creditcore.core.config import get_settings
from creditcore.core.exceptions import StorageUnavailableError
from creditcore.core.logging import get_logger
from creditcore.models.audit_log import AuditLog
from creditcore.models.failed_job import FailedJob
from creditcore.models.order import Order
from creditcore.models.wallet import Wallet
from creditcore.models.wallet_transaction import WalletTransaction

log = get_logger(__name__)

DOCUMENT_MODELS = [
    Wallet,
    WalletTransaction,
    Order,
    AuditLog,
    FailedJob,
]

T = TypeVar("T")


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def create_client() -> AsyncIOMotorClient:
    settings = get_settings()
    # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    return AsyncIOMotorClient(settings.mongodb_uri, **kwargs)


async def init_db(client: Any = None) -> Any:
    """
    Bind document models to the given client's database.
    The client is injected (tests pass an in-memory one); defaults to MONGODB_URI.
    """
    settings = get_settings()
    if client is None:
        client = create_client()
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client


def storage_guard(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Translate driver connectivity failures into StorageUnavailableError."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await fn(*args, **kwargs)
        except (ConnectionFailure, ExecutionTimeout) as e:
            log.warning("storage_unavailable", op=fn.__qualname__, reason=str(e))
            raise StorageUnavailableError(f"Storage unavailable: {e}") from e

    return wrapper
