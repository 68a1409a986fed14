"""Shared FastAPI dependencies."""

from fastapi import Request

from creditcore.core.exceptions import ForbiddenError, NotFoundError, UnauthorizedError
from creditcore.core.logging import bind_user_id
from creditcore.core.security import Identity, load_session_cookie
from creditcore.models.wallet import Wallet
from creditcore.services.orders import OrderTracker
from creditcore.services.wallets import WalletLedger

SESSION_COOKIE_NAME = "creditcore_session"


def get_ledger(request: Request) -> WalletLedger:
    return request.app.state.ledger


def get_tracker(request: Request) -> OrderTracker:
    return request.app.state.tracker


async def get_identity(request: Request) -> Identity:
    """Dependency: identity from the provider-issued session cookie."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    identity = load_session_cookie(cookie)
    if identity is None:
        raise UnauthorizedError("Invalid or expired session")
    bind_user_id(identity.uid)
    return identity


async def require_verified(request: Request) -> Identity:
    """Dependency: spending requires a verified email."""
    identity = await get_identity(request)
    if not identity.email_verified:
        raise ForbiddenError("Email not verified")
    return identity


async def require_admin(request: Request) -> Wallet:
    """Dependency: current user's wallet must carry the admin flag."""
    identity = await get_identity(request)
    try:
        wallet = await get_ledger(request).get_profile(identity.uid)
    except NotFoundError:
        raise ForbiddenError("Admin only")
    if not wallet.is_admin:
        raise ForbiddenError("Admin only")
    return wallet
