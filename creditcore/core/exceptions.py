from datetime import datetime
from enum import Enum
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class StorageUnavailableError(AppError):
    """Backing store unreachable. Transient; safe to retry after re-checking state."""

    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(
            message,
            code="STORAGE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class InvalidOrderTransitionError(ConflictError):
    def __init__(self, order_id: str, current: str, target: str):
        super().__init__(
            f"Order {order_id} is already {current}",
            details={"order_id": order_id, "status": current, "requested": target},
        )


class DeductionErrorKind(str, Enum):
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    DAILY_LIMIT = "DAILY_LIMIT"
    COOLDOWN = "COOLDOWN"


class DeductionError(AppError):
    """
    A deduction refused by the ledger. Callers branch on `kind`;
    `details` carries the structured context (limits, reset times).
    The wallet is unchanged when this is raised.
    """

    def __init__(
        self,
        kind: DeductionErrorKind,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ):
        self.kind = kind
        super().__init__(message, code=kind.value, status_code=status_code, details=details)


class InsufficientFundsError(DeductionError):
    def __init__(self, balance: int, required: int):
        self.balance = balance
        self.required = required
        super().__init__(
            DeductionErrorKind.INSUFFICIENT_FUNDS,
            "Insufficient points",
            status.HTTP_402_PAYMENT_REQUIRED,
            {"balance": balance, "required": required},
        )


class DailyLimitError(DeductionError):
    def __init__(self, limit: int, used: int, resets_at: datetime):
        self.limit = limit
        self.used = used
        self.resets_at = resets_at
        super().__init__(
            DeductionErrorKind.DAILY_LIMIT,
            f"Daily limit of {limit} generations reached",
            status.HTTP_429_TOO_MANY_REQUESTS,
            {"limit": limit, "used": used, "resets_at": resets_at.isoformat()},
        )


class CooldownError(DeductionError):
    def __init__(self, cooldown_minutes: int, retry_at: datetime):
        self.cooldown_minutes = cooldown_minutes
        self.retry_at = retry_at
        super().__init__(
            DeductionErrorKind.COOLDOWN,
            f"Please wait {cooldown_minutes} min between generations",
            status.HTTP_429_TOO_MANY_REQUESTS,
            {"cooldown_minutes": cooldown_minutes, "retry_at": retry_at.isoformat()},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from creditcore.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
