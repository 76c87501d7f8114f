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


class ValidationError(AppError):
    """Malformed or out-of-range input."""

    def __init__(self, message: str = "Invalid input", details: dict[str, Any] | None = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class AuthorizationError(AppError):
    """Caller is not the party (or role) the operation requires."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None, code: str = "CONFLICT"):
        super().__init__(message, code=code, status_code=status.HTTP_409_CONFLICT, details=details)


class StateConflictError(ConflictError):
    """Operation is not valid for the entity's current status."""

    def __init__(self, message: str, current_status: str | None = None, details: dict[str, Any] | None = None):
        details = dict(details or {})
        if current_status is not None:
            details["current_status"] = current_status
        super().__init__(message, details=details, code="STATE_CONFLICT")


class ExpiredChallengeError(AppError):
    def __init__(self, message: str = "OTP has expired"):
        super().__init__(message, code="OTP_EXPIRED", status_code=status.HTTP_400_BAD_REQUEST)


class InvalidChallengeError(AppError):
    def __init__(self, message: str = "Invalid OTP"):
        super().__init__(message, code="OTP_INVALID", status_code=status.HTTP_400_BAD_REQUEST)


class InsufficientFundsError(AppError):
    def __init__(self, balance: int, required: int, message: str = "Insufficient balance"):
        self.balance = balance
        self.required = required
        super().__init__(
            message,
            code="INSUFFICIENT_FUNDS",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"balance": balance, "required": required},
        )


class RateLimitedError(AppError):
    def __init__(self, message: str = "Too many requests"):
        super().__init__(message, code="RATE_LIMITED", status_code=status.HTTP_429_TOO_MANY_REQUESTS)


def _envelope(request: Request, status_code: int, message: str, code: str, details: dict[str, Any]) -> ORJSONResponse:
    body: dict[str, Any] = {"error": {"message": message, "code": code, "details": details}}
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        body["request_id"] = request_id
    return ORJSONResponse(status_code=status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return _envelope(request, exc.status_code, exc.message, exc.code, exc.details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    # ctx may carry exception instances that orjson cannot encode
    errors = [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]
    return _envelope(request, 422, "Validation error", "VALIDATION_ERROR", {"errors": errors})


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from marketplace.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", path=request.url.path, exc_info=exc)
    return _envelope(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", "INTERNAL_ERROR", {})
