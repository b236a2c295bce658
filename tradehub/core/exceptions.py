from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
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


class DuplicateApplicationError(AppError):
    def __init__(self, message: str = "You have already applied for this job"):
        super().__init__(message, code="DUPLICATE_APPLICATION", status_code=status.HTTP_400_BAD_REQUEST)


class JobClosedError(AppError):
    def __init__(self, message: str = "This job is no longer accepting applications"):
        super().__init__(message, code="JOB_CLOSED", status_code=status.HTTP_400_BAD_REQUEST)


class InsufficientCreditsError(AppError):
    """Recoverable by purchasing credits; carries the shortfall for the client."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits (need {required})",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"required": required, "available": available},
        )


class VerificationRequiredError(AppError):
    def __init__(
        self,
        message: str = "Your account has not been verified yet. Please wait for admin verification.",
    ):
        super().__init__(
            message,
            code="VERIFICATION_REQUIRED",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"verificationRequired": True},
        )


class ExternalServiceError(AppError):
    def __init__(self, message: str = "Payment processing error", details: dict[str, Any] | None = None):
        super().__init__(message, code="EXTERNAL_SERVICE_ERROR", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


def error_response(
    request: Request,
    status_code: int,
    message: str,
    code: str,
    details: dict[str, Any] | None = None,
) -> ORJSONResponse:
    """Single error envelope for every failure the API reports."""
    body: dict[str, Any] = {"error": {"message": message, "code": code, "details": details or {}}}
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        body["request_id"] = request_id
    return ORJSONResponse(status_code=status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    if exc.status_code >= 500:
        from tradehub.core.logging import get_logger
        get_logger(__name__).warning("upstream_error", code=exc.code, message=exc.message)
    return error_response(request, exc.status_code, exc.message, exc.code, exc.details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    return error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "VALIDATION_ERROR",
        {"errors": jsonable_encoder(exc.errors())},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from tradehub.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", "INTERNAL_ERROR")
