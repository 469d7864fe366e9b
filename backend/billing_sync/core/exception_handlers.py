"""
FastAPI exception handlers.

WHY: Every error leaving the API has the same shape,
{error, message, status_code, details}, so the marketplace frontend can show
one kind of error toast whether a plan change hit a missing subscription,
a bad request body or an unreachable payment provider.
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_sync.core.exceptions import AppException, PaymentProviderError

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying after a provider outage
PROVIDER_RETRY_AFTER_SECONDS = 5


def _error_body(error: str, message: str, status_code: int, details=None) -> dict:
    return {
        "error": error,
        "message": message,
        "status_code": status_code,
        "details": details,
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle AppException and its subclasses.

    Provider failures are logged with their (already filtered) details and,
    when retryable, answered with a Retry-After header.
    """
    headers = None
    if isinstance(exc, PaymentProviderError):
        logger.warning(
            f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}",
            extra={"details": exc.to_dict()["details"]},
        )
        if exc.retryable:
            headers = {"Retry-After": str(PROVIDER_RETRY_AFTER_SECONDS)}
    elif exc.status_code >= 500:
        logger.error(
            f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}"
        )

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle request body/query validation errors as 400.

    Field paths are reported as dotted locations with the camelCase names
    the client sent (e.g. "body.oldSubscriptionId").
    """
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=_error_body("ValidationError", "Request validation failed", 400, {"errors": errors}),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes and wrong methods, in the same error shape."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body("HTTPException", exc.detail, exc.status_code),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    WHY: The traceback goes to the log, never to the client (OWASP A04).
    """
    # Runs outside the middleware stack; the context survives on request.state
    context = getattr(request.state, "context", None)
    logger.exception(
        f"Unhandled error on {request.method} {request.url.path}",
        exc_info=exc,
        extra={"request_id": context.request_id if context else None},
    )

    return JSONResponse(
        status_code=500,
        content=_error_body("InternalServerError", "An unexpected error occurred", 500),
    )
