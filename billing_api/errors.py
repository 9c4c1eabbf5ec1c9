"""
Kernel exception -> HTTP response mapping.

Responsibility:
    Turns typed ``BillingKernelError`` subclasses into JSON error bodies of
    the form ``{"error": {"code", "message", ...}}`` with the status code of
    their family.  Messages are passed through verbatim, so a percentage
    rejection reaches the user exactly as the validator worded it.

Architecture position:
    API layer.  Registered on the application by ``create_app``.

Invariants enforced:
    - Raw database errors never reach a caller; an unexpected exception is
      logged with its traceback and answered with a generic 500 body.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from billing_kernel.exceptions import (
    BillingConflictError,
    BillingKernelError,
    BillingPercentageExceededError,
    BillingStateError,
    BillingValidationError,
    EntityNotFoundError,
    InvalidWebhookPayloadError,
    ReconciliationRetryableError,
    StoreUnavailableError,
    WebhookSignatureError,
)
from billing_kernel.logging_config import get_logger

logger = get_logger("api.errors")

# Most specific first
STATUS_BY_FAMILY: tuple[tuple[type[BillingKernelError], int], ...] = (
    (ReconciliationRetryableError, 503),
    (StoreUnavailableError, 503),
    (WebhookSignatureError, 400),
    (InvalidWebhookPayloadError, 400),
    (BillingValidationError, 400),
    (BillingStateError, 400),
    (EntityNotFoundError, 404),
    (BillingConflictError, 409),
)


def status_for(exc: BillingKernelError) -> int:
    for family, status in STATUS_BY_FAMILY:
        if isinstance(exc, family):
            return status
    return 500


def error_body(code: str, message: str, **details: Any) -> dict[str, Any]:
    return {"error": {"code": code, "message": message, **details}}


def _details(exc: BillingKernelError) -> dict[str, Any]:
    if isinstance(exc, BillingPercentageExceededError):
        return {
            "current_total": str(exc.current_total),
            "remaining": str(exc.remaining),
            "max_allowed": str(exc.max_allowed),
        }
    return {}


async def billing_error_handler(request: Request, exc: BillingKernelError) -> JSONResponse:
    status = status_for(exc)
    log = logger.error if status >= 500 else logger.info
    log(
        "request_failed",
        extra={
            "path": request.url.path,
            "method": request.method,
            "status_code": status,
            "error_code": exc.code,
        },
    )
    return JSONResponse(
        status_code=status,
        content=error_body(exc.code, exc.message, **_details(exc)),
    )


async def request_validation_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body("REQUEST_INVALID", "Request body or parameters are invalid", errors=errors),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "request_unhandled_exception",
        extra={"path": request.url.path, "method": request.method},
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL_ERROR", "An unexpected error occurred"),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingKernelError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
