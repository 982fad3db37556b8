"""FastAPI exception handlers for converting ReconciliationError to HTTP responses.

The ErrorCode-to-HTTP status mapping:
- 400 Bad Request: unauthenticated or malformed webhook deliveries
- 402 Payment Required: processor failures
- 404 Not Found: unknown deals, milestones and payment intents
- 409 Conflict: state conflicts, including lost concurrency races
- 422 Unprocessable Entity: invalid amounts

Usage:
    from payrecon_api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_402_PAYMENT_REQUIRED,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from payrecon.models.errors import ErrorCode, ReconciliationError
from payrecon.utils.logging import get_logger

logger = get_logger(__name__)

ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode, int] = {
    # Delivery errors -> 400 Bad Request
    ErrorCode.SIGNATURE_INVALID: HTTP_400_BAD_REQUEST,
    ErrorCode.MALFORMED_EVENT: HTTP_400_BAD_REQUEST,
    # Not found -> 404
    ErrorCode.PAYMENT_INTENT_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.DEAL_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.MILESTONE_NOT_FOUND: HTTP_404_NOT_FOUND,
    # State conflicts -> 409
    ErrorCode.CONCURRENT_MODIFICATION: HTTP_409_CONFLICT,
    ErrorCode.DEAL_ALREADY_PAID: HTTP_409_CONFLICT,
    ErrorCode.DEAL_NOT_PAYABLE: HTTP_409_CONFLICT,
    ErrorCode.INVALID_DEAL_TRANSITION: HTTP_409_CONFLICT,
    ErrorCode.PARTIAL_REFUND_MISMATCH: HTTP_409_CONFLICT,
    ErrorCode.REFUND_NOT_ALLOWED: HTTP_409_CONFLICT,
    ErrorCode.OUT_OF_ORDER_EVENT: HTTP_409_CONFLICT,
    ErrorCode.AMOUNT_MISMATCH: HTTP_409_CONFLICT,
    # Processor failures -> 402
    ErrorCode.PAYMENT_PROVIDER_ERROR: HTTP_402_PAYMENT_REQUIRED,
    # Input validation -> 422
    ErrorCode.INVALID_AMOUNT: HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.MIXED_CURRENCIES: HTTP_422_UNPROCESSABLE_ENTITY,
}


def get_http_status_for_error(code: ErrorCode) -> int:
    """Get HTTP status code for an ErrorCode, defaulting to 400."""
    return ERROR_CODE_TO_HTTP_STATUS.get(code, HTTP_400_BAD_REQUEST)


async def reconciliation_error_handler(
    request: Request, exc: ReconciliationError
) -> JSONResponse:
    """Convert a ReconciliationError to a JSON error response.

    Args:
        request: The incoming request (unused but required by FastAPI)
        exc: The raised error

    Returns:
        JSONResponse with the ErrorResponse body and mapped status code.
    """
    status_code = get_http_status_for_error(exc.code)
    if status_code >= HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("Request failed with %s: %s", exc.code.value, exc.details)
    return JSONResponse(
        status_code=status_code,
        content=exc.to_error_response().model_dump(mode="json"),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with a generic 500 response.

    Internal details are logged, never returned to the client.
    """
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error_code": "ERR_INTERNAL",
            "message": "An unexpected error occurred",
            "recovery": "Please try again later or contact support",
            "details": None,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register the exception handlers with the FastAPI app."""
    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
