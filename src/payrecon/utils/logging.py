"""Logging with a per-request correlation ID.

The correlation ID lives in a context variable, so it follows a request
through async handlers and the threadpool calls they make. Every record
logged through ``get_logger`` carries it, and ``configure_logging`` prints
it in front of each line.

Usage:
    from payrecon.utils.logging import get_logger, set_correlation_id

    set_correlation_id(request.headers.get("X-Correlation-ID"))
    logger = get_logger(__name__)
    logger.info("Applying refund", extra={"payment_intent_id": "pi_123"})
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
NO_CORRELATION_ID = "no-correlation-id"

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Webhook outcomes that deserve attention in the logs
_OUTCOME_LEVELS: dict[str, int] = {
    "error": logging.ERROR,
    "rejected": logging.ERROR,
    "dead_letter": logging.ERROR,
    "duplicate": logging.WARNING,
    "skipped": logging.WARNING,
    "deferred": logging.WARNING,
}


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation ID to the current context.

    Args:
        correlation_id: ID received from the caller; a new one is generated
            when missing

    Returns:
        The ID now in effect
    """
    cid = correlation_id or generate_correlation_id()
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Stamps each record with the active correlation ID."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
        return True


class StructuredFormatter(logging.Formatter):
    """Prefixes every line with ``[correlation_id]``."""

    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None) or get_correlation_id() or NO_CORRELATION_ID
        return f"[{cid}] {super().format(record)}"


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())
    return logger


def configure_logging(level: str | int = logging.INFO) -> None:
    """Set the root level and install one structured stream handler.

    Calling it again only changes the level.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if any(isinstance(h.formatter, StructuredFormatter) for h in root.handlers):
        return
    stream = logging.StreamHandler()
    stream.setFormatter(StructuredFormatter(LOG_FORMAT))
    stream.addFilter(CorrelationIdFilter())
    root.addHandler(stream)


def _log_with_context(
    logger: logging.Logger, level: int, headline: str, fields: dict[str, Any]
) -> None:
    context = {key: value for key, value in fields.items() if value is not None}
    message = " | ".join([headline, *(f"{key}={value}" for key, value in context.items())])
    logger.log(level, message, extra=context)


def log_payment_operation(
    logger: logging.Logger,
    operation: str,
    *,
    payment_intent_id: str | None = None,
    deal_id: str | None = None,
    amount: int | None = None,
    status: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a payment intent operation as one line with key=value context.

    Args:
        logger: Logger to write to
        operation: Operation name, e.g. ``create_intent``
        payment_intent_id: Local intent ID
        deal_id: Owning deal
        amount: Amount in minor units
        status: Intent status after the operation
        error: Failure description; logs at ERROR when set
        **extra: Further context fields
    """
    _log_with_context(
        logger,
        logging.ERROR if error else logging.INFO,
        f"Payment operation: {operation}",
        {
            "payment_intent_id": payment_intent_id,
            "deal_id": deal_id,
            "amount": amount,
            "status": status,
            "error": error,
            **extra,
        },
    )


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    *,
    payment_intent_id: str | None = None,
    deal_id: str | None = None,
    result: str | None = None,
    reason: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log the handling of one webhook delivery.

    The level follows the outcome: rejections, dead letters and errors at
    ERROR; duplicates, skips and deferrals at WARNING; the rest at INFO.
    """
    _log_with_context(
        logger,
        _OUTCOME_LEVELS.get(result or "", logging.INFO),
        f"Webhook event: {event_type} ({event_id})",
        {
            "result": result,
            "payment_intent_id": payment_intent_id,
            "deal_id": deal_id,
            "reason": reason,
            "error": error,
            **extra,
        },
    )
