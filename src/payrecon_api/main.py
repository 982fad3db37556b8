"""FastAPI application for the payment reconciliation API.

This package provides REST endpoints for:
- Health checks
- Payment intents, refunds and processor webhooks
- Marketer deal reads and updates
- Earnings analytics

Two Lambda entry points are exposed: ``handler`` for API Gateway and
``sweep_handler`` for the scheduled recovery sweep.
"""

import os
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from payrecon.utils.logging import configure_logging, get_logger, set_correlation_id
from payrecon_api.dependencies import get_webhook_handler
from payrecon_api.exceptions import register_exception_handlers
from payrecon_api.middleware.correlation import CorrelationIdMiddleware
from payrecon_api.routes.deals import router as deals_router
from payrecon_api.routes.earnings import router as earnings_router
from payrecon_api.routes.payments import router as payments_router

configure_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = get_logger(__name__)

DEFAULT_SWEEP_LIMIT = 25

app = FastAPI(
    title="Payment Reconciliation API",
    description="Payment intents, processor webhooks and deal reconciliation",
    version="0.1.0",
)

# Configure CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

# Include routers under /api prefix
app.include_router(payments_router, prefix="/api")
app.include_router(deals_router, prefix="/api")
app.include_router(earnings_router, prefix="/api")


@app.get("/api/ping")
async def ping() -> dict[str, Any]:
    """Health check endpoint at /api/ping."""
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": "payrecon-api",
    }


# Lambda handler - Mangum wraps FastAPI for AWS Lambda + API Gateway
handler = Mangum(app, lifespan="off")


def sweep_handler(event: dict[str, Any] | None, context: Any) -> dict[str, Any]:
    """Scheduled Lambda entry point that re-drives due webhook events.

    Args:
        event: Scheduler payload; an optional ``limit`` caps the batch
        context: Lambda context (unused)

    Returns:
        Summary of the sweep, with one outcome per processed event
    """
    limit = int((event or {}).get("limit", DEFAULT_SWEEP_LIMIT))
    set_correlation_id(f"sweep-{datetime.now(UTC).strftime('%Y%m%dT%H%M%S')}")
    results = get_webhook_handler().sweep(limit)
    return {
        "processed": len(results),
        "outcomes": {
            r.event_id: r.outcome.value if r.outcome else "retry" for r in results
        },
    }


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = True) -> None:
    """Run the FastAPI server.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to listen on (default: 8080)
        reload: Enable hot reload for development (default: True)
    """
    import uvicorn

    if reload:
        # Use string reference for reload mode (uvicorn requirement)
        uvicorn.run("payrecon_api.main:app", host=host, port=port, reload=True, reload_dirs=["src"])
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
