"""Payment endpoints.

Provides REST endpoints for:
- Creating payment intents for deals (idempotent per pending charge)
- Getting payment intent status
- Requesting refunds
- Receiving processor webhook events

The webhook endpoint does not require authentication; deliveries are
verified with the endpoint's signing secret instead.
"""

import asyncio

from fastapi import APIRouter, Depends, Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.status import (
    HTTP_200_OK,
    HTTP_202_ACCEPTED,
    HTTP_404_NOT_FOUND,
)

from payrecon.config import Settings
from payrecon.models.enums import EventOutcome
from payrecon.models.errors import ErrorCode, ErrorResponse
from payrecon.models.webhook_event import ProcessingResult, WebhookResult
from payrecon.services.dispatcher import EventDispatcher
from payrecon.services.payment_intents import PaymentIntentService
from payrecon.services.webhook_handler import WebhookHandler
from payrecon.utils.logging import get_logger
from payrecon_api.dependencies import (
    get_app_settings,
    get_event_dispatcher,
    get_payment_intent_service,
    get_webhook_handler,
)
from payrecon_api.models.payments import (
    CreateIntentRequest,
    PaymentIntentResponse,
    PaymentStatusResponse,
    RefundRequest,
    WebhookResponse,
)

logger = get_logger(__name__)

router = APIRouter(tags=["payments"])

SIGNATURE_HEADER = "stripe-signature"

# Processing tasks that outlived their request; kept referenced until done
_background_tasks: set["asyncio.Future[ProcessingResult]"] = set()


def _on_task_done(task: "asyncio.Future[ProcessingResult]") -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Background webhook processing failed: %s", error)


@router.post(
    "/payments/create-intent",
    summary="Create payment intent",
    description="""
Create a payment intent for a deal, or return the live one.

Repeating the request for the same deal and amount while the first intent
is still Created or Pending returns that intent with `created: false`.
A failed intent is superseded by a fresh one.
""",
    response_model=PaymentIntentResponse,
    status_code=HTTP_200_OK,
    responses={
        402: {"description": "Payment provider error", "model": ErrorResponse},
        404: {"description": "Deal or milestone not found", "model": ErrorResponse},
        409: {"description": "Deal cancelled or already paid", "model": ErrorResponse},
        422: {"description": "Invalid amount"},
    },
)
def create_intent(
    body: CreateIntentRequest,
    intents: PaymentIntentService = Depends(get_payment_intent_service),
) -> PaymentIntentResponse:
    creation = intents.create_intent(
        body.deal_id, body.amount, body.currency, body.milestone_id
    )
    return PaymentIntentResponse.from_intent(creation.intent, creation.created)


@router.get(
    "/payments/status/{payment_intent_id}",
    summary="Get payment intent status",
    response_model=PaymentStatusResponse,
    responses={404: {"description": "Payment intent not found", "model": ErrorResponse}},
)
def get_payment_status(
    payment_intent_id: str,
    intents: PaymentIntentService = Depends(get_payment_intent_service),
) -> PaymentStatusResponse:
    return PaymentStatusResponse.from_intent(intents.get_intent(payment_intent_id))


@router.post(
    "/payments/refund",
    summary="Refund a payment",
    description="""
Refund part or all of a captured payment.

A refund that would take the refunded total above the amount paid is
rejected, never clamped.
""",
    response_model=PaymentStatusResponse,
    responses={
        402: {"description": "Payment provider error", "model": ErrorResponse},
        404: {"description": "Payment intent not found", "model": ErrorResponse},
        409: {"description": "Refund exceeds balance or payment not refundable", "model": ErrorResponse},
    },
)
def refund_payment(
    body: RefundRequest,
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
    intents: PaymentIntentService = Depends(get_payment_intent_service),
) -> PaymentStatusResponse:
    dispatcher.request_refund(body.payment_intent_id, body.amount, body.reason)
    return PaymentStatusResponse.from_intent(intents.get_intent(body.payment_intent_id))


@router.post(
    "/payments/webhook",
    summary="Receive processor webhook events",
    description="""
Endpoint for processor webhook events. Handles:
- payment_intent.processing, payment_intent.succeeded,
  payment_intent.payment_failed: advance the payment intent and its deal
- charge.refunded: records each refund once and updates the deal

**No authentication required**: the `stripe-signature` header is verified
against the webhook signing secret.

**Idempotent**: a repeated event ID returns 200 with `duplicate`.

When processing does not finish within the processing budget the endpoint
answers 202 `accepted`; the event is durably queued and completes in the
background or on the next recovery sweep.
""",
    response_model=WebhookResponse,
    responses={
        200: {"description": "Event received and settled", "model": WebhookResponse},
        202: {"description": "Event recorded, processing continues", "model": WebhookResponse},
        400: {"description": "Invalid signature or malformed event", "model": ErrorResponse},
        404: {"description": "Payment intent could not be resolved", "model": WebhookResponse},
    },
)
async def handle_webhook(
    request: Request,
    response: Response,
    handler: WebhookHandler = Depends(get_webhook_handler),
    settings: Settings = Depends(get_app_settings),
) -> WebhookResponse:
    """Verify and record a delivery, then process it within the budget."""
    payload = await request.body()
    delivery = await run_in_threadpool(
        handler.accept, payload, request.headers.get(SIGNATURE_HEADER)
    )
    if not delivery.is_new:
        return WebhookResponse.from_result(WebhookResult(delivery=delivery))

    task = asyncio.ensure_future(run_in_threadpool(handler.process, delivery.event_id))
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)

    accepted = WebhookResponse(
        event_id=delivery.event_id,
        event_type=delivery.event_type,
        processing_result="accepted",
        message="Event recorded, processing continues in the background",
    )
    try:
        result = await asyncio.wait_for(
            asyncio.shield(task), timeout=settings.processing_budget_seconds
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Processing of %s exceeded %.1fs budget, answering 202",
            delivery.event_id,
            settings.processing_budget_seconds,
        )
        response.status_code = HTTP_202_ACCEPTED
        return accepted
    except Exception:
        logger.exception("Processing of %s failed after it was recorded", delivery.event_id)
        response.status_code = HTTP_202_ACCEPTED
        return accepted

    if result.outcome is None:
        response.status_code = HTTP_202_ACCEPTED
        return accepted.model_copy(update={"message": result.reason})
    if (
        result.outcome == EventOutcome.REJECTED
        and result.error_code == ErrorCode.PAYMENT_INTENT_NOT_FOUND
    ):
        response.status_code = HTTP_404_NOT_FOUND
    return WebhookResponse.from_result(WebhookResult(delivery=delivery, result=result))
