"""API models for payment endpoints."""

from pydantic import BaseModel, ConfigDict, Field

from payrecon.models.enums import PaymentIntentStatus
from payrecon.models.payment_intent import PaymentIntent
from payrecon.models.webhook_event import WebhookResult

from .common import ApiModel


class CreateIntentRequest(ApiModel):
    """Request to create (or fetch the live) payment intent for a deal."""

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"amount": 30000, "dealId": "deal-1", "currency": "usd"}]
        },
    )

    amount: int = Field(..., gt=0, description="Amount in minor units", examples=[30000])
    deal_id: str = Field(..., min_length=1, description="Deal being paid")
    currency: str | None = Field(
        default=None, min_length=3, max_length=3, description="ISO currency code"
    )
    milestone_id: str | None = Field(default=None, description="Milestone being funded")


class PaymentIntentResponse(ApiModel):
    """Payment intent returned by create-intent."""

    payment_intent_id: str
    status: PaymentIntentStatus
    amount: int
    currency: str
    deal_id: str
    client_secret: str | None = None
    created: bool = Field(..., description="False when an existing live intent was returned")

    @classmethod
    def from_intent(cls, intent: PaymentIntent, created: bool) -> "PaymentIntentResponse":
        return cls(
            payment_intent_id=intent.payment_intent_id,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
            deal_id=intent.deal_id,
            client_secret=intent.client_secret,
            created=created,
        )


class PaymentStatusResponse(ApiModel):
    """Current status of a payment intent."""

    payment_intent_id: str
    status: PaymentIntentStatus
    amount: int
    amount_refunded: int
    currency: str
    deal_id: str
    milestone_id: str | None = None
    decline_reason: str | None = None

    @classmethod
    def from_intent(cls, intent: PaymentIntent) -> "PaymentStatusResponse":
        return cls(
            payment_intent_id=intent.payment_intent_id,
            status=intent.status,
            amount=intent.amount,
            amount_refunded=intent.amount_refunded,
            currency=intent.currency,
            deal_id=intent.deal_id,
            milestone_id=intent.milestone_id,
            decline_reason=intent.decline_reason,
        )


class RefundRequest(ApiModel):
    """Request to refund part or all of a captured payment."""

    payment_intent_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, description="Refund amount in minor units")
    reason: str | None = Field(default=None, max_length=500)


class WebhookResponse(BaseModel):
    """Acknowledgement of a webhook delivery (snake_case, processor-facing)."""

    received: bool = True
    event_id: str | None = None
    event_type: str | None = None
    processing_result: str = Field(
        ...,
        description="applied, duplicate, skipped, rejected, deferred, dead_letter or accepted",
    )
    message: str | None = None
    error_code: str | None = None

    @classmethod
    def from_result(cls, handled: WebhookResult) -> "WebhookResponse":
        outcome = handled.outcome
        result = handled.result
        return cls(
            event_id=handled.delivery.event_id,
            event_type=handled.delivery.event_type,
            processing_result=outcome.value if outcome else "accepted",
            message=result.reason if result else "Event already received",
            error_code=result.error_code.value if result and result.error_code else None,
        )

