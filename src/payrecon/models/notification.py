"""Messages handed to the notification channel."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PaymentNotification(BaseModel):
    """A payment or deal reached a state that users should hear about."""

    model_config = ConfigDict(strict=True, frozen=True)

    deal_id: str = Field(..., description="Deal the notification concerns")
    event_type: str = Field(
        ...,
        description="Notification type",
        examples=["payment.succeeded", "deal.paid_then_cancelled"],
    )
    payment_intent_id: str | None = Field(default=None)
    occurred_at: datetime = Field(..., description="When the state was reached")
