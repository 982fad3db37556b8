"""Typed domain events decoded from processor webhook payloads."""

from typing import Union

from pydantic import BaseModel, ConfigDict, Field


class ProcessorEvent(BaseModel):
    """Fields common to every payment event the engine handles."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., description="Processor event ID")
    processor_intent_id: str | None = Field(
        default=None, description="Processor PaymentIntent ID (pi_xxx)"
    )
    amount: int | None = Field(default=None, description="Amount in minor units")
    currency: str | None = Field(default=None, description="Lowercase currency code")
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def local_intent_id(self) -> str | None:
        """Local intent ID carried in metadata, if the intent was created here."""
        return self.metadata.get("payment_intent_id")

    @property
    def deal_id(self) -> str | None:
        return self.metadata.get("deal_id") or self.metadata.get("dealId")

    @property
    def milestone_id(self) -> str | None:
        return self.metadata.get("milestone_id") or self.metadata.get("milestoneId")


class PaymentProcessing(ProcessorEvent):
    """payment_intent.processing"""


class PaymentSucceeded(ProcessorEvent):
    """payment_intent.succeeded"""


class PaymentFailed(ProcessorEvent):
    """payment_intent.payment_failed"""

    decline_reason: str | None = None
    decline_code: str | None = None


class RefundLine(BaseModel):
    """A single refund carried by a charge.refunded event."""

    model_config = ConfigDict(frozen=True)

    refund_id: str
    amount: int = Field(..., gt=0)
    reason: str | None = None


class ChargeRefunded(ProcessorEvent):
    """charge.refunded

    ``amount_refunded_total`` is the processor's cumulative refunded amount for
    the charge. ``refunds`` lists individual refunds when the payload
    includes them, and is None otherwise.
    """

    charge_id: str | None = None
    amount_refunded_total: int = Field(default=0, ge=0)
    refunds: list[RefundLine] | None = None


DomainEvent = Union[PaymentProcessing, PaymentSucceeded, PaymentFailed, ChargeRefunded]
