"""Payment intent and refund models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from payrecon.utils.dates import format_timestamp, parse_timestamp

from .enums import PaymentIntentStatus, PaymentProvider

# Statuses in which money has been captured for the intent
SETTLED_STATUSES = frozenset(
    {
        PaymentIntentStatus.SUCCEEDED,
        PaymentIntentStatus.PARTIALLY_REFUNDED,
        PaymentIntentStatus.FULLY_REFUNDED,
    }
)


class PaymentIntent(BaseModel):
    """Local record of a single attempted or completed charge.

    Amounts are integers in minor units. The record is mutated only through
    version-checked writes and is never deleted.
    """

    model_config = ConfigDict(strict=True)

    payment_intent_id: str = Field(
        ...,
        description="Deterministic local intent ID",
        examples=["pi_3f2a9c0e1b7d4a5c6e8f9a0b"],
    )
    deal_id: str = Field(..., description="Owning deal")
    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: str = Field(default="usd", description="ISO currency code, lowercase")
    status: PaymentIntentStatus = Field(..., description="Current lifecycle status")
    amount_refunded: int = Field(
        default=0, ge=0, description="Cumulative refunded amount in minor units"
    )
    unattributed_refunded: int = Field(
        default=0,
        ge=0,
        description="Part of amount_refunded recorded from processor totals without a refund ID",
    )
    version: int = Field(default=1, ge=1, description="Optimistic concurrency version")
    metadata: dict[str, str] = Field(
        default_factory=dict, description="Opaque key/value metadata"
    )
    milestone_id: str | None = Field(
        default=None, description="Milestone funded by this intent, if any"
    )
    attempt: int = Field(default=1, ge=1, description="Creation attempt number")
    provider: PaymentProvider = Field(
        default=PaymentProvider.MOCK, description="Payment provider"
    )
    processor_intent_id: str | None = Field(
        default=None,
        description="Processor-side PaymentIntent ID",
        examples=["pi_3ABC123DEF456"],
    )
    client_secret: str | None = Field(
        default=None, description="Processor client secret for confirming the charge"
    )
    decline_reason: str | None = Field(
        default=None, description="Decline reason from the last failed attempt"
    )
    decline_code: str | None = Field(default=None, description="Processor decline code")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
    succeeded_at: datetime | None = Field(default=None, description="Success timestamp")
    failed_at: datetime | None = Field(default=None, description="Failure timestamp")

    @property
    def remaining_refundable(self) -> int:
        """Amount that can still be refunded."""
        return self.amount - self.amount_refunded

    @property
    def is_settled(self) -> bool:
        """Whether money has been captured for this intent."""
        return self.status in SETTLED_STATUSES

    def to_item(self) -> dict[str, Any]:
        """Convert to a DynamoDB item, omitting empty optional attributes."""
        item: dict[str, Any] = {
            "payment_intent_id": self.payment_intent_id,
            "deal_id": self.deal_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "amount_refunded": self.amount_refunded,
            "unattributed_refunded": self.unattributed_refunded,
            "version": self.version,
            "metadata": dict(self.metadata),
            "attempt": self.attempt,
            "provider": self.provider.value,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
        optional = {
            "milestone_id": self.milestone_id,
            "processor_intent_id": self.processor_intent_id,
            "client_secret": self.client_secret,
            "decline_reason": self.decline_reason,
            "decline_code": self.decline_code,
            "succeeded_at": format_timestamp(self.succeeded_at),
            "failed_at": format_timestamp(self.failed_at),
        }
        item.update({k: v for k, v in optional.items() if v is not None})
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "PaymentIntent":
        """Build a PaymentIntent from a DynamoDB item."""
        return cls(
            payment_intent_id=item["payment_intent_id"],
            deal_id=item["deal_id"],
            amount=int(item["amount"]),
            currency=item.get("currency", "usd"),
            status=PaymentIntentStatus(item["status"]),
            amount_refunded=int(item.get("amount_refunded", 0)),
            unattributed_refunded=int(item.get("unattributed_refunded", 0)),
            version=int(item.get("version", 1)),
            metadata={str(k): str(v) for k, v in item.get("metadata", {}).items()},
            milestone_id=item.get("milestone_id"),
            attempt=int(item.get("attempt", 1)),
            provider=PaymentProvider(item.get("provider", PaymentProvider.MOCK.value)),
            processor_intent_id=item.get("processor_intent_id"),
            client_secret=item.get("client_secret"),
            decline_reason=item.get("decline_reason"),
            decline_code=item.get("decline_code"),
            created_at=parse_timestamp(item["created_at"]),
            updated_at=parse_timestamp(item.get("updated_at") or item["created_at"]),
            succeeded_at=parse_timestamp(item.get("succeeded_at")),
            failed_at=parse_timestamp(item.get("failed_at")),
        )


class IntentCreation(BaseModel):
    """Result of a create-intent request."""

    model_config = ConfigDict(strict=True)

    intent: PaymentIntent
    created: bool = Field(
        ..., description="False when an existing live intent was returned"
    )


class RefundRecord(BaseModel):
    """A refund applied against a payment intent. Append-only."""

    model_config = ConfigDict(strict=True)

    refund_id: str = Field(
        ...,
        description="Processor refund ID, or the event ID for cumulative refunds",
        examples=["re_3ABC123DEF456"],
    )
    payment_intent_id: str = Field(..., description="Refunded payment intent")
    deal_id: str = Field(..., description="Owning deal")
    amount_refunded: int = Field(..., gt=0, description="Refunded amount in minor units")
    currency: str = Field(default="usd", description="ISO currency code, lowercase")
    reason: str | None = Field(default=None, description="Refund reason")
    applied_at: datetime = Field(..., description="When the refund was applied")
    source_event_id: str | None = Field(
        default=None, description="Webhook event that carried the refund"
    )

    def to_item(self) -> dict[str, Any]:
        """Convert to a DynamoDB item."""
        item: dict[str, Any] = {
            "refund_id": self.refund_id,
            "payment_intent_id": self.payment_intent_id,
            "deal_id": self.deal_id,
            "amount_refunded": self.amount_refunded,
            "currency": self.currency,
            "applied_at": format_timestamp(self.applied_at),
        }
        if self.reason:
            item["reason"] = self.reason
        if self.source_event_id:
            item["source_event_id"] = self.source_event_id
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "RefundRecord":
        """Build a RefundRecord from a DynamoDB item."""
        return cls(
            refund_id=item["refund_id"],
            payment_intent_id=item["payment_intent_id"],
            deal_id=item["deal_id"],
            amount_refunded=int(item["amount_refunded"]),
            currency=item.get("currency", "usd"),
            reason=item.get("reason"),
            applied_at=parse_timestamp(item["applied_at"]),
            source_event_id=item.get("source_event_id"),
        )
