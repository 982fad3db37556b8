"""Webhook event models for idempotency, auditing and re-drive."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from payrecon.utils.dates import format_timestamp, parse_timestamp

from .enums import EventOutcome
from .errors import ErrorCode


class EventData(BaseModel):
    """The ``data`` member of a processor event."""

    object: dict[str, Any]


class StripeEventEnvelope(BaseModel):
    """Minimal processor event envelope: ``{id, type, data: {object: {...}}}``.

    Only the members needed to route an event are validated; the object body
    is kept opaque until the dispatcher decodes it.
    """

    id: str = Field(..., min_length=1, examples=["evt_1ABC123DEF456"])
    type: str = Field(..., min_length=1, examples=["payment_intent.succeeded"])
    created: int | None = None
    livemode: bool = False
    data: EventData


class WebhookEvent(BaseModel):
    """Durable record of a webhook delivery.

    Used for:
    - Idempotency: the event ID is applied at most once
    - Auditing: the raw payload and outcome of every delivery
    - Recovery: unsettled rows are re-driven by the sweep

    A missing ``outcome`` means the event was received but not yet applied.
    """

    model_config = ConfigDict(strict=True)

    event_id: str = Field(
        ...,
        description="Processor event ID (evt_xxx)",
        examples=["evt_1ABC123DEF456"],
    )
    event_type: str = Field(
        ...,
        description="Processor event type",
        examples=["payment_intent.succeeded", "charge.refunded"],
    )
    raw_payload: str = Field(..., description="Raw request body as received")
    payload_hash: str = Field(..., description="SHA-256 hash of the raw payload")
    received_at: datetime = Field(..., description="When the first delivery arrived")
    processed_at: datetime | None = Field(
        default=None, description="When an outcome was last written"
    )
    outcome: EventOutcome | None = Field(default=None, description="Processing outcome")
    reason: str | None = Field(default=None, description="Why the outcome was reached")
    error_code: ErrorCode | None = Field(
        default=None, description="Error code for rejected events"
    )
    payment_intent_id: str | None = Field(
        default=None, description="Resolved local payment intent"
    )
    deal_id: str | None = Field(default=None, description="Owning deal")
    attempts: int = Field(default=0, ge=0, description="Failed processing attempts")
    next_attempt_at: int | None = Field(
        default=None, description="Epoch seconds when the sweep may re-drive"
    )
    lease_until: int | None = Field(
        default=None, description="Epoch seconds until the current claim expires"
    )
    duplicate_deliveries: int = Field(
        default=0, ge=0, description="Number of duplicate deliveries observed"
    )
    last_error: str | None = Field(default=None, description="Last processing error")

    @property
    def is_settled(self) -> bool:
        """Whether the event needs no further processing."""
        return self.outcome is not None and self.outcome != EventOutcome.DEFERRED

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "WebhookEvent":
        """Build a WebhookEvent from a DynamoDB item."""
        outcome = item.get("outcome")
        error_code = item.get("error_code")
        next_attempt_at = item.get("next_attempt_at")
        lease_until = item.get("lease_until")
        return cls(
            event_id=item["event_id"],
            event_type=item["event_type"],
            raw_payload=item["raw_payload"],
            payload_hash=item["payload_hash"],
            received_at=parse_timestamp(item["received_at"]),
            processed_at=parse_timestamp(item.get("processed_at")),
            outcome=EventOutcome(outcome) if outcome else None,
            reason=item.get("reason"),
            error_code=ErrorCode(error_code) if error_code else None,
            payment_intent_id=item.get("payment_intent_id"),
            deal_id=item.get("deal_id"),
            attempts=int(item.get("attempts", 0)),
            next_attempt_at=int(next_attempt_at) if next_attempt_at is not None else None,
            lease_until=int(lease_until) if lease_until is not None else None,
            duplicate_deliveries=int(item.get("duplicate_deliveries", 0)),
            last_error=item.get("last_error"),
        )

    def to_item(self) -> dict[str, Any]:
        """Convert to a DynamoDB item."""
        item: dict[str, Any] = {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "raw_payload": self.raw_payload,
            "payload_hash": self.payload_hash,
            "received_at": format_timestamp(self.received_at),
            "attempts": self.attempts,
            "duplicate_deliveries": self.duplicate_deliveries,
        }
        optional = {
            "processed_at": format_timestamp(self.processed_at),
            "outcome": self.outcome.value if self.outcome else None,
            "reason": self.reason,
            "error_code": self.error_code.value if self.error_code else None,
            "payment_intent_id": self.payment_intent_id,
            "deal_id": self.deal_id,
            "next_attempt_at": self.next_attempt_at,
            "lease_until": self.lease_until,
            "last_error": self.last_error,
        }
        item.update({k: v for k, v in optional.items() if v is not None})
        return item


class RecordResult(BaseModel):
    """Result of an insert-if-absent on the event store."""

    model_config = ConfigDict(strict=True)

    is_new: bool
    event: WebhookEvent


class ProcessingResult(BaseModel):
    """Outcome of processing one event.

    ``outcome`` is None when processing could not settle the event (for
    example a lost concurrency race); the event is then rescheduled.
    """

    model_config = ConfigDict(strict=True)

    event_id: str
    event_type: str
    outcome: EventOutcome | None
    reason: str | None = None
    error_code: ErrorCode | None = None
    payment_intent_id: str | None = None
    deal_id: str | None = None
    redrive_event_ids: list[str] = Field(
        default_factory=list,
        description="Deferred events that became processable",
    )


class AcceptedDelivery(BaseModel):
    """A verified, recorded delivery that is ready to be processed."""

    model_config = ConfigDict(strict=True)

    event_id: str
    event_type: str
    is_new: bool


class WebhookResult(BaseModel):
    """Combined accept and process result for synchronous callers."""

    model_config = ConfigDict(strict=True)

    delivery: AcceptedDelivery
    result: ProcessingResult | None = None

    @property
    def outcome(self) -> EventOutcome | None:
        if not self.delivery.is_new:
            return EventOutcome.DUPLICATE
        return self.result.outcome if self.result else None
