"""Durable webhook event store and idempotency ledger.

Every delivery is recorded with an insert-if-absent keyed by the processor
event ID, so of two racing deliveries exactly one is new. The row is also
the durable work item: until an outcome settles it, the row stays in the
sparse ``pending-index`` and the recovery sweep can re-drive it.
"""

import hashlib
from collections.abc import Callable
from datetime import datetime
from typing import Any

from boto3.dynamodb.conditions import Attr, Key

from payrecon.config import Settings
from payrecon.models.enums import EventOutcome
from payrecon.models.webhook_event import ProcessingResult, RecordResult, WebhookEvent
from payrecon.services.dynamodb import DynamoDBService
from payrecon.services.schema import (
    PAYMENT_INTENT_INDEX,
    PENDING_INDEX,
    WEBHOOK_EVENTS_TABLE,
)
from payrecon.utils.dates import format_timestamp, to_epoch, utc_now
from payrecon.utils.logging import get_logger

logger = get_logger(__name__)

PENDING_BUCKET = "pending"
MAX_ERROR_LENGTH = 1000


def compute_payload_hash(payload: bytes | str) -> str:
    """Compute SHA-256 hash of a webhook payload.

    Args:
        payload: Raw webhook payload

    Returns:
        Hex-encoded SHA-256 hash
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


class EventStore:
    """Records webhook deliveries and tracks their processing state."""

    def __init__(
        self,
        db: DynamoDBService,
        *,
        max_attempts: int = 5,
        retry_base_seconds: int = 30,
        lease_seconds: int = 60,
        deferred_window_seconds: int = 86400,
        deferred_retry_seconds: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.lease_seconds = lease_seconds
        self.deferred_window_seconds = deferred_window_seconds
        self.deferred_retry_seconds = deferred_retry_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, db: DynamoDBService, settings: Settings) -> "EventStore":
        return cls(
            db,
            max_attempts=settings.max_processing_attempts,
            retry_base_seconds=settings.retry_base_seconds,
            lease_seconds=settings.processing_lease_seconds,
            deferred_window_seconds=settings.deferred_window_seconds,
            deferred_retry_seconds=settings.deferred_retry_seconds,
        )

    def record_if_new(
        self, event_id: str, event_type: str, raw_payload: str
    ) -> RecordResult:
        """Insert the event unless its ID was already recorded.

        A new row is written unsettled and leased to the caller, so the sweep
        leaves it alone while inline processing runs.

        Args:
            event_id: Processor event ID (idempotency key)
            event_type: Processor event type
            raw_payload: Raw request body

        Returns:
            RecordResult with ``is_new`` and the stored event
        """
        now = self._clock()
        lease_until = to_epoch(now) + self.lease_seconds
        event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            raw_payload=raw_payload,
            payload_hash=compute_payload_hash(raw_payload),
            received_at=now,
            next_attempt_at=lease_until,
            lease_until=lease_until,
        )
        item = event.to_item()
        item["pending_bucket"] = PENDING_BUCKET

        if self.db.put_item(
            WEBHOOK_EVENTS_TABLE,
            item,
            condition_expression="attribute_not_exists(event_id)",
        ):
            return RecordResult(is_new=True, event=event)

        attrs = self.db.update_item(
            WEBHOOK_EVENTS_TABLE,
            {"event_id": event_id},
            "ADD duplicate_deliveries :one SET last_duplicate_at = :now",
            {":one": 1, ":now": format_timestamp(now)},
        )
        existing = WebhookEvent.from_item(attrs or {})
        if existing.payload_hash != event.payload_hash:
            logger.warning(
                "Duplicate delivery of %s carries a different payload hash", event_id
            )
        return RecordResult(is_new=False, event=existing)

    def get(self, event_id: str) -> WebhookEvent | None:
        item = self.db.get_item(
            WEBHOOK_EVENTS_TABLE, {"event_id": event_id}, consistent_read=True
        )
        return WebhookEvent.from_item(item) if item else None

    def claim(self, event_id: str) -> WebhookEvent | None:
        """Take the processing lease on an unsettled event.

        Args:
            event_id: Event to claim

        Returns:
            The claimed event, or None if it is settled or leased elsewhere
        """
        now = to_epoch(self._clock())
        attrs = self.db.update_item(
            WEBHOOK_EVENTS_TABLE,
            {"event_id": event_id},
            "SET lease_until = :lease",
            {":lease": now + self.lease_seconds, ":now": now},
            condition_expression=(
                "attribute_exists(pending_bucket) AND "
                "(attribute_not_exists(lease_until) OR lease_until < :now)"
            ),
        )
        return WebhookEvent.from_item(attrs) if attrs else None

    def settle(self, result: ProcessingResult) -> WebhookEvent:
        """Write the outcome of processing an event.

        Terminal outcomes remove the event from the pending index. A deferred
        outcome keeps it pending and reschedules it, unless the deferral
        window has elapsed, in which case it is dead-lettered.

        Args:
            result: Processing result with a non-None outcome

        Returns:
            The updated event
        """
        if result.outcome is None:
            raise ValueError("Unsettled results must go through register_failure")

        now = self._clock()
        values: dict[str, Any] = {
            ":outcome": result.outcome.value,
            ":processed_at": format_timestamp(now),
        }
        sets = ["outcome = :outcome", "processed_at = :processed_at"]
        removes = ["lease_until"]

        optional = {
            "reason": result.reason,
            "error_code": result.error_code.value if result.error_code else None,
            "payment_intent_id": result.payment_intent_id,
            "deal_id": result.deal_id,
        }
        for name, value in optional.items():
            if value is not None:
                sets.append(f"{name} = :{name}")
                values[f":{name}"] = value
            elif name in ("reason", "error_code"):
                removes.append(name)

        if result.outcome == EventOutcome.DEFERRED:
            event = self.get(result.event_id)
            age = (now - event.received_at).total_seconds() if event else 0
            if age > self.deferred_window_seconds:
                values[":outcome"] = EventOutcome.DEAD_LETTER.value
                values[":reason"] = f"deferral window expired: {result.reason}"
                if "reason = :reason" not in sets:
                    sets.append("reason = :reason")
                    removes.remove("reason")
                removes += ["pending_bucket", "next_attempt_at"]
                logger.error(
                    "Deferred event %s exceeded the deferral window, dead-lettered",
                    result.event_id,
                )
            else:
                sets.append("next_attempt_at = :next")
                values[":next"] = to_epoch(now) + self.deferred_retry_seconds
        else:
            removes += ["pending_bucket", "next_attempt_at"]

        expression = f"SET {', '.join(sets)} REMOVE {', '.join(removes)}"
        attrs = self.db.update_item(
            WEBHOOK_EVENTS_TABLE, {"event_id": result.event_id}, expression, values
        )
        return WebhookEvent.from_item(attrs or {})

    def register_failure(self, event_id: str, error: str) -> WebhookEvent:
        """Record a failed processing attempt and reschedule or dead-letter.

        Backoff is ``retry_base_seconds * 2 ** (attempts - 1)``. Once
        ``max_attempts`` is reached the event is dead-lettered for manual
        inspection.

        Args:
            event_id: Event that failed
            error: Error description

        Returns:
            The updated event
        """
        event = self.get(event_id)
        if event is None:
            raise LookupError(f"Webhook event {event_id} is not recorded")

        now = self._clock()
        attempts = event.attempts + 1
        values: dict[str, Any] = {
            ":attempts": attempts,
            ":error": error[:MAX_ERROR_LENGTH],
        }

        if attempts >= self.max_attempts:
            values[":outcome"] = EventOutcome.DEAD_LETTER.value
            values[":processed_at"] = format_timestamp(now)
            values[":reason"] = f"retry budget exhausted after {attempts} attempts"
            expression = (
                "SET attempts = :attempts, last_error = :error, outcome = :outcome, "
                "processed_at = :processed_at, reason = :reason "
                "REMOVE pending_bucket, next_attempt_at, lease_until"
            )
            logger.error(
                "Webhook event %s dead-lettered after %d attempts: %s",
                event_id,
                attempts,
                error,
            )
        else:
            delay = self.retry_base_seconds * 2 ** (attempts - 1)
            values[":next"] = to_epoch(now) + delay
            expression = (
                "SET attempts = :attempts, last_error = :error, next_attempt_at = :next "
                "REMOVE lease_until"
            )
            logger.warning(
                "Webhook event %s failed (attempt %d), retrying in %ds: %s",
                event_id,
                attempts,
                delay,
                error,
            )

        attrs = self.db.update_item(
            WEBHOOK_EVENTS_TABLE, {"event_id": event_id}, expression, values
        )
        return WebhookEvent.from_item(attrs or {})

    def list_due(self, limit: int = 25) -> list[WebhookEvent]:
        """List unsettled events whose next attempt is due."""
        now = to_epoch(self._clock())
        items = self.db.query_by_gsi(
            WEBHOOK_EVENTS_TABLE,
            PENDING_INDEX,
            "pending_bucket",
            PENDING_BUCKET,
            sort_key_condition=Key("next_attempt_at").lte(now),
            limit=limit,
        )
        return [WebhookEvent.from_item(item) for item in items]

    def list_deferred_for_intent(self, payment_intent_id: str) -> list[WebhookEvent]:
        """List deferred events waiting on a payment intent."""
        items = self.db.query_by_gsi(
            WEBHOOK_EVENTS_TABLE,
            PAYMENT_INTENT_INDEX,
            "payment_intent_id",
            payment_intent_id,
            filter_expression=Attr("outcome").eq(EventOutcome.DEFERRED.value),
        )
        return [WebhookEvent.from_item(item) for item in items]

    def list_dead_letters(self) -> list[WebhookEvent]:
        """List events awaiting manual inspection."""
        items = self.db.scan(
            WEBHOOK_EVENTS_TABLE,
            filter_expression=Attr("outcome").eq(EventOutcome.DEAD_LETTER.value),
        )
        return [WebhookEvent.from_item(item) for item in items]
