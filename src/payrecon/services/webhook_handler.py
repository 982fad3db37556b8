"""Webhook handler: verify, record, then process.

Handling is split in two. ``accept`` verifies the signature, validates the
envelope and records the delivery; it is the only part the HTTP layer must
finish before acknowledging. ``process`` applies a recorded event and
settles it, and can run inline, in the background or from the recovery
sweep, because every step is idempotent.
"""

from pydantic import ValidationError

from payrecon.models.enums import EventOutcome
from payrecon.models.errors import ErrorCode, ReconciliationError
from payrecon.models.events import PaymentSucceeded
from payrecon.models.webhook_event import (
    AcceptedDelivery,
    ProcessingResult,
    StripeEventEnvelope,
    WebhookResult,
)
from payrecon.services.dispatcher import EventDispatcher, decode_event
from payrecon.services.event_store import EventStore
from payrecon.services.signature import SignatureVerifier
from payrecon.utils.logging import get_logger, log_webhook_event, set_correlation_id

logger = get_logger(__name__)


def parse_envelope(payload: bytes) -> StripeEventEnvelope:
    """Validate the raw body as an event envelope.

    Raises:
        ReconciliationError: MALFORMED_EVENT if the body is not an envelope
    """
    try:
        return StripeEventEnvelope.model_validate_json(payload)
    except ValidationError as e:
        raise ReconciliationError(
            ErrorCode.MALFORMED_EVENT,
            details={"reason": f"{e.error_count()} validation error(s)"},
        ) from e


class WebhookHandler:
    """Runs deliveries through verification, recording and processing."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        store: EventStore,
        dispatcher: EventDispatcher,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.dispatcher = dispatcher

    def accept(self, payload: bytes, signature: str | None) -> AcceptedDelivery:
        """Verify and record a delivery.

        Args:
            payload: Raw request body, exactly as received
            signature: Value of the signature header

        Returns:
            AcceptedDelivery; ``is_new`` is False for a duplicate event ID

        Raises:
            ReconciliationError: SIGNATURE_INVALID or MALFORMED_EVENT. Nothing
                is recorded in either case.
        """
        check = self.verifier.verify(payload, signature)
        if not check.valid:
            logger.warning("Rejected webhook delivery: %s", check.reason)
            raise ReconciliationError(
                ErrorCode.SIGNATURE_INVALID, details={"reason": check.reason or ""}
            )

        envelope = parse_envelope(payload)
        decode_event(envelope)
        try:
            raw_payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ReconciliationError(
                ErrorCode.MALFORMED_EVENT, details={"reason": "payload is not UTF-8"}
            ) from e

        recorded = self.store.record_if_new(envelope.id, envelope.type, raw_payload)
        if not recorded.is_new:
            log_webhook_event(
                logger,
                envelope.type,
                envelope.id,
                payment_intent_id=recorded.event.payment_intent_id,
                result=EventOutcome.DUPLICATE.value,
                previous_outcome=(
                    recorded.event.outcome.value if recorded.event.outcome else "unsettled"
                ),
            )
        return AcceptedDelivery(
            event_id=envelope.id, event_type=envelope.type, is_new=recorded.is_new
        )

    def process(self, event_id: str) -> ProcessingResult:
        """Apply a recorded event and settle its outcome.

        Failures are recorded against the event for a later retry rather
        than raised, so a background caller never loses them.

        Args:
            event_id: Recorded event to process

        Returns:
            ProcessingResult; ``outcome`` is None when the event was
            rescheduled

        Raises:
            LookupError: If the event was never recorded
        """
        event = self.store.get(event_id)
        if event is None:
            raise LookupError(f"Webhook event {event_id} is not recorded")
        if event.is_settled:
            return ProcessingResult(
                event_id=event_id,
                event_type=event.event_type,
                outcome=event.outcome,
                reason="already settled",
                payment_intent_id=event.payment_intent_id,
                deal_id=event.deal_id,
            )

        domain_event = None
        try:
            domain_event = decode_event(parse_envelope(event.raw_payload.encode("utf-8")))
            if domain_event is None:
                result = ProcessingResult(
                    event_id=event_id,
                    event_type=event.event_type,
                    outcome=EventOutcome.SKIPPED,
                    reason="event type not handled",
                )
            else:
                result = self.dispatcher.dispatch(event.event_type, domain_event)
        except Exception as e:
            logger.exception("Processing webhook event %s failed", event_id)
            failed = self.store.register_failure(event_id, f"{type(e).__name__}: {e}")
            log_webhook_event(
                logger,
                event.event_type,
                event_id,
                result="error" if failed.outcome is None else failed.outcome.value,
                error=str(e),
                attempts=failed.attempts,
            )
            return ProcessingResult(
                event_id=event_id,
                event_type=event.event_type,
                outcome=failed.outcome,
                reason=failed.reason or str(e),
            )

        if result.outcome is None:
            failed = self.store.register_failure(event_id, result.reason or "not settled")
            log_webhook_event(
                logger,
                event.event_type,
                event_id,
                payment_intent_id=result.payment_intent_id,
                deal_id=result.deal_id,
                result="error" if failed.outcome is None else failed.outcome.value,
                reason=result.reason,
                attempts=failed.attempts,
            )
            return result.model_copy(update={"outcome": failed.outcome})

        settled = self.store.settle(result)
        result = result.model_copy(update={"outcome": settled.outcome, "reason": settled.reason})
        log_webhook_event(
            logger,
            event.event_type,
            event_id,
            payment_intent_id=result.payment_intent_id,
            deal_id=result.deal_id,
            result=settled.outcome.value if settled.outcome else None,
            reason=result.reason,
            error_code=result.error_code.value if result.error_code else None,
        )

        if settled.outcome == EventOutcome.APPLIED and isinstance(domain_event, PaymentSucceeded):
            redrive = self._redrive_deferred(event_id, result, domain_event)
            result = result.model_copy(update={"redrive_event_ids": redrive})
        return result

    def _redrive_deferred(
        self, event_id: str, result: ProcessingResult, event: PaymentSucceeded
    ) -> list[str]:
        """Process events that were deferred until this success."""
        keys = {result.payment_intent_id, event.processor_intent_id} - {None}
        redrive: list[str] = []
        for key in sorted(k for k in keys if k):
            for deferred in self.store.list_deferred_for_intent(key):
                if deferred.event_id != event_id and deferred.event_id not in redrive:
                    redrive.append(deferred.event_id)

        for deferred_id in redrive:
            if self.store.claim(deferred_id) is None:
                continue
            logger.info("Re-driving deferred event %s after %s", deferred_id, event_id)
            self.process(deferred_id)
        return redrive

    def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Accept and process a delivery synchronously."""
        delivery = self.accept(payload, signature)
        if not delivery.is_new:
            return WebhookResult(delivery=delivery)
        return WebhookResult(delivery=delivery, result=self.process(delivery.event_id))

    def sweep(self, limit: int = 25) -> list[ProcessingResult]:
        """Re-drive unsettled events whose next attempt is due.

        Args:
            limit: Maximum number of events to process in this pass

        Returns:
            Results for the events this sweep claimed
        """
        results: list[ProcessingResult] = []
        for due in self.store.list_due(limit):
            if self.store.claim(due.event_id) is None:
                continue
            set_correlation_id(due.event_id)
            results.append(self.process(due.event_id))

        if results:
            logger.info(
                "Sweep processed %d event(s): %s",
                len(results),
                ", ".join(f"{r.event_id}={r.outcome.value if r.outcome else 'retry'}" for r in results),
            )
        return results
