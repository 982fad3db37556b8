"""Event dispatcher: decodes processor events and routes them.

The dispatcher turns a verified envelope into a typed domain event, applies
it to the payment intent it concerns, reflects the resulting payment state
on the owning deal and publishes notifications for terminal states.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from payrecon.models.deal import DealWriteResult, DealWriteStatus, PaymentEffect, PaymentEffectKind
from payrecon.models.enums import DealStatus, EventOutcome, PaymentIntentStatus
from payrecon.models.errors import ErrorCode, ReconciliationError, decline_message_for
from payrecon.models.events import (
    ChargeRefunded,
    DomainEvent,
    PaymentFailed,
    PaymentProcessing,
    PaymentSucceeded,
    RefundLine,
)
from payrecon.models.notification import PaymentNotification
from payrecon.models.payment_intent import PaymentIntent
from payrecon.models.webhook_event import ProcessingResult, StripeEventEnvelope
from payrecon.services.deal_reconciler import DealReconciler
from payrecon.services.notifier import (
    DEAL_PAID_THEN_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    Notifier,
)
from payrecon.services.payment_intents import (
    IntentChange,
    IntentChangeKind,
    PaymentIntentService,
)
from payrecon.utils.dates import utc_now
from payrecon.utils.logging import get_logger

logger = get_logger(__name__)

PAYMENT_INTENT_EVENTS: dict[str, type[PaymentProcessing | PaymentSucceeded | PaymentFailed]] = {
    "payment_intent.processing": PaymentProcessing,
    "payment_intent.succeeded": PaymentSucceeded,
    "payment_intent.payment_failed": PaymentFailed,
}
CHARGE_REFUNDED = "charge.refunded"
HANDLED_EVENT_TYPES = frozenset({*PAYMENT_INTENT_EVENTS, CHARGE_REFUNDED})

# Refund states that count towards the refunded amount
COUNTED_REFUND_STATUSES = frozenset({"succeeded", "pending"})


def _metadata(obj: dict[str, Any]) -> dict[str, str]:
    raw = obj.get("metadata") or {}
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _currency(obj: dict[str, Any]) -> str | None:
    currency = obj.get("currency")
    return currency.lower() if isinstance(currency, str) else None


def _refund_lines(obj: dict[str, Any]) -> list[RefundLine] | None:
    refunds = obj.get("refunds")
    if not isinstance(refunds, dict) or not isinstance(refunds.get("data"), list):
        return None
    return [
        RefundLine(
            refund_id=refund["id"],
            amount=refund["amount"],
            reason=refund.get("reason"),
        )
        for refund in refunds["data"]
        if refund.get("status", "succeeded") in COUNTED_REFUND_STATUSES
    ]


def decode_event(envelope: StripeEventEnvelope) -> DomainEvent | None:
    """Decode an envelope into a typed domain event.

    Args:
        envelope: Validated processor envelope

    Returns:
        The domain event, or None for event types the engine does not handle

    Raises:
        ReconciliationError: MALFORMED_EVENT if the object body does not fit
            the event type
    """
    obj = envelope.data.object
    try:
        if envelope.type in PAYMENT_INTENT_EVENTS:
            fields: dict[str, Any] = {
                "event_id": envelope.id,
                "processor_intent_id": obj.get("id"),
                "amount": obj.get("amount"),
                "currency": _currency(obj),
                "metadata": _metadata(obj),
            }
            if envelope.type == "payment_intent.payment_failed":
                error = obj.get("last_payment_error") or {}
                decline_code = error.get("decline_code") or error.get("code")
                fields["decline_code"] = decline_code
                fields["decline_reason"] = error.get("message") or decline_message_for(
                    decline_code
                )
            return PAYMENT_INTENT_EVENTS[envelope.type](**fields)

        if envelope.type == CHARGE_REFUNDED:
            return ChargeRefunded(
                event_id=envelope.id,
                processor_intent_id=obj.get("payment_intent"),
                amount=obj.get("amount"),
                currency=_currency(obj),
                metadata=_metadata(obj),
                charge_id=obj.get("id"),
                amount_refunded_total=obj.get("amount_refunded") or 0,
                refunds=_refund_lines(obj),
            )
    except (ValidationError, KeyError, TypeError, AttributeError) as e:
        raise ReconciliationError(
            ErrorCode.MALFORMED_EVENT,
            details={"event_id": envelope.id, "reason": str(e)[:200]},
        ) from e
    return None


def effects_for(intent: PaymentIntent) -> list[PaymentEffect]:
    """Deal effects implied by a payment intent's current status.

    A refunded intent yields the paid effect first, so a deal that missed
    the success still records the payment before the refund.
    """
    base = {"payment_intent_id": intent.payment_intent_id, "milestone_id": intent.milestone_id}
    status = intent.status
    if status == PaymentIntentStatus.PENDING:
        return [PaymentEffect(kind=PaymentEffectKind.PENDING, **base)]
    if status == PaymentIntentStatus.FAILED:
        return [
            PaymentEffect(
                kind=PaymentEffectKind.FAILED, decline_reason=intent.decline_reason, **base
            )
        ]
    if status == PaymentIntentStatus.SUCCEEDED:
        return [PaymentEffect(kind=PaymentEffectKind.PAID, **base)]
    if status == PaymentIntentStatus.PARTIALLY_REFUNDED:
        return [
            PaymentEffect(kind=PaymentEffectKind.PAID, **base),
            PaymentEffect(kind=PaymentEffectKind.PARTIALLY_REFUNDED, **base),
        ]
    if status == PaymentIntentStatus.FULLY_REFUNDED:
        return [
            PaymentEffect(kind=PaymentEffectKind.PAID, **base),
            PaymentEffect(kind=PaymentEffectKind.REFUNDED, **base),
        ]
    return []


# Intent states whose deal effects a newer attempt overrides
SUPERSEDABLE_STATUSES = frozenset({PaymentIntentStatus.PENDING, PaymentIntentStatus.FAILED})

NOTIFIED_STATUSES = {
    PaymentIntentStatus.SUCCEEDED: PAYMENT_SUCCEEDED,
    PaymentIntentStatus.FAILED: PAYMENT_FAILED,
    PaymentIntentStatus.FULLY_REFUNDED: PAYMENT_REFUNDED,
}


class EventDispatcher:
    """Routes decoded events to the intent service, deal reconciler and notifier."""

    def __init__(
        self,
        intents: PaymentIntentService,
        reconciler: DealReconciler,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.intents = intents
        self.reconciler = reconciler
        self.notifier = notifier
        self._clock = clock

    def dispatch(self, event_type: str, event: DomainEvent) -> ProcessingResult:
        """Apply a domain event and report the outcome.

        Args:
            event_type: Processor event type, for the result
            event: Decoded domain event

        Returns:
            ProcessingResult; ``outcome`` is None when a concurrency race
            could not be resolved and the event must be retried
        """

        def result(outcome: EventOutcome | None, **fields: Any) -> ProcessingResult:
            return ProcessingResult(
                event_id=event.event_id, event_type=event_type, outcome=outcome, **fields
            )

        intent = self.intents.resolve(event)
        if intent is None:
            if isinstance(event, ChargeRefunded):
                return result(
                    EventOutcome.DEFERRED,
                    reason="refund received for an unknown payment intent",
                    payment_intent_id=event.local_intent_id or event.processor_intent_id,
                    deal_id=event.deal_id,
                )
            intent = self.intents.adopt(event)
            if intent is None:
                return result(
                    EventOutcome.REJECTED,
                    error_code=ErrorCode.PAYMENT_INTENT_NOT_FOUND,
                    reason="no local payment intent and no known deal in metadata",
                    deal_id=event.deal_id,
                )

        ids = {"payment_intent_id": intent.payment_intent_id, "deal_id": intent.deal_id}
        change = self.intents.apply_event(intent, event)
        if change.kind == IntentChangeKind.CONFLICT:
            return result(None, reason=change.reason, **ids)
        if change.kind == IntentChangeKind.REJECTED:
            return result(
                EventOutcome.REJECTED, error_code=change.error_code, reason=change.reason, **ids
            )
        if change.kind == IntentChangeKind.DEFERRED:
            return result(EventOutcome.DEFERRED, reason=change.reason, **ids)

        if change.intent.status in SUPERSEDABLE_STATUSES and self.intents.is_superseded(
            change.intent
        ):
            logger.info(
                "Intent %s was superseded, leaving deal %s untouched",
                intent.payment_intent_id,
                intent.deal_id,
            )
            return result(EventOutcome.APPLIED, reason="intent superseded by a newer attempt", **ids)

        deal_results: list[DealWriteResult] = []
        paid: DealWriteResult | None = None
        for effect in effects_for(change.intent):
            written = self.reconciler.apply_payment_effect(intent.deal_id, effect)
            if written.status == DealWriteStatus.CONFLICT:
                return result(None, reason=written.reason, **ids)
            if written.status == DealWriteStatus.REJECTED:
                return result(
                    EventOutcome.REJECTED,
                    error_code=written.error_code,
                    reason=written.reason,
                    **ids,
                )
            deal_results.append(written)
            if effect.kind == PaymentEffectKind.PAID:
                paid = written

        self._notify(change, deal_results, paid)
        reason = change.reason if change.kind == IntentChangeKind.NOOP else None
        return result(EventOutcome.APPLIED, reason=reason, **ids)

    def request_refund(
        self, payment_intent_id: str, amount: int, reason: str | None = None
    ) -> ProcessingResult:
        """Issue a refund and apply it like a processor event.

        Raises:
            ReconciliationError: If the refund is not allowed
        """
        event = self.intents.prepare_refund(payment_intent_id, amount, reason)
        logger.info("Refund of %d requested for %s", amount, payment_intent_id)
        processed = self.dispatch("refund.requested", event)
        if processed.outcome == EventOutcome.REJECTED and processed.error_code:
            raise ReconciliationError(
                processed.error_code, details={"reason": processed.reason or ""}
            )
        if processed.outcome == EventOutcome.DEFERRED:
            raise ReconciliationError(ErrorCode.REFUND_NOT_ALLOWED)
        if processed.outcome is None:
            raise ReconciliationError(
                ErrorCode.CONCURRENT_MODIFICATION,
                details={"reason": processed.reason or ""},
            )
        return processed

    def _notify(
        self,
        change: IntentChange,
        deal_results: list[DealWriteResult],
        paid: DealWriteResult | None,
    ) -> None:
        deal_changed = any(r.status == DealWriteStatus.APPLIED for r in deal_results)
        if change.kind != IntentChangeKind.APPLIED and not deal_changed:
            return

        intent = change.intent
        now = self._clock()
        event_type = NOTIFIED_STATUSES.get(intent.status)
        if event_type:
            self.notifier.notify(
                PaymentNotification(
                    deal_id=intent.deal_id,
                    event_type=event_type,
                    payment_intent_id=intent.payment_intent_id,
                    occurred_at=now,
                )
            )

        if (
            paid is not None
            and paid.status == DealWriteStatus.APPLIED
            and paid.deal is not None
            and paid.deal.status == DealStatus.PAID_THEN_CANCELLED
        ):
            self.notifier.notify(
                PaymentNotification(
                    deal_id=intent.deal_id,
                    event_type=DEAL_PAID_THEN_CANCELLED,
                    payment_intent_id=intent.payment_intent_id,
                    occurred_at=now,
                )
            )
