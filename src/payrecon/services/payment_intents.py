"""Payment intent service: creation, lookup and state transitions.

Intent IDs are derived from ``(deal, milestone, amount, attempt)`` and
inserted only if absent, so repeated create requests for the same pending
charge return the existing intent instead of minting a new one.

Every accepted transition is a version-checked write. Successes and refunds
also append their ledger entries in the same DynamoDB transaction, and
refunds insert one RefundRecord per refund ID, so a replayed refund can
never be counted twice.
"""

import hashlib
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from payrecon.models.deal import Deal
from payrecon.models.enums import DealStatus, MilestoneStatus, PaymentIntentStatus, PaymentProvider
from payrecon.models.errors import ErrorCode, ReconciliationError, decline_message_for
from payrecon.models.events import (
    ChargeRefunded,
    DomainEvent,
    PaymentFailed,
    ProcessorEvent,
    RefundLine,
)
from payrecon.models.ledger import LedgerEntry
from payrecon.models.payment_intent import IntentCreation, PaymentIntent, RefundRecord
from payrecon.services.deal_reconciler import DealReconciler
from payrecon.services.dynamodb import DynamoDBService
from payrecon.services.ledger import LedgerAggregator
from payrecon.services.schema import (
    DEAL_INDEX,
    PAYMENT_INTENTS_TABLE,
    PROCESSOR_INTENT_INDEX,
    REFUNDS_TABLE,
)
from payrecon.services.state_machine import (
    PaymentStateMachine,
    TransitionAction,
)
from payrecon.services.stripe_service import StripeService, StripeServiceError
from payrecon.utils.dates import format_timestamp, utc_now
from payrecon.utils.logging import get_logger, log_payment_operation

logger = get_logger(__name__)

# Failed attempts tolerated before create-intent gives up on a deal/amount pair
MAX_CREATE_ATTEMPTS = 20

def derive_intent_id(
    deal_id: str, amount: int, attempt: int, milestone_id: str | None = None
) -> str:
    """Derive the deterministic local intent ID for a charge attempt.

    Args:
        deal_id: Owning deal
        amount: Amount in minor units
        attempt: Attempt number, incremented after a failed charge
        milestone_id: Funded milestone, if any

    Returns:
        Intent ID of the form ``pi_<24 hex chars>``
    """
    key = f"{deal_id}:{milestone_id or ''}:{amount}:{attempt}"
    return "pi_" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:24]


class IntentChangeKind(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    CONFLICT = "conflict"


class IntentChange(BaseModel):
    """Result of applying an event to a payment intent."""

    model_config = ConfigDict(strict=True)

    kind: IntentChangeKind
    intent: PaymentIntent
    error_code: ErrorCode | None = None
    reason: str | None = None
    refunds: list[RefundRecord] = Field(default_factory=list)


class PaymentIntentService:
    """Creates payment intents and applies processor events to them."""

    def __init__(
        self,
        db: DynamoDBService,
        ledger: LedgerAggregator,
        reconciler: DealReconciler,
        *,
        provider: PaymentProvider = PaymentProvider.MOCK,
        stripe_service: StripeService | None = None,
        default_currency: str = "usd",
        cas_max_attempts: int = 5,
        machine: PaymentStateMachine | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if provider == PaymentProvider.STRIPE and stripe_service is None:
            raise ValueError("The stripe provider requires a StripeService")
        self.db = db
        self.ledger = ledger
        self.reconciler = reconciler
        self.provider = provider
        self.stripe = stripe_service
        self.default_currency = default_currency
        self.cas_max_attempts = cas_max_attempts
        self.machine = machine or PaymentStateMachine()
        self._clock = clock

    # =========================================================================
    # Lookup
    # =========================================================================

    def find_intent(self, payment_intent_id: str) -> PaymentIntent | None:
        item = self.db.get_item(
            PAYMENT_INTENTS_TABLE,
            {"payment_intent_id": payment_intent_id},
            consistent_read=True,
        )
        return PaymentIntent.from_item(item) if item else None

    def get_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Get a payment intent.

        Raises:
            ReconciliationError: PAYMENT_INTENT_NOT_FOUND if it does not exist
        """
        intent = self.find_intent(payment_intent_id)
        if intent is None:
            raise ReconciliationError(
                ErrorCode.PAYMENT_INTENT_NOT_FOUND,
                details={"payment_intent_id": payment_intent_id},
            )
        return intent

    def is_superseded(self, intent: PaymentIntent) -> bool:
        """Whether a later intent was created for the same deal and milestone."""
        rank = (intent.created_at, intent.attempt)
        for item in self.db.query_by_gsi(
            PAYMENT_INTENTS_TABLE, DEAL_INDEX, "deal_id", intent.deal_id
        ):
            other = PaymentIntent.from_item(item)
            if (
                other.payment_intent_id != intent.payment_intent_id
                and other.milestone_id == intent.milestone_id
                and (other.created_at, other.attempt) > rank
            ):
                return True
        return False

    def resolve(self, event: ProcessorEvent) -> PaymentIntent | None:
        """Map a processor event to the local intent it concerns.

        Lookup order: the local ID in metadata, the processor ID index, then
        the processor ID used directly as a local ID.
        """
        if event.local_intent_id:
            intent = self.find_intent(event.local_intent_id)
            if intent:
                return intent

        processor_id = event.processor_intent_id
        if not processor_id:
            return None
        items = self.db.query_by_gsi(
            PAYMENT_INTENTS_TABLE,
            PROCESSOR_INTENT_INDEX,
            "processor_intent_id",
            processor_id,
            limit=1,
        )
        if items:
            return self.find_intent(items[0]["payment_intent_id"])
        return self.find_intent(processor_id)

    def adopt(self, event: ProcessorEvent) -> PaymentIntent | None:
        """Create a local intent for an unknown processor intent.

        Only events whose metadata names an existing deal, and which carry a
        positive amount, can be adopted.

        Args:
            event: Decoded payment_intent.* event

        Returns:
            The adopted intent, or None if the event cannot be attributed
        """
        deal_id = event.deal_id
        processor_id = event.processor_intent_id
        if not deal_id or not processor_id or not event.amount or event.amount <= 0:
            return None
        if self.reconciler.get_deal(deal_id) is None:
            return None

        now = self._clock()
        intent = PaymentIntent(
            payment_intent_id=processor_id,
            deal_id=deal_id,
            amount=event.amount,
            currency=(event.currency or self.default_currency).lower(),
            status=PaymentIntentStatus.CREATED,
            metadata=dict(event.metadata),
            milestone_id=event.milestone_id,
            provider=PaymentProvider.STRIPE,
            processor_intent_id=processor_id,
            created_at=now,
            updated_at=now,
        )
        if self.db.put_item(
            PAYMENT_INTENTS_TABLE,
            intent.to_item(),
            condition_expression="attribute_not_exists(payment_intent_id)",
        ):
            log_payment_operation(
                logger,
                "adopt_intent",
                payment_intent_id=processor_id,
                deal_id=deal_id,
                amount=event.amount,
                status=intent.status.value,
                source_event_id=event.event_id,
            )
            return intent
        return self.find_intent(processor_id)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_intent(
        self,
        deal_id: str,
        amount: int,
        currency: str | None = None,
        milestone_id: str | None = None,
    ) -> IntentCreation:
        """Create a payment intent, or return the live one for the same charge.

        Args:
            deal_id: Deal being paid
            amount: Amount in minor units
            currency: Currency code, defaults to the configured currency
            milestone_id: Milestone being funded, if any

        Returns:
            IntentCreation with ``created=False`` when an existing Created or
            Pending intent was returned

        Raises:
            ReconciliationError: For invalid amounts, unknown or unpayable
                deals, already-paid deals and processor failures
        """
        if amount <= 0:
            raise ReconciliationError(ErrorCode.INVALID_AMOUNT)
        currency = (currency or self.default_currency).lower()

        deal = self.reconciler.get_deal(deal_id)
        if deal is None:
            raise ReconciliationError(ErrorCode.DEAL_NOT_FOUND, details={"deal_id": deal_id})
        self._check_payable(deal, milestone_id)

        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            payment_intent_id = derive_intent_id(deal_id, amount, attempt, milestone_id)
            now = self._clock()
            metadata = {"payment_intent_id": payment_intent_id, "deal_id": deal_id}
            if milestone_id:
                metadata["milestone_id"] = milestone_id
            intent = PaymentIntent(
                payment_intent_id=payment_intent_id,
                deal_id=deal_id,
                amount=amount,
                currency=currency,
                status=PaymentIntentStatus.CREATED,
                metadata=metadata,
                milestone_id=milestone_id,
                attempt=attempt,
                provider=self.provider,
                created_at=now,
                updated_at=now,
            )
            if self.provider == PaymentProvider.MOCK:
                intent = intent.model_copy(
                    update={
                        "processor_intent_id": payment_intent_id,
                        "client_secret": f"{payment_intent_id}_secret_mock",
                    }
                )

            if self.db.put_item(
                PAYMENT_INTENTS_TABLE,
                intent.to_item(),
                condition_expression="attribute_not_exists(payment_intent_id)",
            ):
                log_payment_operation(
                    logger,
                    "create_intent",
                    payment_intent_id=payment_intent_id,
                    deal_id=deal_id,
                    amount=amount,
                    status=intent.status.value,
                    attempt=attempt,
                )
                if self.stripe is not None and self.provider == PaymentProvider.STRIPE:
                    intent = self._register_with_processor(intent, self.stripe)
                return IntentCreation(intent=intent, created=True)

            existing = self.find_intent(payment_intent_id)
            if existing is None:
                continue
            if existing.status in (PaymentIntentStatus.CREATED, PaymentIntentStatus.PENDING):
                logger.info(
                    "Returning live intent %s for deal %s amount %d",
                    payment_intent_id,
                    deal_id,
                    amount,
                )
                return IntentCreation(intent=existing, created=False)
            if existing.is_settled:
                raise ReconciliationError(
                    ErrorCode.DEAL_ALREADY_PAID,
                    details={"payment_intent_id": payment_intent_id},
                )
            # Failed: the next attempt number gets a fresh intent

        raise ReconciliationError(
            ErrorCode.DEAL_NOT_PAYABLE,
            details={"reason": f"more than {MAX_CREATE_ATTEMPTS} failed attempts"},
        )

    @staticmethod
    def _check_payable(deal: Deal, milestone_id: str | None) -> None:
        if deal.status != DealStatus.ACTIVE:
            raise ReconciliationError(
                ErrorCode.DEAL_NOT_PAYABLE,
                details={"deal_id": deal.deal_id, "status": deal.status.value},
            )
        if milestone_id:
            milestone = deal.get_milestone(milestone_id)
            if milestone is None:
                raise ReconciliationError(
                    ErrorCode.MILESTONE_NOT_FOUND,
                    details={"deal_id": deal.deal_id, "milestone_id": milestone_id},
                )
            if milestone.status != MilestoneStatus.PENDING:
                raise ReconciliationError(
                    ErrorCode.DEAL_ALREADY_PAID,
                    details={"milestone_id": milestone_id, "status": milestone.status.value},
                )
        elif deal.money_moved:
            raise ReconciliationError(
                ErrorCode.DEAL_ALREADY_PAID,
                details={"deal_id": deal.deal_id, "payment_status": deal.payment_status.value},
            )

    def _register_with_processor(
        self, intent: PaymentIntent, stripe: StripeService
    ) -> PaymentIntent:
        try:
            created = stripe.create_payment_intent(
                amount=intent.amount,
                currency=intent.currency,
                idempotency_key=intent.payment_intent_id,
                metadata=intent.metadata,
                description=f"Deal {intent.deal_id}",
            )
        except StripeServiceError as e:
            self._mark_failed_locally(intent, str(e), e.stripe_error_code)
            raise ReconciliationError(
                ErrorCode.PAYMENT_PROVIDER_ERROR,
                details={"stripe_error_code": e.stripe_error_code or "unknown"},
            ) from e

        attrs = self.db.update_item(
            PAYMENT_INTENTS_TABLE,
            {"payment_intent_id": intent.payment_intent_id},
            "SET processor_intent_id = :pid, client_secret = :secret, "
            "updated_at = :now, version = version + :one",
            {
                ":pid": created["processor_intent_id"],
                ":secret": created["client_secret"],
                ":now": format_timestamp(self._clock()),
                ":one": 1,
            },
        )
        return PaymentIntent.from_item(attrs) if attrs else intent

    def _mark_failed_locally(
        self, intent: PaymentIntent, reason: str, code: str | None
    ) -> None:
        values: dict[str, Any] = {
            ":failed": PaymentIntentStatus.FAILED.value,
            ":created": PaymentIntentStatus.CREATED.value,
            ":reason": reason,
            ":now": format_timestamp(self._clock()),
            ":one": 1,
        }
        self.db.update_item(
            PAYMENT_INTENTS_TABLE,
            {"payment_intent_id": intent.payment_intent_id},
            "SET #status = :failed, decline_reason = :reason, failed_at = :now, "
            "updated_at = :now, version = version + :one",
            values,
            expression_attribute_names={"#status": "status"},
            condition_expression="#status = :created",
        )
        log_payment_operation(
            logger,
            "create_intent",
            payment_intent_id=intent.payment_intent_id,
            deal_id=intent.deal_id,
            amount=intent.amount,
            status=PaymentIntentStatus.FAILED.value,
            error=reason,
            stripe_error_code=code,
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def _refund_recorded(self, refund_id: str) -> bool:
        item = self.db.get_item(
            REFUNDS_TABLE, {"refund_id": refund_id}, consistent_read=True
        )
        return item is not None

    def new_refund_lines(
        self, intent: PaymentIntent, event: ChargeRefunded
    ) -> list[RefundLine]:
        """Refund lines of an event that are not yet recorded.

        Without itemised refunds, the processor's cumulative total minus the
        recorded total becomes one line keyed by the event ID. Itemised lines
        that would push the recorded total past the processor's total are
        trimmed, oldest first, by at most the unattributed amount: those
        refunds were already counted through a total-based line.
        """
        if event.refunds is None:
            delta = event.amount_refunded_total - intent.amount_refunded
            if delta <= 0:
                return []
            return [RefundLine(refund_id=event.event_id, amount=delta)]

        lines = [line for line in event.refunds if not self._refund_recorded(line.refund_id)]
        if not event.amount_refunded_total or not intent.unattributed_refunded:
            return lines
        excess = intent.amount_refunded + sum(line.amount for line in lines)
        excess = min(excess - event.amount_refunded_total, intent.unattributed_refunded)
        if excess <= 0:
            return lines

        kept: list[RefundLine] = []
        for line in reversed(lines):
            absorbed = min(excess, line.amount)
            excess -= absorbed
            if absorbed < line.amount:
                kept.append(line.model_copy(update={"amount": line.amount - absorbed}))
        logger.info(
            "Refund lines of %s trimmed to the processor total %d for %s",
            event.event_id,
            event.amount_refunded_total,
            intent.payment_intent_id,
        )
        return kept[::-1]

    def apply_event(self, intent: PaymentIntent, event: DomainEvent) -> IntentChange:
        """Evaluate and persist an event against a payment intent.

        A lost version race reloads the intent and evaluates again, so the
        outcome always reflects the state the write was checked against.

        Args:
            intent: Intent the event resolved to
            event: Decoded processor event

        Returns:
            IntentChange describing what happened
        """
        for _ in range(self.cas_max_attempts):
            lines: list[RefundLine] = []
            if isinstance(event, ChargeRefunded):
                lines = self.new_refund_lines(intent, event)
            transition = self.machine.evaluate(
                intent, event, sum(line.amount for line in lines)
            )

            if transition.action == TransitionAction.NOOP:
                return IntentChange(
                    kind=IntentChangeKind.NOOP, intent=intent, reason=transition.reason
                )
            if transition.action == TransitionAction.REJECT:
                return IntentChange(
                    kind=IntentChangeKind.REJECTED,
                    intent=intent,
                    error_code=transition.error_code,
                    reason=transition.reason,
                )
            if transition.action == TransitionAction.DEFER:
                return IntentChange(
                    kind=IntentChangeKind.DEFERRED, intent=intent, reason=transition.reason
                )

            if transition.target is None:
                raise ValueError(f"{transition.action.value} transition has no target status")
            change = self._write_transition(intent, transition.target, event, lines)
            if change is not None:
                log_payment_operation(
                    logger,
                    "apply_event",
                    payment_intent_id=intent.payment_intent_id,
                    deal_id=intent.deal_id,
                    amount=intent.amount,
                    status=change.intent.status.value,
                    event_id=event.event_id,
                    version=change.intent.version,
                )
                return change

            reloaded = self.find_intent(intent.payment_intent_id)
            if reloaded is None:
                break
            intent = reloaded

        return IntentChange(
            kind=IntentChangeKind.CONFLICT,
            intent=intent,
            error_code=ErrorCode.CONCURRENT_MODIFICATION,
            reason="payment intent kept changing while applying the event",
        )

    def _intent_update(
        self, intent: PaymentIntent, changes: dict[str, Any]
    ) -> tuple[str, dict[str, Any], dict[str, str]]:
        """Build a version-checked update for the given attribute changes."""
        now = format_timestamp(self._clock())
        values: dict[str, Any] = {":expected": intent.version, ":next": intent.version + 1, ":now": now}
        names = {"#status": "status"}
        sets = ["version = :next", "updated_at = :now"]
        for name, value in changes.items():
            if value is None:
                continue
            attr = "#status" if name == "status" else name
            sets.append(f"{attr} = :{name}")
            values[f":{name}"] = value
        return f"SET {', '.join(sets)}", values, names

    def _write_transition(
        self,
        intent: PaymentIntent,
        target: PaymentIntentStatus,
        event: DomainEvent,
        lines: list[RefundLine],
    ) -> IntentChange | None:
        now = self._clock()
        key = {"payment_intent_id": intent.payment_intent_id}
        changes: dict[str, Any] = {"status": target.value}
        updated = intent.model_copy(
            update={"status": target, "version": intent.version + 1, "updated_at": now}
        )

        if target == PaymentIntentStatus.SUCCEEDED:
            changes["succeeded_at"] = format_timestamp(now)
            updated = updated.model_copy(update={"succeeded_at": now})
            expression, values, names = self._intent_update(intent, changes)
            entry = LedgerEntry.for_charge(
                intent.payment_intent_id, intent.deal_id, intent.amount, intent.currency, now
            )
            ok = self.db.transact_write(
                [
                    self.db.update_request(
                        PAYMENT_INTENTS_TABLE,
                        key,
                        expression,
                        values,
                        names,
                        condition_expression="version = :expected",
                    ),
                    self.ledger.entry_request(entry),
                ]
            )
            return IntentChange(kind=IntentChangeKind.APPLIED, intent=updated) if ok else None

        if target in (PaymentIntentStatus.PARTIALLY_REFUNDED, PaymentIntentStatus.FULLY_REFUNDED):
            total = intent.amount_refunded + sum(line.amount for line in lines)
            unattributed = intent.unattributed_refunded
            if isinstance(event, ChargeRefunded) and event.refunds is None:
                unattributed += sum(line.amount for line in lines)
            changes["amount_refunded"] = total
            changes["unattributed_refunded"] = unattributed
            updated = updated.model_copy(
                update={"amount_refunded": total, "unattributed_refunded": unattributed}
            )
            expression, values, names = self._intent_update(intent, changes)
            records = [
                RefundRecord(
                    refund_id=line.refund_id,
                    payment_intent_id=intent.payment_intent_id,
                    deal_id=intent.deal_id,
                    amount_refunded=line.amount,
                    currency=intent.currency,
                    reason=line.reason,
                    applied_at=now,
                    source_event_id=event.event_id,
                )
                for line in lines
            ]
            requests = [
                self.db.put_request(
                    REFUNDS_TABLE,
                    record.to_item(),
                    condition_expression="attribute_not_exists(refund_id)",
                )
                for record in records
            ]
            requests.append(
                self.db.update_request(
                    PAYMENT_INTENTS_TABLE,
                    key,
                    expression,
                    values,
                    names,
                    condition_expression="version = :expected",
                )
            )
            requests.extend(
                self.ledger.entry_request(
                    LedgerEntry.for_refund(
                        record.refund_id,
                        intent.payment_intent_id,
                        intent.deal_id,
                        record.amount_refunded,
                        intent.currency,
                        now,
                    )
                )
                for record in records
            )
            if not self.db.transact_write(requests):
                return None
            return IntentChange(kind=IntentChangeKind.APPLIED, intent=updated, refunds=records)

        if target == PaymentIntentStatus.FAILED and isinstance(event, PaymentFailed):
            reason = event.decline_reason or decline_message_for(event.decline_code)
            changes.update(
                {
                    "failed_at": format_timestamp(now),
                    "decline_reason": reason,
                    "decline_code": event.decline_code,
                }
            )
            updated = updated.model_copy(
                update={
                    "failed_at": now,
                    "decline_reason": reason,
                    "decline_code": event.decline_code,
                }
            )

        expression, values, names = self._intent_update(intent, changes)
        attrs = self.db.update_item(
            PAYMENT_INTENTS_TABLE,
            key,
            expression,
            values,
            expression_attribute_names=names,
            condition_expression="version = :expected",
        )
        if attrs is None:
            return None
        return IntentChange(kind=IntentChangeKind.APPLIED, intent=PaymentIntent.from_item(attrs))

    # =========================================================================
    # Refund requests
    # =========================================================================

    def prepare_refund(
        self,
        payment_intent_id: str,
        amount: int,
        reason: str | None = None,
    ) -> ChargeRefunded:
        """Validate a refund request and issue it at the processor.

        The refund is checked against the remaining balance before the
        processor is called. The returned event is applied like a webhook,
        and the later charge.refunded delivery recognises the refund ID as
        already recorded.

        Args:
            payment_intent_id: Intent to refund
            amount: Refund amount in minor units
            reason: Optional reason

        Returns:
            A ChargeRefunded event carrying the single refund line

        Raises:
            ReconciliationError: If the amount is invalid, the intent is
                unknown or not refundable, the refund would exceed the
                remaining balance, or the processor call fails
        """
        if amount <= 0:
            raise ReconciliationError(ErrorCode.INVALID_AMOUNT)
        intent = self.get_intent(payment_intent_id)

        check = self.machine.on_refund(intent, amount)
        if check.action == TransitionAction.DEFER:
            raise ReconciliationError(
                ErrorCode.REFUND_NOT_ALLOWED,
                details={"status": intent.status.value},
            )
        if check.action == TransitionAction.REJECT and check.error_code:
            raise ReconciliationError(
                check.error_code,
                details={
                    "reason": check.reason or "",
                    "remaining_refundable": str(intent.remaining_refundable),
                },
            )

        request_key = hashlib.sha256(
            f"{payment_intent_id}:{intent.amount_refunded}:{amount}".encode("utf-8")
        ).hexdigest()[:24]
        if (
            self.stripe is not None
            and intent.provider == PaymentProvider.STRIPE
            and intent.processor_intent_id
        ):
            try:
                created = self.stripe.create_refund(
                    processor_intent_id=intent.processor_intent_id,
                    amount=amount,
                    idempotency_key=f"refund_{request_key}",
                    reason=reason,
                )
            except StripeServiceError as e:
                raise ReconciliationError(
                    ErrorCode.PAYMENT_PROVIDER_ERROR,
                    details={"stripe_error_code": e.stripe_error_code or "unknown"},
                ) from e
            refund_id = created["refund_id"]
            processor_total = created.get("charge_amount_refunded")
        else:
            refund_id = f"re_{request_key}"
            processor_total = None

        return ChargeRefunded(
            event_id=f"refund_request_{refund_id}",
            processor_intent_id=intent.processor_intent_id,
            amount=intent.amount,
            currency=intent.currency,
            metadata={"payment_intent_id": payment_intent_id, "deal_id": intent.deal_id},
            amount_refunded_total=processor_total or intent.amount_refunded + amount,
            refunds=[RefundLine(refund_id=refund_id, amount=amount, reason=reason)],
        )
