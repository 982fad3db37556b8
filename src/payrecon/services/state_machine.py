"""Payment intent state machine.

    Created -> Pending -> Succeeded | Failed
    Created -> Succeeded | Failed
    Succeeded -> PartiallyRefunded -> FullyRefunded
    Succeeded -> FullyRefunded

Failed and FullyRefunded are terminal. The machine is pure: it evaluates an
event against the current intent and returns a Transition for the caller to
persist. Events never move an intent backwards.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict

from payrecon.models.enums import PaymentIntentStatus
from payrecon.models.errors import ErrorCode
from payrecon.models.events import (
    ChargeRefunded,
    DomainEvent,
    PaymentFailed,
    PaymentProcessing,
    PaymentSucceeded,
)
from payrecon.models.payment_intent import PaymentIntent

S = PaymentIntentStatus

ALLOWED_TRANSITIONS: dict[PaymentIntentStatus, frozenset[PaymentIntentStatus]] = {
    S.CREATED: frozenset({S.PENDING, S.SUCCEEDED, S.FAILED}),
    S.PENDING: frozenset({S.SUCCEEDED, S.FAILED}),
    S.SUCCEEDED: frozenset({S.PARTIALLY_REFUNDED, S.FULLY_REFUNDED}),
    S.PARTIALLY_REFUNDED: frozenset({S.PARTIALLY_REFUNDED, S.FULLY_REFUNDED}),
    S.FAILED: frozenset(),
    S.FULLY_REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.FAILED, S.FULLY_REFUNDED})
UNCAPTURED_STATUSES = frozenset({S.CREATED, S.PENDING})


class TransitionAction(str, Enum):
    """What the caller should do with an evaluated event."""

    APPLY = "apply"
    NOOP = "noop"
    REJECT = "reject"
    DEFER = "defer"


class Transition(BaseModel):
    """Result of evaluating an event against a payment intent."""

    model_config = ConfigDict(strict=True, frozen=True)

    action: TransitionAction
    target: PaymentIntentStatus | None = None
    error_code: ErrorCode | None = None
    reason: str | None = None

    @classmethod
    def apply(cls, target: PaymentIntentStatus) -> "Transition":
        return cls(action=TransitionAction.APPLY, target=target)

    @classmethod
    def noop(cls, reason: str) -> "Transition":
        return cls(action=TransitionAction.NOOP, reason=reason)

    @classmethod
    def reject(cls, code: ErrorCode, reason: str) -> "Transition":
        return cls(action=TransitionAction.REJECT, error_code=code, reason=reason)

    @classmethod
    def defer(cls, reason: str) -> "Transition":
        return cls(action=TransitionAction.DEFER, reason=reason)


class PaymentStateMachine:
    """Evaluates processor events against payment intents."""

    def can_transition(
        self, current: PaymentIntentStatus, target: PaymentIntentStatus
    ) -> bool:
        return target in ALLOWED_TRANSITIONS[current]

    def evaluate(
        self,
        intent: PaymentIntent,
        event: DomainEvent,
        refund_amount: int = 0,
    ) -> Transition:
        """Evaluate a decoded event against the intent's current state.

        Args:
            intent: Current payment intent
            event: Decoded processor event
            refund_amount: For refunds, the sum of refund lines not yet
                recorded against the intent

        Returns:
            Transition describing the action to take
        """
        if isinstance(event, PaymentProcessing):
            return self.on_processing(intent)
        if isinstance(event, PaymentSucceeded):
            return self.on_succeeded(intent, event.amount, event.currency)
        if isinstance(event, PaymentFailed):
            return self.on_failed(intent)
        if isinstance(event, ChargeRefunded):
            return self.on_refund(intent, refund_amount)
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    def on_processing(self, intent: PaymentIntent) -> Transition:
        if intent.status == S.CREATED:
            return Transition.apply(S.PENDING)
        return Transition.noop(f"intent already {intent.status.value}")

    def on_succeeded(
        self,
        intent: PaymentIntent,
        amount: int | None = None,
        currency: str | None = None,
    ) -> Transition:
        """A success is legal from Created/Pending and idempotent afterwards."""
        if intent.status == S.FAILED:
            return Transition.reject(
                ErrorCode.OUT_OF_ORDER_EVENT,
                "payment_intent.succeeded received for a failed intent",
            )
        if intent.status not in UNCAPTURED_STATUSES:
            return Transition.noop(f"intent already {intent.status.value}")
        if amount is not None and amount != intent.amount:
            return Transition.reject(
                ErrorCode.AMOUNT_MISMATCH,
                f"event amount {amount} does not match intent amount {intent.amount}",
            )
        if currency is not None and currency.lower() != intent.currency:
            return Transition.reject(
                ErrorCode.AMOUNT_MISMATCH,
                f"event currency {currency} does not match intent currency "
                f"{intent.currency}",
            )
        return Transition.apply(S.SUCCEEDED)

    def on_failed(self, intent: PaymentIntent) -> Transition:
        """A failure cannot un-succeed a payment."""
        if intent.status in UNCAPTURED_STATUSES:
            return Transition.apply(S.FAILED)
        if intent.status == S.FAILED:
            return Transition.noop("intent already failed")
        return Transition.reject(
            ErrorCode.OUT_OF_ORDER_EVENT,
            f"payment_intent.payment_failed received for a {intent.status.value} intent",
        )

    def on_refund(self, intent: PaymentIntent, refund_amount: int) -> Transition:
        """Apply a refund of ``refund_amount`` on top of recorded refunds.

        Refunds that arrive before the success are deferred. A refund that
        would exceed the captured amount is rejected, never clamped.
        """
        if intent.status in UNCAPTURED_STATUSES:
            return Transition.defer(
                f"refund received before success (intent {intent.status.value})"
            )
        if intent.status == S.FAILED:
            return Transition.reject(
                ErrorCode.REFUND_NOT_ALLOWED, "refund received for a failed intent"
            )
        if refund_amount <= 0:
            return Transition.noop("refund already recorded")

        total = intent.amount_refunded + refund_amount
        if total > intent.amount:
            return Transition.reject(
                ErrorCode.PARTIAL_REFUND_MISMATCH,
                f"cumulative refunds {total} would exceed amount {intent.amount}",
            )
        if total == intent.amount:
            return Transition.apply(S.FULLY_REFUNDED)
        return Transition.apply(S.PARTIALLY_REFUNDED)
