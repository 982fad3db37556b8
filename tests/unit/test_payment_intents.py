"""Unit tests for the payment intent service.

Test categories:
- Deterministic intent IDs and the double-create guard
- Payability checks against the owning deal
- Applying events: transitions, ledger entries, refund records
- Refund requests
- Stripe registration failures (StripeService mocked)
"""

from unittest.mock import MagicMock

import pytest

from payrecon.models.deal import Milestone, PaymentEffect, PaymentEffectKind
from payrecon.models.enums import DealStatus, PaymentIntentStatus, PaymentProvider
from payrecon.models.errors import ErrorCode, ReconciliationError
from payrecon.models.events import (
    ChargeRefunded,
    PaymentFailed,
    PaymentProcessing,
    PaymentSucceeded,
    RefundLine,
)
from payrecon.services.payment_intents import (
    IntentChangeKind,
    PaymentIntentService,
    derive_intent_id,
)
from payrecon.services.state_machine import Transition, TransitionAction
from payrecon.services.stripe_service import StripeServiceError


def succeed(intents, intent, event_id="evt_ok"):
    return intents.apply_event(
        intent, PaymentSucceeded(event_id=event_id, amount=intent.amount, currency=intent.currency)
    )


def refund(intent_id, event_id, lines):
    return ChargeRefunded(
        event_id=event_id,
        processor_intent_id=intent_id,
        refunds=[RefundLine(refund_id=r, amount=a) for r, a in lines],
    )


class TestDeriveIntentId:
    def test_is_deterministic(self):
        assert derive_intent_id("deal-1", 30000, 1) == derive_intent_id("deal-1", 30000, 1)

    def test_varies_with_inputs(self):
        base = derive_intent_id("deal-1", 30000, 1)

        assert derive_intent_id("deal-1", 30000, 2) != base
        assert derive_intent_id("deal-1", 30001, 1) != base
        assert derive_intent_id("deal-1", 30000, 1, "m1") != base

    def test_format(self):
        intent_id = derive_intent_id("deal-1", 30000, 1)

        assert intent_id.startswith("pi_")
        assert len(intent_id) == 27


class TestCreateIntent:
    def test_creates_mock_intent(self, intents, deal):
        creation = intents.create_intent("deal-1", 30000)

        intent = creation.intent
        assert creation.created is True
        assert intent.status == PaymentIntentStatus.CREATED
        assert intent.payment_intent_id == derive_intent_id("deal-1", 30000, 1)
        assert intent.processor_intent_id == intent.payment_intent_id
        assert intent.client_secret == f"{intent.payment_intent_id}_secret_mock"
        assert intent.metadata["deal_id"] == "deal-1"
        assert intents.find_intent(intent.payment_intent_id) == intent

    def test_repeat_returns_live_intent(self, intents, deal):
        """Double-create guard: one intent per pending charge."""
        first = intents.create_intent("deal-1", 30000)

        second = intents.create_intent("deal-1", 30000)

        assert second.created is False
        assert second.intent.payment_intent_id == first.intent.payment_intent_id

    def test_repeat_while_pending_returns_live_intent(self, intents, deal):
        first = intents.create_intent("deal-1", 30000).intent
        intents.apply_event(first, PaymentProcessing(event_id="evt_proc"))

        second = intents.create_intent("deal-1", 30000)

        assert second.created is False
        assert second.intent.status == PaymentIntentStatus.PENDING

    def test_failed_intent_is_superseded(self, intents, deal):
        first = intents.create_intent("deal-1", 30000).intent
        intents.apply_event(first, PaymentFailed(event_id="evt_fail", decline_code="card_declined"))

        retry = intents.create_intent("deal-1", 30000)

        assert retry.created is True
        assert retry.intent.attempt == 2
        assert retry.intent.payment_intent_id != first.payment_intent_id

    def test_settled_deal_cannot_be_charged_again(self, intents, deal):
        first = intents.create_intent("deal-1", 30000).intent
        succeed(intents, first)

        with pytest.raises(ReconciliationError) as exc_info:
            intents.create_intent("deal-1", 30000)

        assert exc_info.value.code == ErrorCode.DEAL_ALREADY_PAID

    @pytest.mark.parametrize("amount", [0, -100])
    def test_invalid_amount(self, intents, deal, amount):
        with pytest.raises(ReconciliationError) as exc_info:
            intents.create_intent("deal-1", amount)

        assert exc_info.value.code == ErrorCode.INVALID_AMOUNT

    def test_unknown_deal(self, intents, db):
        with pytest.raises(ReconciliationError) as exc_info:
            intents.create_intent("missing", 30000)

        assert exc_info.value.code == ErrorCode.DEAL_NOT_FOUND

    def test_cancelled_deal_is_not_payable(self, intents, reconciler, deal):
        reconciler.update_deal("deal-1", DealStatus.CANCELLED)

        with pytest.raises(ReconciliationError) as exc_info:
            intents.create_intent("deal-1", 30000)

        assert exc_info.value.code == ErrorCode.DEAL_NOT_PAYABLE

    def test_unknown_milestone(self, intents, milestone_deal):
        with pytest.raises(ReconciliationError) as exc_info:
            intents.create_intent("deal-ms", 10000, milestone_id="m9")

        assert exc_info.value.code == ErrorCode.MILESTONE_NOT_FOUND

    def test_funded_milestone_is_not_payable(self, intents, reconciler, milestone_deal):
        reconciler.apply_payment_effect(
            "deal-ms",
            PaymentEffect(kind=PaymentEffectKind.PAID, payment_intent_id="pi_x", milestone_id="m1"),
        )

        with pytest.raises(ReconciliationError) as exc_info:
            intents.create_intent("deal-ms", 10000, milestone_id="m1")

        assert exc_info.value.code == ErrorCode.DEAL_ALREADY_PAID

    def test_milestone_intent_carries_milestone(self, intents, milestone_deal):
        intent = intents.create_intent("deal-ms", 10000, milestone_id="m1").intent

        assert intent.milestone_id == "m1"
        assert intent.metadata["milestone_id"] == "m1"


class TestStripeProvider:
    @pytest.fixture
    def stripe_service(self):
        return MagicMock()

    @pytest.fixture
    def stripe_intents(self, db, ledger, reconciler, clock, stripe_service):
        return PaymentIntentService(
            db,
            ledger,
            reconciler,
            provider=PaymentProvider.STRIPE,
            stripe_service=stripe_service,
            clock=clock,
        )

    def test_requires_stripe_service(self, db, ledger, reconciler):
        with pytest.raises(ValueError):
            PaymentIntentService(db, ledger, reconciler, provider=PaymentProvider.STRIPE)

    def test_registers_with_processor(self, stripe_intents, stripe_service, deal):
        stripe_service.create_payment_intent.return_value = {
            "processor_intent_id": "pi_3ABC",
            "client_secret": "pi_3ABC_secret_xyz",
            "status": "requires_payment_method",
        }

        intent = stripe_intents.create_intent("deal-1", 30000).intent

        assert intent.processor_intent_id == "pi_3ABC"
        assert intent.client_secret == "pi_3ABC_secret_xyz"
        assert intent.version == 2
        call = stripe_service.create_payment_intent.call_args.kwargs
        assert call["idempotency_key"] == intent.payment_intent_id
        assert call["metadata"]["payment_intent_id"] == intent.payment_intent_id

    def test_processor_failure_marks_intent_failed(self, stripe_intents, stripe_service, deal):
        stripe_service.create_payment_intent.side_effect = StripeServiceError(
            "Failed to create payment intent", stripe_error_code="api_error"
        )

        with pytest.raises(ReconciliationError) as exc_info:
            stripe_intents.create_intent("deal-1", 30000)

        assert exc_info.value.code == ErrorCode.PAYMENT_PROVIDER_ERROR
        stored = stripe_intents.find_intent(derive_intent_id("deal-1", 30000, 1))
        assert stored.status == PaymentIntentStatus.FAILED

    def test_refund_goes_through_processor(self, stripe_intents, stripe_service, deal):
        stripe_service.create_payment_intent.return_value = {
            "processor_intent_id": "pi_3ABC",
            "client_secret": "secret",
            "status": "requires_payment_method",
        }
        stripe_service.create_refund.return_value = {
            "refund_id": "re_3XYZ",
            "amount": 10000,
            "status": "succeeded",
        }
        intent = stripe_intents.create_intent("deal-1", 30000).intent
        succeed(stripe_intents, intent)

        event = stripe_intents.prepare_refund(intent.payment_intent_id, 10000)

        assert event.refunds[0].refund_id == "re_3XYZ"
        call = stripe_service.create_refund.call_args.kwargs
        assert call["processor_intent_id"] == "pi_3ABC"
        assert call["idempotency_key"].startswith("refund_")

    def test_refund_total_comes_from_processor(self, stripe_intents, stripe_service, deal):
        stripe_service.create_payment_intent.return_value = {
            "processor_intent_id": "pi_3ABC",
            "client_secret": "secret",
            "status": "requires_payment_method",
        }
        stripe_service.create_refund.return_value = {
            "refund_id": "re_3XYZ",
            "amount": 10000,
            "status": "succeeded",
            "charge_amount_refunded": 25000,
        }
        intent = stripe_intents.create_intent("deal-1", 30000).intent
        succeed(stripe_intents, intent)

        event = stripe_intents.prepare_refund(intent.payment_intent_id, 10000)

        assert event.amount_refunded_total == 25000


class TestResolve:
    def test_by_metadata(self, intents, deal):
        intent = intents.create_intent("deal-1", 30000).intent
        event = PaymentSucceeded(
            event_id="evt_1", metadata={"payment_intent_id": intent.payment_intent_id}
        )

        assert intents.resolve(event).payment_intent_id == intent.payment_intent_id

    def test_by_processor_id(self, intents, deal):
        intent = intents.create_intent("deal-1", 30000).intent
        event = ChargeRefunded(event_id="evt_1", processor_intent_id=intent.processor_intent_id)

        assert intents.resolve(event).payment_intent_id == intent.payment_intent_id

    def test_unknown(self, intents, deal):
        assert intents.resolve(PaymentSucceeded(event_id="evt_1", processor_intent_id="pi_nope")) is None


class TestAdopt:
    def test_adopts_intent_for_known_deal(self, intents, deal):
        event = PaymentSucceeded(
            event_id="evt_1",
            processor_intent_id="pi_external",
            amount=5000,
            currency="EUR",
            metadata={"deal_id": "deal-1"},
        )

        adopted = intents.adopt(event)

        assert adopted.payment_intent_id == "pi_external"
        assert adopted.currency == "eur"
        assert adopted.status == PaymentIntentStatus.CREATED
        assert intents.adopt(event).payment_intent_id == "pi_external"

    def test_unknown_deal_is_not_adopted(self, intents, db):
        event = PaymentSucceeded(
            event_id="evt_1", processor_intent_id="pi_x", amount=5000, metadata={"deal_id": "nope"}
        )

        assert intents.adopt(event) is None

    def test_event_without_amount_is_not_adopted(self, intents, deal):
        event = PaymentSucceeded(
            event_id="evt_1", processor_intent_id="pi_x", metadata={"deal_id": "deal-1"}
        )

        assert intents.adopt(event) is None


class TestApplyEvent:
    def test_success_writes_charge_entry(self, intents, ledger, deal):
        intent = intents.create_intent("deal-1", 30000).intent

        change = succeed(intents, intent)

        assert change.kind == IntentChangeKind.APPLIED
        assert change.intent.status == PaymentIntentStatus.SUCCEEDED
        assert change.intent.version == 2
        stored = intents.get_intent(intent.payment_intent_id)
        assert stored.status == PaymentIntentStatus.SUCCEEDED
        assert stored.succeeded_at is not None
        assert [e.entry_id for e in ledger.entries()] == [f"charge#{intent.payment_intent_id}"]

    def test_replayed_success_is_noop(self, intents, ledger, deal):
        intent = intents.create_intent("deal-1", 30000).intent
        succeed(intents, intent)

        change = succeed(intents, intents.get_intent(intent.payment_intent_id), "evt_ok_2")

        assert change.kind == IntentChangeKind.NOOP
        assert ledger.snapshot().gross_earnings == 30000

    def test_failure_records_decline(self, intents, deal):
        intent = intents.create_intent("deal-1", 30000).intent

        change = intents.apply_event(
            intent, PaymentFailed(event_id="evt_fail", decline_code="expired_card")
        )

        assert change.intent.status == PaymentIntentStatus.FAILED
        assert change.intent.decline_code == "expired_card"
        assert change.intent.decline_reason == "Your card has expired."

    def test_stale_intent_is_reloaded(self, intents, deal):
        """A write against an old version re-evaluates on the current state."""
        stale = intents.create_intent("deal-1", 30000).intent
        intents.apply_event(stale, PaymentProcessing(event_id="evt_proc"))

        change = succeed(intents, stale)

        assert change.kind == IntentChangeKind.APPLIED
        assert change.intent.version == 3

    def test_apply_without_target_status_raises(self, db, ledger, reconciler, clock, deal):
        machine = MagicMock()
        machine.evaluate.return_value = Transition(action=TransitionAction.APPLY)
        service = PaymentIntentService(db, ledger, reconciler, machine=machine, clock=clock)
        intent = service.create_intent("deal-1", 30000).intent

        with pytest.raises(ValueError, match="no target status"):
            succeed(service, intent)

    def test_refund_lines_recorded_once(self, intents, ledger, deal):
        intent = intents.create_intent("deal-1", 100000).intent
        succeed(intents, intent)
        current = intents.get_intent(intent.payment_intent_id)

        first = intents.apply_event(current, refund(intent.payment_intent_id, "evt_r1", [("re_1", 30000)]))
        current = intents.get_intent(intent.payment_intent_id)
        second = intents.apply_event(
            current, refund(intent.payment_intent_id, "evt_r2", [("re_1", 30000), ("re_2", 20000)])
        )

        assert first.intent.status == PaymentIntentStatus.PARTIALLY_REFUNDED
        assert [r.refund_id for r in second.refunds] == ["re_2"]
        assert second.intent.amount_refunded == 50000
        snapshot = ledger.snapshot()
        assert snapshot.refunded_amount == 50000
        assert snapshot.net_earnings == 50000

    def test_cumulative_refund_without_lines(self, intents, deal):
        intent = intents.create_intent("deal-1", 100000).intent
        succeed(intents, intent)
        current = intents.get_intent(intent.payment_intent_id)

        change = intents.apply_event(
            current,
            ChargeRefunded(
                event_id="evt_r1",
                processor_intent_id=intent.processor_intent_id,
                amount_refunded_total=100000,
            ),
        )

        assert change.intent.status == PaymentIntentStatus.FULLY_REFUNDED
        assert change.refunds[0].refund_id == "evt_r1"


class TestPrepareRefund:
    def paid(self, intents, amount=100000):
        intent = intents.create_intent("deal-1", amount).intent
        succeed(intents, intent)
        return intents.get_intent(intent.payment_intent_id)

    def test_builds_single_line_event(self, intents, deal):
        intent = self.paid(intents)

        event = intents.prepare_refund(intent.payment_intent_id, 30000, reason="requested_by_customer")

        assert event.amount_refunded_total == 30000
        assert len(event.refunds) == 1
        assert event.refunds[0].refund_id.startswith("re_")
        assert event.refunds[0].reason == "requested_by_customer"
        assert event.local_intent_id == intent.payment_intent_id

    def test_over_refund_rejected(self, intents, deal):
        intent = self.paid(intents)

        with pytest.raises(ReconciliationError) as exc_info:
            intents.prepare_refund(intent.payment_intent_id, 100001)

        assert exc_info.value.code == ErrorCode.PARTIAL_REFUND_MISMATCH
        assert exc_info.value.details["remaining_refundable"] == "100000"

    def test_unpaid_intent_not_refundable(self, intents, deal):
        intent = intents.create_intent("deal-1", 30000).intent

        with pytest.raises(ReconciliationError) as exc_info:
            intents.prepare_refund(intent.payment_intent_id, 1000)

        assert exc_info.value.code == ErrorCode.REFUND_NOT_ALLOWED

    def test_unknown_intent(self, intents, db):
        with pytest.raises(ReconciliationError) as exc_info:
            intents.prepare_refund("pi_missing", 1000)

        assert exc_info.value.code == ErrorCode.PAYMENT_INTENT_NOT_FOUND


def test_milestone_model_rejects_zero_amount():
    with pytest.raises(ValueError):
        Milestone(milestone_id="m1", amount=0)
