"""Unit tests for the deal reconciler.

Covers payment effects, user status changes and the cancel/success race.
Races are interleaved deterministically: a competing write is injected
between the reconciler's read and its conditional write.
"""

import pytest

from payrecon.models.deal import (
    DealWriteStatus,
    Milestone,
    PaymentEffect,
    PaymentEffectKind,
)
from payrecon.models.enums import DealPaymentStatus, DealStatus, MilestoneStatus
from payrecon.models.errors import ErrorCode
from payrecon.services.deal_reconciler import DealReconciler


def effect(kind: PaymentEffectKind, intent_id: str = "pi_1", **fields) -> PaymentEffect:
    return PaymentEffect(kind=kind, payment_intent_id=intent_id, **fields)


def race_before_write(monkeypatch, reconciler, competing_write):
    """Run ``competing_write`` right after the reconciler's next read."""
    original = reconciler.get_deal

    def read_then_race(deal_id):
        deal = original(deal_id)
        monkeypatch.setattr(reconciler, "get_deal", original)
        competing_write()
        return deal

    monkeypatch.setattr(reconciler, "get_deal", read_then_race)


@pytest.fixture
def other(db, clock) -> DealReconciler:
    """A second writer sharing the same table."""
    return DealReconciler(db, backoff_seconds=0, clock=clock)


class TestCreateDeal:
    def test_create_is_idempotent(self, reconciler):
        first = reconciler.create_deal("deal-1")
        second = reconciler.create_deal("deal-1")

        assert first.version == 1
        assert second.deal_id == "deal-1"
        assert second.created_at == first.created_at

    def test_new_deal_is_active_and_unpaid(self, deal):
        assert deal.status == DealStatus.ACTIVE
        assert deal.payment_status == DealPaymentStatus.UNPAID


class TestPaymentEffects:
    def test_paid_effect(self, reconciler, deal):
        written = reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        assert written.status == DealWriteStatus.APPLIED
        assert written.applied_version == 2
        assert written.deal.payment_status == DealPaymentStatus.PAID
        assert written.deal.paid_at is not None

    def test_paid_effect_is_idempotent(self, reconciler, deal):
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        written = reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        assert written.status == DealWriteStatus.NOOP
        assert written.applied_version == 2

    def test_failed_effect_records_decline_reason(self, reconciler, deal):
        written = reconciler.apply_payment_effect(
            "deal-1",
            effect(PaymentEffectKind.FAILED, decline_reason="Your card was declined."),
        )

        assert written.deal.payment_status == DealPaymentStatus.FAILED
        assert written.deal.decline_reason == "Your card was declined."

    def test_failure_never_overrides_payment(self, reconciler, deal):
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        written = reconciler.apply_payment_effect(
            "deal-1", effect(PaymentEffectKind.FAILED, intent_id="pi_2")
        )

        assert written.status == DealWriteStatus.NOOP
        assert written.deal.payment_status == DealPaymentStatus.PAID

    def test_pending_after_failure(self, reconciler, deal):
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.FAILED))

        written = reconciler.apply_payment_effect(
            "deal-1", effect(PaymentEffectKind.PENDING, intent_id="pi_2")
        )

        assert written.deal.payment_status == DealPaymentStatus.PENDING
        assert written.deal.payment_intent_id == "pi_2"

    def test_stale_failure_does_not_replace_pending_intent(self, reconciler, deal):
        """A late failure of an earlier attempt leaves the live attempt tracked."""
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.FAILED))
        reconciler.apply_payment_effect(
            "deal-1", effect(PaymentEffectKind.PENDING, intent_id="pi_2")
        )

        written = reconciler.apply_payment_effect(
            "deal-1", effect(PaymentEffectKind.FAILED, decline_reason="Your card was declined.")
        )

        assert written.status == DealWriteStatus.NOOP
        assert written.deal.payment_status == DealPaymentStatus.PENDING
        assert written.deal.payment_intent_id == "pi_2"

    def test_refund_effects(self, reconciler, deal):
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        partial = reconciler.apply_payment_effect(
            "deal-1", effect(PaymentEffectKind.PARTIALLY_REFUNDED)
        )
        full = reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.REFUNDED))

        assert partial.deal.payment_status == DealPaymentStatus.PARTIALLY_REFUNDED
        assert full.deal.payment_status == DealPaymentStatus.REFUNDED

    def test_paid_replay_after_refund_is_noop(self, reconciler, deal):
        """Re-applying the paid effect must not undo the refund."""
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.REFUNDED))

        written = reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        assert written.status == DealWriteStatus.NOOP
        assert written.deal.payment_status == DealPaymentStatus.REFUNDED

    def test_second_capture_is_flagged_for_refund(self, reconciler, deal):
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        written = reconciler.apply_payment_effect(
            "deal-1", effect(PaymentEffectKind.PAID, intent_id="pi_2")
        )

        assert written.deal.requires_refund is True
        assert written.deal.payment_intent_id == "pi_1"

    def test_unknown_deal(self, reconciler, db):
        written = reconciler.apply_payment_effect("missing", effect(PaymentEffectKind.PAID))

        assert written.status == DealWriteStatus.REJECTED
        assert written.error_code == ErrorCode.DEAL_NOT_FOUND

    def test_stale_expected_version(self, reconciler, deal):
        written = reconciler.apply_payment_effect(
            "deal-1", effect(PaymentEffectKind.PAID), expected_version=7
        )

        assert written.status == DealWriteStatus.CONFLICT


class TestMilestones:
    def test_funding_one_milestone_is_partial(self, reconciler, milestone_deal):
        written = reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.PAID, milestone_id="m1")
        )

        assert written.deal.payment_status == DealPaymentStatus.PARTIALLY_PAID
        funded = written.deal.get_milestone("m1")
        assert funded.status == MilestoneStatus.FUNDED
        assert funded.payment_intent_id == "pi_1"

    def test_funding_all_milestones_is_paid(self, reconciler, milestone_deal):
        reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.PAID, milestone_id="m1")
        )

        written = reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.PAID, intent_id="pi_2", milestone_id="m2")
        )

        assert written.deal.payment_status == DealPaymentStatus.PAID

    def test_later_milestone_keeps_earlier_refund(self, reconciler, milestone_deal):
        reconciler.apply_payment_effect("deal-ms", effect(PaymentEffectKind.PAID, milestone_id="m1"))
        reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.REFUNDED, milestone_id="m1")
        )

        written = reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.PAID, intent_id="pi_2", milestone_id="m2")
        )

        assert written.deal.payment_status == DealPaymentStatus.PARTIALLY_REFUNDED
        assert written.deal.payment_intent_id == "pi_2"
        assert written.deal.get_milestone("m2").status == MilestoneStatus.FUNDED

    def test_earlier_milestone_replay_after_later_payment_is_noop(
        self, reconciler, milestone_deal
    ):
        reconciler.apply_payment_effect("deal-ms", effect(PaymentEffectKind.PAID, milestone_id="m1"))
        reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.REFUNDED, milestone_id="m1")
        )
        reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.PAID, intent_id="pi_2", milestone_id="m2")
        )

        paid = reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.PAID, milestone_id="m1")
        )
        refunded = reconciler.apply_payment_effect(
            "deal-ms", effect(PaymentEffectKind.REFUNDED, milestone_id="m1")
        )

        assert paid.status == DealWriteStatus.NOOP
        assert refunded.status == DealWriteStatus.NOOP
        assert refunded.deal.payment_status == DealPaymentStatus.PARTIALLY_REFUNDED
        assert refunded.deal.payment_intent_id == "pi_2"

    def test_at_most_four_milestones(self, reconciler):
        milestones = [Milestone(milestone_id=f"m{i}", amount=100) for i in range(5)]

        with pytest.raises(ValueError):
            reconciler.create_deal("deal-big", milestones)


class TestUpdateDeal:
    def test_cancel_unpaid_deal(self, reconciler, milestone_deal):
        written = reconciler.update_deal("deal-ms", DealStatus.CANCELLED, expected_version=1)

        assert written.status == DealWriteStatus.APPLIED
        assert written.deal.status == DealStatus.CANCELLED
        assert all(m.status == MilestoneStatus.CANCELLED for m in written.deal.milestones)

    def test_cancel_paid_deal_is_rejected(self, reconciler, deal):
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        written = reconciler.update_deal("deal-1", DealStatus.CANCELLED)

        assert written.status == DealWriteStatus.REJECTED
        assert written.error_code == ErrorCode.DEAL_ALREADY_PAID

    def test_cancel_twice_is_noop(self, reconciler, deal):
        reconciler.update_deal("deal-1", DealStatus.CANCELLED)

        written = reconciler.update_deal("deal-1", DealStatus.CANCELLED)

        assert written.status == DealWriteStatus.NOOP

    def test_complete_requires_payment(self, reconciler, deal):
        written = reconciler.update_deal("deal-1", DealStatus.COMPLETED)

        assert written.error_code == ErrorCode.INVALID_DEAL_TRANSITION

    def test_complete_paid_deal(self, reconciler, deal):
        reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        written = reconciler.update_deal("deal-1", DealStatus.COMPLETED, expected_version=2)

        assert written.deal.status == DealStatus.COMPLETED
        assert written.applied_version == 3

    def test_stale_version_is_conflict(self, reconciler, deal):
        written = reconciler.update_deal("deal-1", DealStatus.CANCELLED, expected_version=9)

        assert written.status == DealWriteStatus.CONFLICT
        assert written.error_code == ErrorCode.CONCURRENT_MODIFICATION
        assert written.deal.version == 1


class TestCancelSuccessRace:
    def test_cancel_first_then_success(self, reconciler, deal):
        """The success still lands and the deal is flagged for refund."""
        reconciler.update_deal("deal-1", DealStatus.CANCELLED)

        written = reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        assert written.status == DealWriteStatus.APPLIED
        assert written.deal.status == DealStatus.PAID_THEN_CANCELLED
        assert written.deal.payment_status == DealPaymentStatus.PAID
        assert written.deal.requires_refund is True

    def test_success_lands_between_cancel_read_and_write(
        self, monkeypatch, reconciler, other, deal
    ):
        """The cancel loses the race and is reported, never overwritten."""
        race_before_write(
            monkeypatch,
            reconciler,
            lambda: other.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID)),
        )

        written = reconciler.update_deal("deal-1", DealStatus.CANCELLED)

        assert written.status == DealWriteStatus.CONFLICT
        assert written.deal.version == 2
        assert written.deal.payment_status == DealPaymentStatus.PAID
        assert written.deal.status == DealStatus.ACTIVE

    def test_cancel_lands_between_success_read_and_write(
        self, monkeypatch, reconciler, other, deal
    ):
        """The webhook effect retries on a fresh read and keeps both facts."""
        race_before_write(
            monkeypatch,
            reconciler,
            lambda: other.update_deal("deal-1", DealStatus.CANCELLED),
        )

        written = reconciler.apply_payment_effect("deal-1", effect(PaymentEffectKind.PAID))

        assert written.status == DealWriteStatus.APPLIED
        assert written.applied_version == 3
        assert written.deal.status == DealStatus.PAID_THEN_CANCELLED
        assert written.deal.requires_refund is True
