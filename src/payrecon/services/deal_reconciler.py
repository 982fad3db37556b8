"""Deal reconciler: optimistic concurrency between webhooks and users.

Both webhook-driven payment effects and user actions read the deal, compute
the new state and write it back conditionally on the version they read.
Webhook effects are idempotent, so a lost race is retried automatically.
A user action that loses is reported as a conflict so the caller can
re-fetch and decide.

Race policy for cancel against payment success:
- cancel first: the success is still applied and the deal becomes
  ``paid_then_cancelled`` with ``requires_refund`` set
- success first: the cancel is rejected because the deal is already paid
"""

import time
from collections.abc import Callable
from datetime import datetime

from payrecon.models.deal import (
    Deal,
    DealWriteResult,
    DealWriteStatus,
    Milestone,
    PaymentEffect,
    PaymentEffectKind,
)
from payrecon.models.enums import DealPaymentStatus, DealStatus, MilestoneStatus
from payrecon.models.errors import ErrorCode
from payrecon.services.dynamodb import DynamoDBService
from payrecon.services.schema import DEALS_TABLE
from payrecon.utils.dates import utc_now
from payrecon.utils.logging import get_logger

logger = get_logger(__name__)

FUNDABLE_MILESTONE_STATUSES = frozenset({MilestoneStatus.PENDING, MilestoneStatus.CANCELLED})
CANCELLED_STATUSES = frozenset({DealStatus.CANCELLED, DealStatus.PAID_THEN_CANCELLED})
REFUNDED_STATUSES = frozenset(
    {DealPaymentStatus.PARTIALLY_REFUNDED, DealPaymentStatus.REFUNDED}
)

# Fields that do not count as a change when checking for a no-op
_BOOKKEEPING_FIELDS = {"version", "updated_at"}


def _unchanged(before: Deal, after: Deal) -> bool:
    return before.model_dump(exclude=_BOOKKEEPING_FIELDS) == after.model_dump(
        exclude=_BOOKKEEPING_FIELDS
    )


def _fund_milestones(deal: Deal, effect: PaymentEffect, now: datetime) -> list[Milestone]:
    milestones = list(deal.milestones)
    if not effect.milestone_id:
        return milestones
    for index, milestone in enumerate(milestones):
        if milestone.milestone_id != effect.milestone_id:
            continue
        if milestone.status in FUNDABLE_MILESTONE_STATUSES:
            milestones[index] = milestone.model_copy(
                update={
                    "status": MilestoneStatus.FUNDED,
                    "payment_intent_id": effect.payment_intent_id,
                    "funded_at": now,
                }
            )
        return milestones
    logger.warning(
        "Milestone %s not found on deal %s, applying payment to the deal",
        effect.milestone_id,
        deal.deal_id,
    )
    return milestones


def _funded_by(deal: Deal, effect: PaymentEffect) -> bool:
    milestone = deal.get_milestone(effect.milestone_id) if effect.milestone_id else None
    return milestone is not None and milestone.payment_intent_id == effect.payment_intent_id


def _tracks_other_pending(deal: Deal, effect: PaymentEffect) -> bool:
    return deal.payment_status == DealPaymentStatus.PENDING and deal.payment_intent_id not in (
        None,
        effect.payment_intent_id,
    )


def compute_deal_update(deal: Deal, effect: PaymentEffect, now: datetime) -> Deal | None:
    """Compute the deal state after a payment effect.

    Args:
        deal: Current deal
        effect: Payment effect to reflect
        now: Time of the write

    Returns:
        The updated deal (version not yet incremented), or None if the
        effect is already reflected
    """
    update: dict[str, object] = {}

    if effect.kind == PaymentEffectKind.PAID:
        if deal.payment_status in REFUNDED_STATUSES and (
            deal.payment_intent_id == effect.payment_intent_id or _funded_by(deal, effect)
        ):
            return None
        milestones = _fund_milestones(deal, effect, now)
        unfunded = [m for m in milestones if m.status == MilestoneStatus.PENDING]
        paid_by_other = (
            deal.payment_status == DealPaymentStatus.PAID
            and deal.payment_intent_id not in (None, effect.payment_intent_id)
            and not effect.milestone_id
        )
        update = {
            "milestones": milestones,
            "payment_status": (
                DealPaymentStatus.PARTIALLY_PAID
                if effect.milestone_id and unfunded
                else DealPaymentStatus.PAID
            ),
            "payment_intent_id": effect.payment_intent_id,
            "paid_at": deal.paid_at or now,
            "decline_reason": None,
        }
        if deal.payment_status in REFUNDED_STATUSES:
            # Another milestone paid after an earlier one was refunded
            update["payment_status"] = DealPaymentStatus.PARTIALLY_REFUNDED
        if paid_by_other:
            # A second capture for a deal that was already paid
            logger.error(
                "Deal %s already paid by %s, flagging %s for refund",
                deal.deal_id,
                deal.payment_intent_id,
                effect.payment_intent_id,
            )
            update["requires_refund"] = True
            update["payment_intent_id"] = deal.payment_intent_id
        if deal.status == DealStatus.CANCELLED:
            update["status"] = DealStatus.PAID_THEN_CANCELLED
            update["requires_refund"] = True

    elif effect.kind == PaymentEffectKind.FAILED:
        if deal.money_moved or deal.payment_status == DealPaymentStatus.REFUNDED:
            return None
        if _tracks_other_pending(deal, effect):
            return None
        update = {
            "payment_status": DealPaymentStatus.FAILED,
            "payment_intent_id": effect.payment_intent_id,
            "decline_reason": effect.decline_reason,
        }

    elif effect.kind == PaymentEffectKind.PENDING:
        if deal.payment_status not in (DealPaymentStatus.UNPAID, DealPaymentStatus.FAILED):
            return None
        update = {
            "payment_status": DealPaymentStatus.PENDING,
            "payment_intent_id": effect.payment_intent_id,
        }

    elif effect.kind == PaymentEffectKind.PARTIALLY_REFUNDED:
        update = {"payment_status": DealPaymentStatus.PARTIALLY_REFUNDED}

    elif effect.kind == PaymentEffectKind.REFUNDED:
        if effect.milestone_id and deal.payment_intent_id not in (None, effect.payment_intent_id):
            # Only one milestone was refunded; later milestones still hold money
            update = {"payment_status": DealPaymentStatus.PARTIALLY_REFUNDED}
        else:
            update = {"payment_status": DealPaymentStatus.REFUNDED, "requires_refund": False}

    updated = deal.model_copy(update=update)
    if _unchanged(deal, updated):
        return None
    return updated


class DealReconciler:
    """Applies payment effects and user actions to deals with version CAS."""

    def __init__(
        self,
        db: DynamoDBService,
        *,
        cas_max_attempts: int = 5,
        backoff_seconds: float = 0.01,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.cas_max_attempts = cas_max_attempts
        self.backoff_seconds = backoff_seconds
        self._clock = clock

    def get_deal(self, deal_id: str) -> Deal | None:
        """Read a deal with a strongly consistent read."""
        item = self.db.get_item(DEALS_TABLE, {"deal_id": deal_id}, consistent_read=True)
        return Deal.from_item(item) if item else None

    def create_deal(
        self, deal_id: str, milestones: list[Milestone] | None = None
    ) -> Deal:
        """Create an active, unpaid deal unless it already exists.

        Args:
            deal_id: Deal ID
            milestones: Optional milestones (at most four)

        Returns:
            The created deal, or the existing one
        """
        now = self._clock()
        deal = Deal(
            deal_id=deal_id,
            milestones=milestones or [],
            created_at=now,
            updated_at=now,
        )
        if self.db.put_item(
            DEALS_TABLE, deal.to_item(), condition_expression="attribute_not_exists(deal_id)"
        ):
            logger.info("Created deal %s", deal_id)
            return deal
        existing = self.get_deal(deal_id)
        if existing is None:
            raise LookupError(f"Deal {deal_id} vanished after a conflicting insert")
        return existing

    def _compare_and_swap(self, current: Deal, updated: Deal) -> Deal | None:
        written = updated.model_copy(
            update={"version": current.version + 1, "updated_at": self._clock()}
        )
        if self.db.put_item(
            DEALS_TABLE,
            written.to_item(),
            condition_expression="version = :expected",
            expression_attribute_values={":expected": current.version},
        ):
            return written
        return None

    def apply_payment_effect(
        self,
        deal_id: str,
        effect: PaymentEffect,
        expected_version: int | None = None,
    ) -> DealWriteResult:
        """Reflect a payment effect on a deal.

        Without ``expected_version`` a lost compare-and-swap is retried with
        a fresh read, up to ``cas_max_attempts`` times. With it, a stale
        version is reported as a conflict immediately.

        Args:
            deal_id: Deal to update
            effect: Payment effect to apply
            expected_version: Version the caller last read, if any

        Returns:
            DealWriteResult with the applied version or the conflict
        """
        for attempt in range(1, self.cas_max_attempts + 1):
            deal = self.get_deal(deal_id)
            if deal is None:
                return DealWriteResult(
                    status=DealWriteStatus.REJECTED,
                    error_code=ErrorCode.DEAL_NOT_FOUND,
                    reason=f"deal {deal_id} not found",
                )
            if expected_version is not None and deal.version != expected_version:
                return DealWriteResult(
                    status=DealWriteStatus.CONFLICT,
                    deal=deal,
                    error_code=ErrorCode.CONCURRENT_MODIFICATION,
                    reason=f"expected version {expected_version}, found {deal.version}",
                )

            updated = compute_deal_update(deal, effect, self._clock())
            if updated is None:
                return DealWriteResult(
                    status=DealWriteStatus.NOOP, deal=deal, applied_version=deal.version
                )

            written = self._compare_and_swap(deal, updated)
            if written is not None:
                logger.info(
                    "Deal %s: %s effect applied at version %d (payment_status=%s, status=%s)",
                    deal_id,
                    effect.kind.value,
                    written.version,
                    written.payment_status.value,
                    written.status.value,
                )
                return DealWriteResult(
                    status=DealWriteStatus.APPLIED,
                    deal=written,
                    applied_version=written.version,
                )

            if expected_version is not None:
                break
            logger.info(
                "Deal %s version %d changed during %s effect, retrying (attempt %d)",
                deal_id,
                deal.version,
                effect.kind.value,
                attempt,
            )
            time.sleep(self.backoff_seconds * attempt)

        return DealWriteResult(
            status=DealWriteStatus.CONFLICT,
            deal=self.get_deal(deal_id),
            error_code=ErrorCode.CONCURRENT_MODIFICATION,
            reason="deal kept changing while applying the payment effect",
        )

    def update_deal(
        self,
        deal_id: str,
        status: DealStatus,
        expected_version: int | None = None,
    ) -> DealWriteResult:
        """Apply a user-driven status change.

        The write is conditional on the version read here (or the caller's
        ``expected_version``). A lost race is never retried.

        Args:
            deal_id: Deal to update
            status: Requested status (cancelled or completed)
            expected_version: Version the caller last read, if any

        Returns:
            DealWriteResult; REJECTED carries the business error code
        """
        deal = self.get_deal(deal_id)
        if deal is None:
            return DealWriteResult(
                status=DealWriteStatus.REJECTED,
                error_code=ErrorCode.DEAL_NOT_FOUND,
                reason=f"deal {deal_id} not found",
            )
        if expected_version is not None and deal.version != expected_version:
            return DealWriteResult(
                status=DealWriteStatus.CONFLICT,
                deal=deal,
                error_code=ErrorCode.CONCURRENT_MODIFICATION,
                reason=f"expected version {expected_version}, found {deal.version}",
            )

        now = self._clock()
        if status == DealStatus.CANCELLED:
            if deal.status in CANCELLED_STATUSES:
                return DealWriteResult(
                    status=DealWriteStatus.NOOP, deal=deal, applied_version=deal.version
                )
            if deal.money_moved:
                return DealWriteResult(
                    status=DealWriteStatus.REJECTED,
                    deal=deal,
                    error_code=ErrorCode.DEAL_ALREADY_PAID,
                    reason="deal is already paid, request a refund instead",
                )
            if deal.status != DealStatus.ACTIVE:
                return self._invalid_transition(deal, status)
            milestones = [
                m.model_copy(update={"status": MilestoneStatus.CANCELLED})
                if m.status == MilestoneStatus.PENDING
                else m
                for m in deal.milestones
            ]
            updated = deal.model_copy(
                update={
                    "status": DealStatus.CANCELLED,
                    "cancelled_at": now,
                    "milestones": milestones,
                }
            )
        elif status == DealStatus.COMPLETED:
            if deal.status == DealStatus.COMPLETED:
                return DealWriteResult(
                    status=DealWriteStatus.NOOP, deal=deal, applied_version=deal.version
                )
            if deal.status != DealStatus.ACTIVE or deal.payment_status != DealPaymentStatus.PAID:
                return self._invalid_transition(deal, status)
            updated = deal.model_copy(update={"status": DealStatus.COMPLETED})
        else:
            return self._invalid_transition(deal, status)

        written = self._compare_and_swap(deal, updated)
        if written is None:
            logger.info("Deal %s changed before %s could be written", deal_id, status.value)
            return DealWriteResult(
                status=DealWriteStatus.CONFLICT,
                deal=self.get_deal(deal_id),
                error_code=ErrorCode.CONCURRENT_MODIFICATION,
                reason="deal was modified concurrently, re-fetch and retry",
            )

        logger.info("Deal %s moved to %s at version %d", deal_id, status.value, written.version)
        return DealWriteResult(
            status=DealWriteStatus.APPLIED, deal=written, applied_version=written.version
        )

    @staticmethod
    def _invalid_transition(deal: Deal, status: DealStatus) -> DealWriteResult:
        return DealWriteResult(
            status=DealWriteStatus.REJECTED,
            deal=deal,
            error_code=ErrorCode.INVALID_DEAL_TRANSITION,
            reason=(
                f"cannot move deal from {deal.status.value} "
                f"({deal.payment_status.value}) to {status.value}"
            ),
        )
