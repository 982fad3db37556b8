"""API models for marketer deal endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import Field

from payrecon.models.deal import Deal, Milestone
from payrecon.models.enums import DealPaymentStatus, DealStatus, MilestoneStatus

from .common import ApiModel


class MilestoneResponse(ApiModel):
    milestone_id: str
    description: str
    amount: int
    status: MilestoneStatus
    payment_intent_id: str | None = None
    funded_at: datetime | None = None

    @classmethod
    def from_milestone(cls, milestone: Milestone) -> "MilestoneResponse":
        return cls(
            milestone_id=milestone.milestone_id,
            description=milestone.description,
            amount=milestone.amount,
            status=milestone.status,
            payment_intent_id=milestone.payment_intent_id,
            funded_at=milestone.funded_at,
        )


class DealResponse(ApiModel):
    """A deal as seen by the marketer, including its version for updates."""

    deal_id: str
    status: DealStatus
    payment_status: DealPaymentStatus
    version: int
    requires_refund: bool
    payment_intent_id: str | None = None
    decline_reason: str | None = None
    milestones: list[MilestoneResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None

    @classmethod
    def from_deal(cls, deal: Deal) -> "DealResponse":
        return cls(
            deal_id=deal.deal_id,
            status=deal.status,
            payment_status=deal.payment_status,
            version=deal.version,
            requires_refund=deal.requires_refund,
            payment_intent_id=deal.payment_intent_id,
            decline_reason=deal.decline_reason,
            milestones=[MilestoneResponse.from_milestone(m) for m in deal.milestones],
            created_at=deal.created_at,
            updated_at=deal.updated_at,
            paid_at=deal.paid_at,
            cancelled_at=deal.cancelled_at,
        )


class DealUpdateRequest(ApiModel):
    """User-driven status change.

    ``expectedVersion`` (or an If-Match header) makes the update fail with a
    conflict if the deal changed since it was read.
    """

    status: Literal["cancelled", "completed"]
    expected_version: int | None = Field(default=None, ge=1)
