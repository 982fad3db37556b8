"""Deal aggregate models.

Only the fields the reconciliation engine reads or writes are modelled here.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from payrecon.utils.dates import format_timestamp, parse_timestamp

from .enums import DealPaymentStatus, DealStatus, MilestoneStatus
from .errors import ErrorCode

MAX_MILESTONES = 4

# Payment statuses in which money has moved for the deal
MONEY_MOVED_STATUSES = frozenset(
    {
        DealPaymentStatus.PARTIALLY_PAID,
        DealPaymentStatus.PAID,
        DealPaymentStatus.PARTIALLY_REFUNDED,
    }
)


class Milestone(BaseModel):
    """A fundable slice of a deal."""

    model_config = ConfigDict(strict=True)

    milestone_id: str = Field(..., description="Milestone ID, unique within the deal")
    description: str = Field(default="", description="What the milestone delivers")
    amount: int = Field(..., gt=0, description="Milestone amount in minor units")
    status: MilestoneStatus = Field(
        default=MilestoneStatus.PENDING, description="Milestone status"
    )
    payment_intent_id: str | None = Field(
        default=None, description="Intent that funded the milestone"
    )
    funded_at: datetime | None = Field(default=None, description="Funding timestamp")

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "milestone_id": self.milestone_id,
            "description": self.description,
            "amount": self.amount,
            "status": self.status.value,
        }
        if self.payment_intent_id:
            item["payment_intent_id"] = self.payment_intent_id
        if self.funded_at:
            item["funded_at"] = format_timestamp(self.funded_at)
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Milestone":
        return cls(
            milestone_id=item["milestone_id"],
            description=item.get("description", ""),
            amount=int(item["amount"]),
            status=MilestoneStatus(item.get("status", MilestoneStatus.PENDING.value)),
            payment_intent_id=item.get("payment_intent_id"),
            funded_at=parse_timestamp(item.get("funded_at")),
        )


class Deal(BaseModel):
    """A marketplace deal whose payment state is reconciled from webhooks.

    ``version`` increases on every accepted write. Writers that present a
    stale version are rejected.
    """

    model_config = ConfigDict(strict=True)

    deal_id: str = Field(..., description="Deal ID")
    status: DealStatus = Field(default=DealStatus.ACTIVE, description="Business status")
    payment_status: DealPaymentStatus = Field(
        default=DealPaymentStatus.UNPAID, description="Derived payment status"
    )
    version: int = Field(default=1, ge=1, description="Optimistic concurrency version")
    milestones: list[Milestone] = Field(
        default_factory=list, max_length=MAX_MILESTONES, description="Deal milestones"
    )
    requires_refund: bool = Field(
        default=False,
        description="Set when money was captured for a deal that was cancelled",
    )
    payment_intent_id: str | None = Field(
        default=None, description="Last intent that changed the payment status"
    )
    decline_reason: str | None = Field(
        default=None, description="Decline reason of the last failed payment"
    )
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
    paid_at: datetime | None = Field(default=None, description="When the deal was paid")
    cancelled_at: datetime | None = Field(
        default=None, description="When the deal was cancelled"
    )

    @property
    def money_moved(self) -> bool:
        """Whether any captured money is still held for the deal."""
        return self.payment_status in MONEY_MOVED_STATUSES

    def get_milestone(self, milestone_id: str) -> Milestone | None:
        """Find a milestone by ID."""
        for milestone in self.milestones:
            if milestone.milestone_id == milestone_id:
                return milestone
        return None

    def to_item(self) -> dict[str, Any]:
        """Convert to a DynamoDB item."""
        item: dict[str, Any] = {
            "deal_id": self.deal_id,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "version": self.version,
            "milestones": [m.to_item() for m in self.milestones],
            "requires_refund": self.requires_refund,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
        optional = {
            "payment_intent_id": self.payment_intent_id,
            "decline_reason": self.decline_reason,
            "paid_at": format_timestamp(self.paid_at),
            "cancelled_at": format_timestamp(self.cancelled_at),
        }
        item.update({k: v for k, v in optional.items() if v is not None})
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Deal":
        """Build a Deal from a DynamoDB item."""
        return cls(
            deal_id=item["deal_id"],
            status=DealStatus(item.get("status", DealStatus.ACTIVE.value)),
            payment_status=DealPaymentStatus(
                item.get("payment_status", DealPaymentStatus.UNPAID.value)
            ),
            version=int(item.get("version", 1)),
            milestones=[Milestone.from_item(m) for m in item.get("milestones", [])],
            requires_refund=bool(item.get("requires_refund", False)),
            payment_intent_id=item.get("payment_intent_id"),
            decline_reason=item.get("decline_reason"),
            created_at=parse_timestamp(item["created_at"]),
            updated_at=parse_timestamp(item.get("updated_at") or item["created_at"]),
            paid_at=parse_timestamp(item.get("paid_at")),
            cancelled_at=parse_timestamp(item.get("cancelled_at")),
        )


class PaymentEffectKind(str, Enum):
    """Payment outcome to be reflected on a deal."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentEffect(BaseModel):
    """Effect of a payment intent's state on its owning deal."""

    model_config = ConfigDict(strict=True, frozen=True)

    kind: PaymentEffectKind
    payment_intent_id: str
    milestone_id: str | None = None
    decline_reason: str | None = None


class DealWriteStatus(str, Enum):
    """Result of a conditional write against a deal."""

    APPLIED = "applied"
    NOOP = "noop"
    CONFLICT = "conflict"
    REJECTED = "rejected"


class DealWriteResult(BaseModel):
    """Outcome of a deal write.

    ``applied_version`` is the version after the write for APPLIED, or the
    current version for NOOP. CONFLICT means the caller lost a
    compare-and-swap and must re-fetch.
    """

    model_config = ConfigDict(strict=True)

    status: DealWriteStatus
    deal: Deal | None = None
    applied_version: int | None = None
    error_code: ErrorCode | None = None
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (DealWriteStatus.APPLIED, DealWriteStatus.NOOP)
