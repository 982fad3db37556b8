"""Ledger journal and earnings snapshot models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from payrecon.utils.dates import format_timestamp, parse_timestamp

from .enums import LedgerEntryKind


class LedgerEntry(BaseModel):
    """A money movement mirrored from an authoritative record.

    The entry ID is derived from the record it mirrors, so an entry can be
    written at most once per charge or refund.
    """

    model_config = ConfigDict(strict=True)

    entry_id: str = Field(
        ..., description="charge#{payment_intent_id} or refund#{refund_id}"
    )
    kind: LedgerEntryKind
    amount: int = Field(..., description="Signed amount in minor units")
    currency: str
    deal_id: str
    payment_intent_id: str
    created_at: datetime

    @classmethod
    def for_charge(
        cls, payment_intent_id: str, deal_id: str, amount: int, currency: str, at: datetime
    ) -> "LedgerEntry":
        return cls(
            entry_id=f"charge#{payment_intent_id}",
            kind=LedgerEntryKind.CHARGE,
            amount=amount,
            currency=currency,
            deal_id=deal_id,
            payment_intent_id=payment_intent_id,
            created_at=at,
        )

    @classmethod
    def for_refund(
        cls,
        refund_id: str,
        payment_intent_id: str,
        deal_id: str,
        amount: int,
        currency: str,
        at: datetime,
    ) -> "LedgerEntry":
        return cls(
            entry_id=f"refund#{refund_id}",
            kind=LedgerEntryKind.REFUND,
            amount=-amount,
            currency=currency,
            deal_id=deal_id,
            payment_intent_id=payment_intent_id,
            created_at=at,
        )

    def to_item(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "kind": self.kind.value,
            "amount": self.amount,
            "currency": self.currency,
            "deal_id": self.deal_id,
            "payment_intent_id": self.payment_intent_id,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "LedgerEntry":
        return cls(
            entry_id=item["entry_id"],
            kind=LedgerEntryKind(item["kind"]),
            amount=int(item["amount"]),
            currency=item["currency"],
            deal_id=item["deal_id"],
            payment_intent_id=item["payment_intent_id"],
            created_at=parse_timestamp(item["created_at"]),
        )


class LedgerSnapshot(BaseModel):
    """Earnings figures derived from the ledger. Not authoritative."""

    model_config = ConfigDict(strict=True)

    gross_earnings: int = Field(default=0, description="Sum of captured charges")
    refunded_amount: int = Field(default=0, description="Sum of applied refunds")
    net_earnings: int = Field(default=0, description="Gross minus refunded")
    currency: str | None = Field(default=None, description="Currency filter, if any")
    deal_id: str | None = Field(default=None, description="Deal filter, if any")
    entry_count: int = Field(default=0, description="Number of contributing records")
