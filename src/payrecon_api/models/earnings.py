"""API models for earnings analytics."""

from payrecon.models.ledger import LedgerSnapshot

from .common import ApiModel


class EarningsResponse(ApiModel):
    gross_earnings: int
    refunded_amount: int
    net_earnings: int
    currency: str | None = None
    deal_id: str | None = None
    entry_count: int
    rebuilt: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: LedgerSnapshot, rebuilt: bool = False) -> "EarningsResponse":
        return cls(**snapshot.model_dump(), rebuilt=rebuilt)
