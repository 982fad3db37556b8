"""Earnings analytics endpoint."""

from fastapi import APIRouter, Depends, Query

from payrecon.services.ledger import LedgerAggregator
from payrecon_api.dependencies import get_ledger
from payrecon_api.models.earnings import EarningsResponse

router = APIRouter(tags=["earnings"])


@router.get(
    "/earnings/analytics",
    summary="Get earnings analytics",
    description="""
Gross, refunded and net earnings from the ledger.

With `rebuild=true` the figures are recomputed from payment intents and
refund records instead of read from the ledger journal.
""",
    response_model=EarningsResponse,
)
def get_earnings(
    deal_id: str | None = Query(default=None, alias="dealId"),
    currency: str | None = Query(default=None, min_length=3, max_length=3),
    rebuild: bool = Query(default=False),
    ledger: LedgerAggregator = Depends(get_ledger),
) -> EarningsResponse:
    if rebuild:
        return EarningsResponse.from_snapshot(ledger.rebuild(deal_id, currency), rebuilt=True)
    return EarningsResponse.from_snapshot(ledger.snapshot(deal_id, currency))
