"""Ledger/analytics aggregator.

Net earnings are a projection. Each accepted charge or refund appends a
journal entry keyed by the authoritative record it mirrors (``charge#{intent}``
or ``refund#{refund}``), inserted only if absent and written in the same
transaction as that record. The snapshot sums the journal; ``rebuild``
recomputes the same figures from payment intents and refund records alone.
"""

from typing import Any

from boto3.dynamodb.conditions import Attr

from payrecon.models.enums import LedgerEntryKind
from payrecon.models.errors import ErrorCode, ReconciliationError
from payrecon.models.ledger import LedgerEntry, LedgerSnapshot
from payrecon.models.payment_intent import SETTLED_STATUSES, PaymentIntent, RefundRecord
from payrecon.services.dynamodb import DynamoDBService
from payrecon.services.schema import (
    DEAL_INDEX,
    LEDGER_ENTRIES_TABLE,
    PAYMENT_INTENTS_TABLE,
    REFUNDS_TABLE,
)
from payrecon.utils.logging import get_logger

logger = get_logger(__name__)


def _summarise(
    figures: list[tuple[str, int, int]], deal_id: str | None, currency: str | None
) -> LedgerSnapshot:
    """Total ``(currency, gross, refunded)`` figures of contributing records.

    Raises:
        ReconciliationError: MIXED_CURRENCIES if no currency was asked for
            and the records span more than one
    """
    wanted = currency.lower() if currency else None
    selected = [figure for figure in figures if wanted is None or figure[0] == wanted]
    currencies = sorted({figure[0] for figure in selected})
    if len(currencies) > 1:
        raise ReconciliationError(
            ErrorCode.MIXED_CURRENCIES, details={"currencies": ",".join(currencies)}
        )
    gross = sum(figure[1] for figure in selected)
    refunded = sum(figure[2] for figure in selected)
    return LedgerSnapshot(
        gross_earnings=gross,
        refunded_amount=refunded,
        net_earnings=gross - refunded,
        currency=wanted or (currencies[0] if currencies else None),
        deal_id=deal_id,
        entry_count=len(selected),
    )


class LedgerAggregator:
    """Maintains and reads the earnings journal."""

    def __init__(self, db: DynamoDBService) -> None:
        self.db = db

    def entry_request(self, entry: LedgerEntry) -> dict[str, Any]:
        """Build the transactional insert-if-absent for a journal entry."""
        return self.db.put_request(
            LEDGER_ENTRIES_TABLE,
            entry.to_item(),
            condition_expression="attribute_not_exists(entry_id)",
        )

    def entries(self, deal_id: str | None = None) -> list[LedgerEntry]:
        if deal_id:
            items = self.db.query_by_gsi(
                LEDGER_ENTRIES_TABLE, DEAL_INDEX, "deal_id", deal_id
            )
        else:
            items = self.db.scan(LEDGER_ENTRIES_TABLE)
        return [LedgerEntry.from_item(item) for item in items]

    def snapshot(
        self, deal_id: str | None = None, currency: str | None = None
    ) -> LedgerSnapshot:
        """Sum the journal into gross, refunded and net earnings.

        Args:
            deal_id: Restrict to one deal
            currency: Restrict to one currency; required when the selected
                entries span several

        Returns:
            LedgerSnapshot for the selection
        """
        figures = [
            (
                entry.currency,
                entry.amount if entry.kind == LedgerEntryKind.CHARGE else 0,
                0 if entry.kind == LedgerEntryKind.CHARGE else -entry.amount,
            )
            for entry in self.entries(deal_id)
        ]
        return _summarise(figures, deal_id, currency)

    def rebuild(
        self, deal_id: str | None = None, currency: str | None = None
    ) -> LedgerSnapshot:
        """Recompute earnings from payment intents and refund records.

        Args:
            deal_id: Restrict to one deal
            currency: Restrict to one currency; required when the selected
                records span several

        Returns:
            LedgerSnapshot derived without reading the journal
        """
        if deal_id:
            intent_items = self.db.query_by_gsi(
                PAYMENT_INTENTS_TABLE, DEAL_INDEX, "deal_id", deal_id
            )
            refund_items = self.db.scan(
                REFUNDS_TABLE, filter_expression=Attr("deal_id").eq(deal_id)
            )
        else:
            intent_items = self.db.scan(PAYMENT_INTENTS_TABLE)
            refund_items = self.db.scan(REFUNDS_TABLE)

        figures = [
            (intent.currency, intent.amount, 0)
            for intent in (PaymentIntent.from_item(item) for item in intent_items)
            if intent.status in SETTLED_STATUSES
        ]
        figures.extend(
            (refund.currency, 0, refund.amount_refunded)
            for refund in (RefundRecord.from_item(item) for item in refund_items)
        )
        return _summarise(figures, deal_id, currency)

    def verify(self, deal_id: str | None = None, currency: str | None = None) -> bool:
        """Check that the journal agrees with the authoritative records."""
        projected = self.snapshot(deal_id, currency)
        rebuilt = self.rebuild(deal_id, currency)
        if projected == rebuilt:
            return True
        logger.error(
            "Ledger drift detected (deal=%s currency=%s): journal=%s rebuilt=%s",
            deal_id,
            currency,
            projected.model_dump(),
            rebuilt.model_dump(),
        )
        return False
