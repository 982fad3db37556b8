"""DynamoDB table definitions.

Shared by ``scripts/create_tables.py`` and the test fixtures so local tables
match the deployed ones.
"""

from typing import Any

from payrecon.utils.logging import get_logger

logger = get_logger(__name__)

WEBHOOK_EVENTS_TABLE = "webhook-events"
PAYMENT_INTENTS_TABLE = "payment-intents"
DEALS_TABLE = "deals"
REFUNDS_TABLE = "refunds"
LEDGER_ENTRIES_TABLE = "ledger-entries"

PENDING_INDEX = "pending-index"
PAYMENT_INTENT_INDEX = "payment-intent-index"
DEAL_INDEX = "deal-index"
PROCESSOR_INTENT_INDEX = "processor-intent-index"


def _gsi(name: str, hash_key: str, range_key: str | None = None) -> dict[str, Any]:
    key_schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
    if range_key:
        key_schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
    return {
        "IndexName": name,
        "KeySchema": key_schema,
        "Projection": {"ProjectionType": "ALL"},
    }


TABLE_DEFINITIONS: dict[str, dict[str, Any]] = {
    WEBHOOK_EVENTS_TABLE: {
        "KeySchema": [{"AttributeName": "event_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "event_id", "AttributeType": "S"},
            {"AttributeName": "pending_bucket", "AttributeType": "S"},
            {"AttributeName": "next_attempt_at", "AttributeType": "N"},
            {"AttributeName": "payment_intent_id", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            # Sparse: only unsettled events carry pending_bucket
            _gsi(PENDING_INDEX, "pending_bucket", "next_attempt_at"),
            _gsi(PAYMENT_INTENT_INDEX, "payment_intent_id"),
        ],
    },
    PAYMENT_INTENTS_TABLE: {
        "KeySchema": [{"AttributeName": "payment_intent_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "payment_intent_id", "AttributeType": "S"},
            {"AttributeName": "deal_id", "AttributeType": "S"},
            {"AttributeName": "processor_intent_id", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            _gsi(DEAL_INDEX, "deal_id"),
            _gsi(PROCESSOR_INTENT_INDEX, "processor_intent_id"),
        ],
    },
    DEALS_TABLE: {
        "KeySchema": [{"AttributeName": "deal_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [{"AttributeName": "deal_id", "AttributeType": "S"}],
    },
    REFUNDS_TABLE: {
        "KeySchema": [{"AttributeName": "refund_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "refund_id", "AttributeType": "S"},
            {"AttributeName": "payment_intent_id", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [_gsi(PAYMENT_INTENT_INDEX, "payment_intent_id")],
    },
    LEDGER_ENTRIES_TABLE: {
        "KeySchema": [{"AttributeName": "entry_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "entry_id", "AttributeType": "S"},
            {"AttributeName": "deal_id", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [_gsi(DEAL_INDEX, "deal_id")],
    },
}


def create_tables(client: Any, prefix: str) -> list[str]:
    """Create every table that does not exist yet.

    Args:
        client: boto3 DynamoDB client
        prefix: Table name prefix (e.g. ``payrecon-dev``)

    Returns:
        Names of the tables that were created
    """
    existing = set(client.list_tables().get("TableNames", []))
    created: list[str] = []
    for table, definition in TABLE_DEFINITIONS.items():
        name = f"{prefix}-{table}"
        if name in existing:
            logger.info("Table %s already exists", name)
            continue
        client.create_table(
            TableName=name, BillingMode="PAY_PER_REQUEST", **definition
        )
        created.append(name)
        logger.info("Created table %s", name)
    return created
