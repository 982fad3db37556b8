"""DynamoDB access for the reconciliation tables.

Every table name is ``{prefix}-{table}``. Conditional writes report a failed
condition as a return value (``False``/``None``) instead of raising, since
losing a compare-and-swap or an insert-if-absent is an expected outcome for
the callers. Transactions are built from low-level request dicts so intent,
refund and ledger rows can be written atomically.
"""

import os
from collections.abc import Callable, Iterator
from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

CONDITION_FAILED = "ConditionalCheckFailedException"
TRANSACTION_CANCELLED = "TransactionCanceledException"

_instance: "DynamoDBService | None" = None
_serializer = TypeSerializer()


def get_dynamodb_service(table_prefix: str | None = None) -> "DynamoDBService":
    """Return the process-wide DynamoDBService, creating it on first use.

    ``table_prefix`` only applies to the call that creates the instance.
    """
    global _instance
    if _instance is None:
        _instance = DynamoDBService(table_prefix)
    return _instance


def reset_dynamodb_service() -> None:
    """Drop the shared instance so the next call builds a fresh client."""
    global _instance
    _instance = None


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _serialize(values: dict[str, Any]) -> dict[str, Any]:
    return {name: _serializer.serialize(value) for name, value in values.items()}


def _expression_args(
    condition: str | None,
    values: dict[str, Any] | None,
    names: dict[str, str] | None,
) -> dict[str, Any]:
    args: dict[str, Any] = {}
    if condition:
        args["ConditionExpression"] = condition
    if values:
        args["ExpressionAttributeValues"] = values
    if names:
        args["ExpressionAttributeNames"] = names
    return args


def _pages(operation: Callable[..., dict[str, Any]], **request: Any) -> Iterator[list[dict[str, Any]]]:
    while True:
        page = operation(**request)
        yield page.get("Items", [])
        start_key = page.get("LastEvaluatedKey")
        if not start_key:
            return
        request["ExclusiveStartKey"] = start_key


class DynamoDBService:
    """Prefixed table access with conditional and transactional writes."""

    def __init__(self, table_prefix: str | None = None) -> None:
        """Create the boto3 resource and client.

        Args:
            table_prefix: Table name prefix. Falls back to
                DYNAMODB_TABLE_PREFIX, then to ``payrecon-{ENVIRONMENT}``.
        """
        if table_prefix is None:
            environment = os.getenv("ENVIRONMENT", "dev")
            table_prefix = os.getenv("DYNAMODB_TABLE_PREFIX", f"payrecon-{environment}")
        self.name_prefix = table_prefix
        self._resource = boto3.resource("dynamodb")
        self._client = boto3.client("dynamodb")

    def table_name(self, table: str) -> str:
        return f"{self.name_prefix}-{table}"

    def _table(self, table: str) -> Any:
        return self._resource.Table(self.table_name(table))

    def get_item(
        self,
        table: str,
        key: dict[str, Any],
        consistent_read: bool = False,
    ) -> dict[str, Any] | None:
        """Read one item by primary key, or None when absent.

        Compare-and-swap readers pass ``consistent_read=True`` so they never
        base a conditional write on a stale replica.
        """
        found = self._table(table).get_item(Key=key, ConsistentRead=consistent_read)
        return found.get("Item")

    def put_item(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
    ) -> bool:
        """Write an item, optionally only when a condition holds.

        Returns:
            False if the condition failed, True otherwise
        """
        args = _expression_args(
            condition_expression, expression_attribute_values, expression_attribute_names
        )
        try:
            self._table(table).put_item(Item=item, **args)
        except ClientError as e:
            if _error_code(e) == CONDITION_FAILED:
                return False
            raise
        return True

    def update_item(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any] | None:
        """Apply an update expression and return the item as written.

        Returns:
            All attributes after the update, or None if the condition failed
        """
        args = _expression_args(
            condition_expression, expression_attribute_values, expression_attribute_names
        )
        try:
            written = self._table(table).update_item(
                Key=key,
                UpdateExpression=update_expression,
                ReturnValues="ALL_NEW",
                **args,
            )
        except ClientError as e:
            if _error_code(e) == CONDITION_FAILED:
                return None
            raise
        return written.get("Attributes")

    def query(
        self,
        table: str,
        key_condition: Any,
        index_name: str | None = None,
        filter_expression: Any | None = None,
        limit: int | None = None,
        scan_index_forward: bool = True,
    ) -> list[dict[str, Any]]:
        """Query a table or index, reading pages until ``limit`` items are found."""
        request: dict[str, Any] = {
            "KeyConditionExpression": key_condition,
            "ScanIndexForward": scan_index_forward,
        }
        if index_name:
            request["IndexName"] = index_name
        if filter_expression is not None:
            request["FilterExpression"] = filter_expression

        items: list[dict[str, Any]] = []
        for page in _pages(self._table(table).query, **request):
            items.extend(page)
            if limit and len(items) >= limit:
                return items[:limit]
        return items

    def scan(
        self,
        table: str,
        filter_expression: Any | None = None,
    ) -> list[dict[str, Any]]:
        """Read every item of a table, optionally filtered."""
        request: dict[str, Any] = {}
        if filter_expression is not None:
            request["FilterExpression"] = filter_expression
        return [item for page in _pages(self._table(table).scan, **request) for item in page]

    def query_by_gsi(
        self,
        table: str,
        index_name: str,
        partition_key_name: str,
        partition_key_value: str,
        sort_key_condition: Any | None = None,
        filter_expression: Any | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Query an index by partition key, with an optional sort key condition."""
        key_condition = Key(partition_key_name).eq(partition_key_value)
        if sort_key_condition is not None:
            key_condition = key_condition & sort_key_condition
        return self.query(
            table,
            key_condition,
            index_name=index_name,
            filter_expression=filter_expression,
            limit=limit,
        )

    # Transactions

    def transact_write(self, items: list[dict[str, Any]]) -> bool:
        """Write all requests atomically.

        Args:
            items: Requests from ``put_request`` and ``update_request``

        Returns:
            False if any condition failed and nothing was written
        """
        try:
            self._client.transact_write_items(TransactItems=items)  # type: ignore[arg-type]
        except ClientError as e:
            if _error_code(e) == TRANSACTION_CANCELLED:
                return False
            raise
        return True

    def put_request(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        values = _serialize(expression_attribute_values) if expression_attribute_values else None
        return {
            "Put": {
                "TableName": self.table_name(table),
                "Item": _serialize(item),
                **_expression_args(condition_expression, values, None),
            }
        }

    def update_request(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any],
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any]:
        return {
            "Update": {
                "TableName": self.table_name(table),
                "Key": _serialize(key),
                "UpdateExpression": update_expression,
                **_expression_args(
                    condition_expression,
                    _serialize(expression_attribute_values),
                    expression_attribute_names,
                ),
            }
        }
