"""DynamoDB service wrapper for prefixed table operations."""

import os
from collections.abc import Iterable
from typing import Any

import boto3
from botocore.exceptions import ClientError

# Module-level singleton for connection reuse
_dynamodb_service_instance: "DynamoDBService | None" = None


def get_dynamodb_service(
    environment: str | None = None,
    table_prefix: str | None = None,
) -> "DynamoDBService":
    """Get or create the singleton DynamoDB service instance.

    Creating boto3 resources is slow, so one instance is shared by every
    request handled by the process.

    Args:
        environment: Environment name. Only used on first call.
        table_prefix: Table name prefix. Only used on first call.

    Returns:
        Shared DynamoDBService instance
    """
    global _dynamodb_service_instance
    if _dynamodb_service_instance is None:
        _dynamodb_service_instance = DynamoDBService(environment, table_prefix)
    return _dynamodb_service_instance


def reset_dynamodb_service() -> None:
    """Reset the singleton instance (for testing only).

    This allows tests to create a fresh DynamoDBService inside
    a mock_aws context.
    """
    global _dynamodb_service_instance
    _dynamodb_service_instance = None


def is_conditional_check_failure(error: ClientError) -> bool:
    """True if a ClientError is a failed ConditionExpression."""
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoDBService:
    """Service for DynamoDB operations with environment-aware table names."""

    def __init__(
        self,
        environment: str | None = None,
        table_prefix: str | None = None,
    ) -> None:
        """Initialize DynamoDB service.

        Args:
            environment: Environment name (dev/prod). Defaults to ENVIRONMENT env var.
            table_prefix: Explicit table prefix. Defaults to DYNAMODB_TABLE_PREFIX.
        """
        self.environment = environment or os.getenv("ENVIRONMENT", "dev")
        self.name_prefix = table_prefix or os.getenv(
            "DYNAMODB_TABLE_PREFIX", f"subscriptions-{self.environment}"
        )
        self._dynamodb = boto3.resource("dynamodb")

    def _table_name(self, table: str) -> str:
        """Get full table name with prefix."""
        return f"{self.name_prefix}-{table}"

    def _get_table(self, table: str) -> Any:
        """Get DynamoDB table resource."""
        return self._dynamodb.Table(self._table_name(table))

    def get_item(
        self,
        table: str,
        key: dict[str, Any],
        consistent_read: bool = True,
    ) -> dict[str, Any] | None:
        """Get a single item by key.

        Args:
            table: Table name without prefix
            key: Primary key dict
            consistent_read: Use a strongly consistent read

        Returns:
            Item dict or None if not found
        """
        response = self._get_table(table).get_item(
            Key=key, ConsistentRead=consistent_read
        )
        item: dict[str, Any] | None = response.get("Item")
        return item

    def put_item(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
    ) -> bool:
        """Put an item into the table.

        Args:
            table: Table name without prefix
            item: Item to store
            condition_expression: Optional condition for write
            expression_attribute_values: Values referenced by the condition
            expression_attribute_names: Names referenced by the condition

        Returns:
            True if successful, False if condition failed
        """
        try:
            kwargs: dict[str, Any] = {"Item": item}
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression
            if expression_attribute_values:
                kwargs["ExpressionAttributeValues"] = expression_attribute_values
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names

            self._get_table(table).put_item(**kwargs)
            return True
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise

    def update_item(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any] | None:
        """Update an item with expressions.

        Args:
            table: Table name without prefix
            key: Primary key dict
            update_expression: DynamoDB update expression
            expression_attribute_values: Values for expression
            expression_attribute_names: Names for expression (for reserved words)
            condition_expression: Optional condition for update

        Returns:
            Updated attributes or None if condition failed
        """
        try:
            kwargs: dict[str, Any] = {
                "Key": key,
                "UpdateExpression": update_expression,
                "ReturnValues": "ALL_NEW",
            }
            if expression_attribute_values:
                kwargs["ExpressionAttributeValues"] = expression_attribute_values
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression

            response = self._get_table(table).update_item(**kwargs)
            attrs: dict[str, Any] | None = response.get("Attributes")
            return attrs
        except ClientError as e:
            if is_conditional_check_failure(e):
                return None
            raise


def build_update_expression(
    set_fields: dict[str, Any],
    remove_fields: Iterable[str] = (),
) -> tuple[str, dict[str, str], dict[str, Any]]:
    """Build a SET/REMOVE update expression with placeholder names.

    Every attribute goes through an ExpressionAttributeNames placeholder so
    reserved words (status, data, ...) never need special casing.

    Args:
        set_fields: Attributes to set and their values
        remove_fields: Attributes to remove

    Returns:
        Tuple of (update_expression, attribute_names, attribute_values)
    """
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_parts: list[str] = []
    remove_parts: list[str] = []

    for index, (field, value) in enumerate(sorted(set_fields.items())):
        names[f"#s{index}"] = field
        values[f":s{index}"] = value
        set_parts.append(f"#s{index} = :s{index}")

    for index, field in enumerate(sorted(set(remove_fields) - set(set_fields))):
        names[f"#r{index}"] = field
        remove_parts.append(f"#r{index}")

    clauses = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if remove_parts:
        clauses.append("REMOVE " + ", ".join(remove_parts))
    if not clauses:
        raise ValueError("update expression needs at least one field")

    return " ".join(clauses), names, values
