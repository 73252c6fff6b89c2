"""Pytest configuration and fixtures for subscription webhook tests.

This module provides reusable fixtures for testing:
- DynamoDB mocking with moto (accounts, webhook-events, audit-logs)
- Account seeding and RevenueCat event factories
- Service singleton resets between tests
"""

import os
import time
import uuid
from collections.abc import Callable, Generator
from typing import Any

import boto3
import pytest
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
TEST_WEBHOOK_SECRET = "rc_whsec_test_secret_for_testing"
TEST_TABLE_PREFIX = "test-subscriptions"

os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ["DYNAMODB_TABLE_PREFIX"] = TEST_TABLE_PREFIX
os.environ["ENVIRONMENT"] = "test"
os.environ["REVENUECAT_WEBHOOK_SECRET"] = TEST_WEBHOOK_SECRET

# Only set fake credentials for moto if no real credentials are present
if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

# Table name (without prefix) -> hash key
TABLE_KEYS = {
    "accounts": "account_id",
    "webhook-events": "event_id",
    "audit-logs": "audit_id",
}


# === Singleton Fixtures ===


@pytest.fixture(autouse=True)
def reset_service_singletons() -> Generator[None, None, None]:
    """Reset cached services before and after each test.

    Tests using mock_aws need services (and their boto3 resources) created
    inside the mock context rather than reused from a previous test.
    """
    from api.dependencies import reset_services

    reset_services()
    yield
    reset_services()


# === DynamoDB Fixtures ===


@pytest.fixture
def aws_credentials() -> None:
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "eu-west-1"


@pytest.fixture
def dynamodb_tables(aws_credentials: None) -> Generator[Any, None, None]:
    """Create all webhook tables inside a moto context.

    Yields the boto3 DynamoDB resource for direct table inspection.
    """
    with mock_aws():
        client = boto3.client("dynamodb", region_name="eu-west-1")
        for table, key in TABLE_KEYS.items():
            client.create_table(
                TableName=f"{TEST_TABLE_PREFIX}-{table}",
                KeySchema=[{"AttributeName": key, "KeyType": "HASH"}],
                AttributeDefinitions=[{"AttributeName": key, "AttributeType": "S"}],
                BillingMode="PAY_PER_REQUEST",
            )
        yield boto3.resource("dynamodb", region_name="eu-west-1")


@pytest.fixture
def db(dynamodb_tables: Any) -> Any:
    """DynamoDBService bound to the mocked test tables."""
    from billing.services.dynamodb import DynamoDBService

    return DynamoDBService(environment="test", table_prefix=TEST_TABLE_PREFIX)


@pytest.fixture
def accounts_table(dynamodb_tables: Any) -> Any:
    return dynamodb_tables.Table(f"{TEST_TABLE_PREFIX}-accounts")


@pytest.fixture
def events_table(dynamodb_tables: Any) -> Any:
    return dynamodb_tables.Table(f"{TEST_TABLE_PREFIX}-webhook-events")


@pytest.fixture
def audit_table(dynamodb_tables: Any) -> Any:
    return dynamodb_tables.Table(f"{TEST_TABLE_PREFIX}-audit-logs")


# === Sample Data Fixtures ===


@pytest.fixture
def seed_account(accounts_table: Any) -> Callable[..., dict[str, Any]]:
    """Factory that stores an account record and returns it.

    Every record also carries non-billing attributes (email, display_name)
    so tests can check that webhook updates never touch them.
    """

    def _seed(account_id: str, status: str = "trial", **fields: Any) -> dict[str, Any]:
        item = {
            "account_id": account_id,
            "account_status": status,
            "email": f"{account_id.lower()}@example.com",
            "display_name": f"User {account_id}",
            **fields,
        }
        accounts_table.put_item(Item=item)
        return item

    return _seed


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    """Factory for RevenueCat webhook bodies.

    Fields passed as keyword arguments land inside the ``event`` object,
    the way RevenueCat nests them.
    """

    def _make(
        event_type: str,
        app_user_id: str | None = "U1",
        event_id: str | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        now_ms = int(time.time() * 1000)
        event: dict[str, Any] = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "type": event_type,
            "event_timestamp_ms": now_ms,
            "product_id": "premium_monthly",
            "store": "APP_STORE",
            "environment": "SANDBOX",
        }
        if app_user_id is not None:
            event["app_user_id"] = app_user_id
        event.update(fields)
        return {"api_version": "1.0", "event": event}

    return _make
