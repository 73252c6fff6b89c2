"""Contract tests for POST /api/webhooks/revenuecat.

Tests verify the endpoint's HTTP contract end to end against moto-backed
DynamoDB tables:
- Signature validation (401)
- Method restriction (405)
- Malformed payloads (400)
- Lifecycle transitions per event type (200)
- Idempotent duplicate handling (200, duplicate)
- Business, store and unexpected failures (500, logged, retryable flag)
- Timeouts (503)
- Event log and audit log coverage
"""

import hashlib
import hmac
import json
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from starlette.status import (
    HTTP_200_OK,
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_405_METHOD_NOT_ALLOWED,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from api.dependencies import get_webhook_processor
from api.main import app
from billing.models import StoreUnavailable
from billing.services.account_store import AccountStore
from billing.services.deduplicator import EventDeduplicator
from billing.services.webhook_processor import WebhookProcessor

# === Test Configuration ===

WEBHOOK_PATH = "/api/webhooks/revenuecat"
SIGNATURE_HEADER = "X-RevenueCat-Signature"


# === Helper Functions ===


def _sign(payload: bytes, secret: str | None = None) -> str:
    """Create a valid RevenueCat signature (hex HMAC-SHA256 of the raw body)."""
    key = (secret or os.environ["REVENUECAT_WEBHOOK_SECRET"]).encode("utf-8")
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def _post(client: TestClient, body: dict[str, Any] | bytes, **headers: str) -> Any:
    payload = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    return client.post(
        WEBHOOK_PATH,
        content=payload,
        headers={
            "Content-Type": "application/json",
            SIGNATURE_HEADER: _sign(payload),
            **headers,
        },
    )


def _account(table: Any, account_id: str) -> dict[str, Any]:
    return table.get_item(Key={"account_id": account_id}, ConsistentRead=True)["Item"]


def _log_entry(table: Any, event_id: str) -> dict[str, Any] | None:
    return table.get_item(Key={"event_id": event_id}, ConsistentRead=True).get("Item")


# === Test Fixtures ===


@pytest.fixture
def client(dynamodb_tables: Any) -> TestClient:
    """Create test client for API (inside the moto context)."""
    return TestClient(app)


# === Signature and request validation ===


class TestRequestValidation:
    """Test rejections that happen before any event is logged."""

    def test_invalid_signature_returns_401(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
        events_table: Any,
    ) -> None:
        seed_account("U1", "trial")
        body = make_event("INITIAL_PURCHASE", "U1", event_id="evt_bad_sig")
        payload = json.dumps(body).encode()

        response = client.post(
            WEBHOOK_PATH,
            content=payload,
            headers={SIGNATURE_HEADER: _sign(payload, secret="wrong-secret")},
        )

        assert response.status_code == HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "Invalid signature"
        assert _log_entry(events_table, "evt_bad_sig") is None
        assert _account(accounts_table, "U1")["account_status"] == "trial"

    def test_missing_signature_returns_401(
        self, client: TestClient, make_event: Callable[..., dict[str, Any]]
    ) -> None:
        response = client.post(WEBHOOK_PATH, json=make_event("RENEWAL"))

        assert response.status_code == HTTP_401_UNAUTHORIZED
        assert "Invalid signature" in response.json()["error"]

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH"])
    def test_non_post_returns_405(self, client: TestClient, method: str) -> None:
        response = client.request(method, WEBHOOK_PATH)

        assert response.status_code == HTTP_405_METHOD_NOT_ALLOWED
        assert response.json()["error"] == "Method not allowed"
        assert "POST" in response.headers["allow"]

    def test_unparseable_body_returns_400(self, client: TestClient) -> None:
        response = _post(client, b"{not json")

        assert response.status_code == HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["error"].startswith("Malformed payload")
        assert data["code"] == "ERR_WEBHOOK_003"
        assert data["retryable"] is False

    def test_missing_type_is_logged_and_returns_400(
        self, client: TestClient, events_table: Any
    ) -> None:
        response = _post(client, {"event": {"id": "evt_no_type", "app_user_id": "U1"}})

        assert response.status_code == HTTP_400_BAD_REQUEST
        entry = _log_entry(events_table, "evt_no_type")
        assert entry is not None
        assert entry["success"] is False


# === Lifecycle transitions ===


class TestLifecycleEvents:
    """Test account mutations per event type."""

    def test_initial_purchase_activates_trial_account(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
        events_table: Any,
    ) -> None:
        seed_account("U1", "trial")
        body = make_event(
            "INITIAL_PURCHASE", "U1", event_id="evt_purchase", original_transaction_id="1000000123"
        )

        response = _post(client, body)

        assert response.status_code == HTTP_200_OK
        assert response.json() == {
            "success": True,
            "event_id": "evt_purchase",
            "event_type": "INITIAL_PURCHASE",
        }
        account = _account(accounts_table, "U1")
        assert account["account_status"] == "active"
        assert account["subscription_id"] == "1000000123"
        assert account["product_id"] == "premium_monthly"
        assert "last_payment_date" in account
        assert account["email"] == "u1@example.com"

        entry = _log_entry(events_table, "evt_purchase")
        assert entry is not None
        assert entry["success"] is True
        assert entry["processing_state"] == "succeeded"
        assert json.loads(entry["payload"]) == body

    @pytest.mark.parametrize(
        "event_type,start,expected",
        [
            ("RENEWAL", "active", "active"),
            ("CANCELLATION", "active", "canceled"),
            ("UNCANCELLATION", "canceled", "active"),
            ("SUBSCRIPTION_PAUSED", "active", "paused"),
            ("SUBSCRIPTION_EXTENDED", "past_due", "active"),
            ("BILLING_ISSUE", "active", "past_due"),
            ("EXPIRATION", "canceled", "frozen"),
            ("PRODUCT_CHANGE", "active", "active"),
        ],
    )
    def test_status_transitions(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
        event_type: str,
        start: str,
        expected: str,
    ) -> None:
        seed_account("U1", start)

        response = _post(client, make_event(event_type, "U1"))

        assert response.status_code == HTTP_200_OK
        assert _account(accounts_table, "U1")["account_status"] == expected

    def test_billing_issue_records_grace_period(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
    ) -> None:
        seed_account("U1", "active")

        _post(
            client,
            make_event("BILLING_ISSUE", "U1", grace_period_expiration_at_ms=1767225600000),
        )

        account = _account(accounts_table, "U1")
        assert account["account_status"] == "past_due"
        assert account["grace_period_expires_date"] == "2026-01-01T00:00:00+00:00"

    def test_test_event_without_user_succeeds(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        events_table: Any,
    ) -> None:
        response = _post(client, make_event("TEST", None, event_id="evt_test"))

        assert response.status_code == HTTP_200_OK
        entry = _log_entry(events_table, "evt_test")
        assert entry is not None
        assert entry["success"] is True
        assert "account_id" not in entry

    def test_deleted_account_is_not_resurrected(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
        events_table: Any,
    ) -> None:
        seed_account("U1", "deleted")

        response = _post(client, make_event("INITIAL_PURCHASE", "U1", event_id="evt_deleted"))

        assert response.status_code == HTTP_200_OK
        account = _account(accounts_table, "U1")
        assert account["account_status"] == "deleted"
        assert "subscription_id" not in account
        entry = _log_entry(events_table, "evt_deleted")
        assert entry is not None
        assert entry["success"] is True


class TestTransfer:
    """Test TRANSFER across accounts."""

    def test_transfer_moves_subscription(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
    ) -> None:
        seed_account("U1", "trial")
        seed_account("U2", "active", subscription_id="1000000999")
        body = make_event(
            "TRANSFER", "U1", transferred_from=["U2"], original_transaction_id="1000000999"
        )

        response = _post(client, body)

        assert response.status_code == HTTP_200_OK
        source = _account(accounts_table, "U2")
        assert source["account_status"] == "frozen"
        assert "subscription_id" not in source
        target = _account(accounts_table, "U1")
        assert target["account_status"] == "active"
        assert target["subscription_id"] == "1000000999"

    def test_missing_source_leaves_target_untouched(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
    ) -> None:
        seed_account("U1", "trial")

        response = _post(client, make_event("TRANSFER", "U1", transferred_from=["ghost"]))

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        assert "Account not found" in response.json()["error"]
        assert _account(accounts_table, "U1")["account_status"] == "trial"

    def test_transfer_to_deleted_account_keeps_source_subscription(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
        events_table: Any,
    ) -> None:
        seed_account("U1", "deleted")
        seed_account("U2", "active", subscription_id="sub_1")
        body = make_event("TRANSFER", "U1", event_id="evt_to_deleted", transferred_from=["U2"])

        response = _post(client, body)

        assert response.status_code == HTTP_200_OK
        source = _account(accounts_table, "U2")
        assert source["account_status"] == "active"
        assert source["subscription_id"] == "sub_1"
        target = _account(accounts_table, "U1")
        assert target["account_status"] == "deleted"
        assert "subscription_id" not in target
        entry = _log_entry(events_table, "evt_to_deleted")
        assert entry is not None
        assert entry["success"] is True


# === Idempotency ===


class TestIdempotency:
    """Test duplicate delivery handling."""

    def test_duplicate_is_acknowledged_and_not_reapplied(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
    ) -> None:
        seed_account("U1", "active")
        body = make_event("CANCELLATION", "U1", event_id="evt_dup")

        first = _post(client, body)
        # Account moves on before the redelivery arrives
        accounts_table.update_item(
            Key={"account_id": "U1"},
            UpdateExpression="SET account_status = :s",
            ExpressionAttributeValues={":s": "active"},
        )
        second = _post(client, body)

        assert first.status_code == HTTP_200_OK
        assert second.status_code == HTTP_200_OK
        assert second.json()["duplicate"] is True
        assert "duplicate" not in first.json()
        assert _account(accounts_table, "U1")["account_status"] == "active"

    def test_failed_event_succeeds_on_redelivery(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
        events_table: Any,
    ) -> None:
        """A failure is not a duplicate: the provider's retry is applied."""
        body = make_event("INITIAL_PURCHASE", "U7", event_id="evt_retry")

        first = _post(client, body)
        seed_account("U7", "trial")
        second = _post(client, body)

        assert first.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        assert second.status_code == HTTP_200_OK
        assert "duplicate" not in second.json()
        assert _account(accounts_table, "U7")["account_status"] == "active"
        entry = _log_entry(events_table, "evt_retry")
        assert entry is not None
        assert entry["success"] is True
        assert "error_code" not in entry

    def test_concurrent_deliveries_apply_once(
        self,
        dynamodb_tables: Any,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
        events_table: Any,
    ) -> None:
        """Both deliveries pass the dedup read before either claims the event."""
        seed_account("U1", "trial")
        payload = json.dumps(make_event("INITIAL_PURCHASE", "U1", event_id="evt_race")).encode()
        signature = _sign(payload)
        processor = get_webhook_processor()

        barrier = threading.Barrier(2, timeout=5)
        already_processed = EventDeduplicator.already_processed

        def _in_lockstep(self: EventDeduplicator, event_id: str) -> bool:
            seen = already_processed(self, event_id)
            barrier.wait()
            return seen

        with (
            patch.object(EventDeduplicator, "already_processed", _in_lockstep),
            patch.object(
                AccountStore, "update", autospec=True, side_effect=AccountStore.update
            ) as update,
            ThreadPoolExecutor(max_workers=2) as pool,
        ):
            results = list(pool.map(lambda _: processor.process(payload, signature), range(2)))

        assert sorted(result.duplicate for result in results) == [False, True]
        assert update.call_count == 1
        assert _account(accounts_table, "U1")["account_status"] == "active"
        assert events_table.scan()["Count"] == 1
        assert _log_entry(events_table, "evt_race")["success"] is True


# === Business and infrastructure failures ===


class TestFailures:
    """Test 500 failures, each logged with success=false."""

    def test_missing_user_id(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        events_table: Any,
    ) -> None:
        response = _post(client, make_event("RENEWAL", None, event_id="evt_no_user"))

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        assert "Missing user_id" in response.json()["error"]
        entry = _log_entry(events_table, "evt_no_user")
        assert entry is not None
        assert entry["success"] is False
        assert entry["error_code"] == "ERR_WEBHOOK_004"

    def test_blank_user_id(
        self, client: TestClient, make_event: Callable[..., dict[str, Any]]
    ) -> None:
        response = _post(client, make_event("RENEWAL", "   "))

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        assert "Missing user_id" in response.json()["error"]

    def test_account_not_found(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        events_table: Any,
    ) -> None:
        response = _post(client, make_event("RENEWAL", "nobody", event_id="evt_no_account"))

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        assert "Account not found" in response.json()["error"]
        entry = _log_entry(events_table, "evt_no_account")
        assert entry is not None
        assert entry["success"] is False
        assert entry["account_id"] == "nobody"

    def test_unknown_event_type(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        accounts_table: Any,
        events_table: Any,
    ) -> None:
        seed_account("U1", "active")

        response = _post(client, make_event("SUBSCRIBER_ALIAS", "U1", event_id="evt_alias"))

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        assert "Unknown event type" in response.json()["error"]
        assert _account(accounts_table, "U1")["account_status"] == "active"
        entry = _log_entry(events_table, "evt_alias")
        assert entry is not None
        assert entry["success"] is False

    def test_store_failure_is_retryable(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        events_table: Any,
    ) -> None:
        seed_account("U1", "active")

        with patch.object(AccountStore, "update", side_effect=StoreUnavailable("throttled")):
            response = _post(client, make_event("CANCELLATION", "U1", event_id="evt_store"))

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        data = response.json()
        assert data["retryable"] is True
        assert data["code"] == "ERR_WEBHOOK_007"
        entry = _log_entry(events_table, "evt_store")
        assert entry is not None
        assert entry["success"] is False
        assert entry["retryable"] is True

    def test_unreadable_account_record_is_logged_as_failed(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        events_table: Any,
    ) -> None:
        seed_account("U1", "legacy_plan")

        response = _post(client, make_event("RENEWAL", "U1", event_id="evt_bad_record"))

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        assert response.headers["content-type"] == "application/json"
        data = response.json()
        assert data["code"] == "ERR_WEBHOOK_009"
        assert data["error"].startswith("Internal error")
        entry = _log_entry(events_table, "evt_bad_record")
        assert entry is not None
        assert entry["processing_state"] == "failed"
        assert entry["success"] is False
        assert entry["error_code"] == "ERR_WEBHOOK_009"

    def test_unhandled_exception_returns_json_error(
        self, dynamodb_tables: Any, make_event: Callable[..., dict[str, Any]]
    ) -> None:
        client = TestClient(app, raise_server_exceptions=False)

        with patch.object(WebhookProcessor, "process", side_effect=RuntimeError("boom")):
            response = _post(client, make_event("RENEWAL", "U1"))

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {
            "error": "Internal error",
            "code": "ERR_WEBHOOK_009",
            "retryable": False,
        }


class TestTimeout:
    """Test the per-request processing bound."""

    def test_slow_processing_returns_503(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("WEBHOOK_REQUEST_TIMEOUT_SECONDS", "0.05")

        def _stall(*args: Any, **kwargs: Any) -> None:
            time.sleep(0.3)

        with patch.object(WebhookProcessor, "process", side_effect=_stall):
            response = _post(client, make_event("RENEWAL", "U1"))

        assert response.status_code == HTTP_503_SERVICE_UNAVAILABLE
        data = response.json()
        assert data["error"].startswith("Request timed out")
        assert data["retryable"] is True


# === Audit coverage ===


class TestAuditTrail:
    """Test secondary audit records and correlation IDs."""

    def test_success_writes_audit_records(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        seed_account: Callable[..., Any],
        audit_table: Any,
    ) -> None:
        seed_account("U1", "trial")

        response = _post(
            client,
            make_event("INITIAL_PURCHASE", "U1", price=4.99),
            **{"X-Correlation-ID": "corr-webhook-1", "X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )

        assert response.status_code == HTTP_200_OK
        assert response.headers["X-Correlation-ID"] == "corr-webhook-1"
        records = audit_table.scan()["Items"]
        actions = sorted(record["action"] for record in records)
        assert actions == ["revenuecat_webhook_received", "subscription_created"]
        assert all(record["ip_address"] == "203.0.113.7" for record in records)
        assert all(record["correlation_id"] == "corr-webhook-1" for record in records)

    def test_failed_delivery_still_writes_received_record(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        audit_table: Any,
    ) -> None:
        response = _post(
            client,
            make_event("RENEWAL", "nobody", event_id="evt_audit_fail"),
            **{"X-Correlation-ID": "corr-webhook-2", "X-Forwarded-For": "198.51.100.4"},
        )

        assert response.status_code == HTTP_500_INTERNAL_SERVER_ERROR
        records = audit_table.scan()["Items"]
        assert [record["action"] for record in records] == ["revenuecat_webhook_received"]
        record = records[0]
        assert record["account_id"] == "nobody"
        assert record["metadata"]["event_id"] == "evt_audit_fail"
        assert record["ip_address"] == "198.51.100.4"
        assert record["correlation_id"] == "corr-webhook-2"

    def test_rejected_signature_writes_no_audit_records(
        self,
        client: TestClient,
        make_event: Callable[..., dict[str, Any]],
        audit_table: Any,
    ) -> None:
        client.post(WEBHOOK_PATH, json=make_event("RENEWAL"), headers={SIGNATURE_HEADER: "0" * 64})

        assert audit_table.scan()["Items"] == []
