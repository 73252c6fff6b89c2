"""Audit trail for webhook processing.

Two kinds of records:

- The webhook event log entry (one per signature-valid event with an id),
  written synchronously through the deduplicator. Its write is part of the
  request: if it fails the request fails.
- Secondary audit records in the ``audit-logs`` table describing what
  happened to an account. These are best effort and scheduled off the
  request path; failures are logged, never raised.
"""

import datetime as dt
import json
import logging
import uuid
from decimal import Decimal
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from billing.models.audit import AuditLogRecord
from billing.models.errors import WebhookError
from billing.models.webhook import WebhookEvent
from billing.utils.logging import get_correlation_id, log_webhook_event

from .deduplicator import EventClaim, EventDeduplicator
from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)


def _to_dynamodb(metadata: dict[str, Any]) -> dict[str, Any]:
    """Make metadata storable: floats become Decimal, None values are dropped."""
    cleaned = {key: value for key, value in metadata.items() if value is not None}
    result: dict[str, Any] = json.loads(
        json.dumps(cleaned, default=str),
        parse_float=Decimal,
    )
    return result


class AuditLogger:
    """Writes the event log outcome and secondary audit records."""

    AUDIT_LOGS_TABLE = "audit-logs"

    def __init__(self, dedup: EventDeduplicator, db: DynamoDBService) -> None:
        """Initialize audit logger.

        Args:
            dedup: Deduplicator owning the webhook event log
            db: DynamoDB service instance for audit-logs
        """
        self._dedup = dedup
        self._db = db

    def record(
        self,
        claim: EventClaim,
        event: WebhookEvent,
        account_id: str | None,
        success: bool,
        error: WebhookError | None = None,
    ) -> bool:
        """Record the outcome of processing one event.

        Args:
            claim: The claim this delivery holds on the event
            event: The processed event
            account_id: Target account, if known
            success: Whether the transition was applied
            error: The failure, when success is False

        Returns:
            True if the log entry was written, False if the claim was lost

        Raises:
            StoreUnavailable: If the event log cannot be written
        """
        written = self._dedup.mark_processed(
            claim,
            event_type=event.type,
            account_id=account_id,
            payload=event.payload,
            success=success,
            error=error,
        )
        log_webhook_event(
            logger,
            event.type,
            event.id,
            account_id=account_id,
            result="success" if success else "error",
            error=error.message if error else None,
        )
        return written

    def record_action(
        self,
        action: str,
        account_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        correlation_id: str | None = None,
    ) -> AuditLogRecord | None:
        """Write a secondary audit record.

        Args:
            action: Action name (e.g. "subscription_created")
            account_id: Affected account
            metadata: Free-form context for the action
            ip_address: Caller IP address
            correlation_id: Request correlation ID (defaults to the current one)

        Returns:
            The stored record, or None if the write failed
        """
        record = AuditLogRecord(
            audit_id=f"AUD-{uuid.uuid4().hex[:12].upper()}",
            action=action,
            account_id=account_id,
            metadata=metadata or {},
            ip_address=ip_address,
            correlation_id=correlation_id or get_correlation_id(),
            created_at=dt.datetime.now(dt.UTC).isoformat(),
        )

        item = record.model_dump(exclude_none=True)
        item["metadata"] = _to_dynamodb(record.metadata)

        try:
            self._db.put_item(self.AUDIT_LOGS_TABLE, item)
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to write audit record %s for %s: %s", action, account_id, e)
            return None

        logger.debug("Audit record %s: %s", record.audit_id, action)
        return record
