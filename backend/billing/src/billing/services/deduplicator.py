"""Event deduplication over the durable webhook event log.

The provider delivers at least once, possibly concurrently. Exactly-once
application is enforced by a conditional insert into the event log keyed by
event_id: whoever inserts the PROCESSING entry owns the event until it marks
it processed or its lease runs out. Read-then-write checks are only used as a
fast path for already-applied events, never as the guard.
"""

import datetime as dt
import json
import logging
import uuid
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict

from billing.models.enums import ProcessingState
from billing.models.errors import StoreUnavailable, WebhookError
from billing.models.webhook import WebhookEvent, WebhookEventLogEntry

from .dynamodb import DynamoDBService, build_update_expression

logger = logging.getLogger(__name__)

# Insert succeeds for a new event, a failed attempt, or an abandoned claim
CLAIM_CONDITION = (
    "attribute_not_exists(event_id)"
    " OR #state = :failed"
    " OR (#state = :processing AND lease_expires_at < :now)"
)


class EventClaim(BaseModel):
    """Proof that this delivery owns an event until it is marked processed."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    claim_token: str
    received_at: str
    lease_expires_at: int


class EventDeduplicator:
    """Decides whether an event was already applied, and claims it if not."""

    WEBHOOK_EVENTS_TABLE = "webhook-events"

    def __init__(self, db: DynamoDBService, lease_seconds: int = 60) -> None:
        """Initialize deduplicator.

        Args:
            db: DynamoDB service instance
            lease_seconds: How long a PROCESSING claim blocks other deliveries
        """
        self._db = db
        self._lease_seconds = lease_seconds

    def get_entry(self, event_id: str) -> WebhookEventLogEntry | None:
        """Fetch the log entry for an event, if any.

        Raises:
            StoreUnavailable: If the event log cannot be read
        """
        try:
            item = self._db.get_item(self.WEBHOOK_EVENTS_TABLE, {"event_id": event_id})
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailable(f"event log read failed: {e}") from e
        return WebhookEventLogEntry.from_item(item) if item else None

    def already_processed(self, event_id: str) -> bool:
        """Check if an event was already applied successfully.

        An entry with success=False does not count: failed attempts may be
        retried by a redelivery.

        Args:
            event_id: Provider event ID

        Returns:
            True if the event must not be applied again
        """
        entry = self.get_entry(event_id)
        return entry is not None and entry.success

    def claim(
        self,
        event: WebhookEvent,
        payload_hash: str | None = None,
    ) -> EventClaim | None:
        """Atomically insert a PROCESSING entry for an event.

        Args:
            event: The verified webhook event
            payload_hash: SHA-256 of the raw body

        Returns:
            EventClaim if this delivery now owns the event, None if another
            delivery has applied it or is applying it right now

        Raises:
            StoreUnavailable: If the event log cannot be written
        """
        now = dt.datetime.now(dt.UTC)
        now_epoch = int(now.timestamp())
        claim = EventClaim(
            event_id=event.id,
            claim_token=uuid.uuid4().hex,
            received_at=now.isoformat(),
            lease_expires_at=now_epoch + self._lease_seconds,
        )

        entry = WebhookEventLogEntry(
            event_id=event.id,
            event_type=event.type,
            account_id=event.subject_id or None,
            success=False,
            processing_state=ProcessingState.PROCESSING,
            payload=json.dumps(event.payload, sort_keys=True),
            payload_hash=payload_hash,
            received_at=claim.received_at,
            event_timestamp=event.event_timestamp,
            claim_token=claim.claim_token,
            lease_expires_at=claim.lease_expires_at,
        )

        try:
            inserted = self._db.put_item(
                self.WEBHOOK_EVENTS_TABLE,
                entry.model_dump(mode="json", exclude_none=True),
                condition_expression=CLAIM_CONDITION,
                expression_attribute_values={
                    ":failed": ProcessingState.FAILED.value,
                    ":processing": ProcessingState.PROCESSING.value,
                    ":now": now_epoch,
                },
                expression_attribute_names={"#state": "processing_state"},
            )
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailable(f"event log write failed: {e}") from e

        if not inserted:
            logger.info("Event %s is held by another delivery", event.id)
            return None

        logger.debug("Claimed event %s until %d", event.id, claim.lease_expires_at)
        return claim

    def mark_processed(
        self,
        claim: EventClaim,
        *,
        event_type: str,
        account_id: str | None,
        payload: dict[str, Any] | str,
        success: bool,
        error: WebhookError | None = None,
    ) -> bool:
        """Finalize a claimed entry as succeeded or failed.

        The write only lands while this delivery still holds the claim.

        Args:
            claim: Claim returned by claim()
            event_type: Raw event type
            account_id: Target account, if known
            payload: Verbatim payload (dict or JSON string)
            success: Whether the transition was applied
            error: The failure, when success is False

        Returns:
            True if the entry was updated, False if the claim was lost

        Raises:
            StoreUnavailable: If the event log cannot be written
        """
        if not isinstance(payload, str):
            payload = json.dumps(payload, sort_keys=True)

        state = ProcessingState.SUCCEEDED if success else ProcessingState.FAILED
        set_fields: dict[str, Any] = {
            "processing_state": state.value,
            "success": success,
            "event_type": event_type,
            "payload": payload,
            "processed_at": dt.datetime.now(dt.UTC).isoformat(),
            "retryable": bool(error and error.retryable),
        }
        remove_fields = ["lease_expires_at"]

        if account_id:
            set_fields["account_id"] = account_id
        if error is not None:
            set_fields["error_code"] = error.code.value
            set_fields["error_message"] = error.message
        else:
            remove_fields.extend(["error_code", "error_message"])

        update_expression, names, values = build_update_expression(set_fields, remove_fields)
        values[":token"] = claim.claim_token

        try:
            updated = self._db.update_item(
                self.WEBHOOK_EVENTS_TABLE,
                {"event_id": claim.event_id},
                update_expression,
                values,
                names,
                condition_expression="claim_token = :token",
            )
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailable(f"event log write failed: {e}") from e

        if updated is None:
            logger.warning(
                "Lost claim on event %s before it was marked %s",
                claim.event_id,
                state.value,
            )
            return False
        return True
