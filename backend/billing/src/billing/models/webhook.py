"""Webhook event models: the inbound message and its durable log entry."""

import datetime as dt
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import EventType, ProcessingState
from .errors import MalformedPayload


def _ms_to_iso(value: Any) -> str | None:
    """Convert a millisecond epoch value to an ISO-8601 UTC string."""
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return dt.datetime.fromtimestamp(millis / 1000, tz=dt.UTC).isoformat()


def _normalize_iso(value: Any) -> str | None:
    """Normalize an ISO-8601 string to UTC, or None if it does not parse."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC).isoformat()


class WebhookEvent(BaseModel):
    """A signature-verified lifecycle event from the billing provider.

    RevenueCat nests event details under an ``event`` key; some deliveries
    (and our tests) also carry fields at the top level or on the first
    ``subscriber.subscriptions`` entry. Accessors look in that order.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Provider event ID (idempotency key)")
    type: str = Field(default="", description="Raw event type string")
    subject_id: str = Field(default="", description="app_user_id of the target account")
    payload: dict[str, Any] = Field(default_factory=dict, description="Verbatim body")

    @classmethod
    def from_body(cls, raw_body: bytes) -> "WebhookEvent":
        """Parse a verified request body.

        Args:
            raw_body: Raw request bytes (already signature-checked)

        Returns:
            Parsed WebhookEvent

        Raises:
            MalformedPayload: Body is not a JSON object or has no event id
        """
        try:
            body = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedPayload("body is not valid JSON") from e

        if not isinstance(body, dict):
            raise MalformedPayload("body is not a JSON object")

        inner = body.get("event")
        if not isinstance(inner, dict):
            inner = {}

        event_id = body.get("id") or inner.get("id")
        if not event_id or not isinstance(event_id, str):
            raise MalformedPayload("missing event id")

        event_type = body.get("type") or inner.get("type") or ""
        subject = inner.get("app_user_id") or body.get("app_user_id") or ""

        return cls(
            id=event_id,
            type=str(event_type),
            subject_id=str(subject).strip(),
            payload=body,
        )

    @property
    def event_type(self) -> EventType | None:
        """The closed-set event type, or None if unrecognized."""
        return EventType.parse(self.type)

    @property
    def details(self) -> dict[str, Any]:
        inner = self.payload.get("event")
        return inner if isinstance(inner, dict) else {}

    @property
    def first_subscription(self) -> dict[str, Any]:
        subscriber = self.payload.get("subscriber")
        if not isinstance(subscriber, dict):
            return {}
        subscriptions = subscriber.get("subscriptions")
        if isinstance(subscriptions, list) and subscriptions:
            first = subscriptions[0]
            return first if isinstance(first, dict) else {}
        return {}

    def field(self, name: str) -> Any:
        """Look up a payload field across the event, top level and subscription."""
        for source in (self.details, self.payload, self.first_subscription):
            value = source.get(name)
            if value not in (None, ""):
                return value
        return None

    def timestamp(self, ms_field: str, iso_field: str) -> str | None:
        """Read a timestamp given as epoch milliseconds or as an ISO string."""
        from_ms = _ms_to_iso(self.field(ms_field))
        if from_ms:
            return from_ms
        return _normalize_iso(self.field(iso_field))

    @property
    def subscription_id(self) -> str:
        """Subscription reference, falling back to the event id."""
        for name in ("subscription_id", "original_transaction_id", "transaction_id"):
            value = self.field(name)
            if value:
                return str(value)
        subscription = self.first_subscription.get("id")
        return str(subscription) if subscription else self.id

    @property
    def product_id(self) -> str | None:
        value = self.field("product_id")
        return str(value) if value else None

    @property
    def old_product_id(self) -> str | None:
        value = self.field("old_product_id")
        return str(value) if value else None

    @property
    def price(self) -> Any:
        return self.field("price")

    @property
    def expiration_date(self) -> str | None:
        return self.timestamp("expiration_at_ms", "expires_date")

    @property
    def grace_period_expires_date(self) -> str | None:
        return self.timestamp("grace_period_expiration_at_ms", "grace_period_expires_date")

    @property
    def auto_resume_date(self) -> str | None:
        return self.timestamp("auto_resume_date_ms", "auto_resume_date")

    @property
    def event_timestamp(self) -> str | None:
        return self.timestamp("event_timestamp_ms", "event_timestamp")

    @property
    def transferred_from(self) -> list[str]:
        """Source account IDs of a TRANSFER, empty when absent."""
        value = self.field("transferred_from")
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return []
        return [str(v).strip() for v in value if v and str(v).strip()]


class WebhookEventLogEntry(BaseModel):
    """Durable record of a received webhook event.

    Used for:
    - Idempotency: an entry with success=True is never re-applied
    - Concurrency: the conditional insert of a PROCESSING entry claims the event
    - Auditing: every signature-valid event with an id gets exactly one entry
    """

    model_config = ConfigDict(extra="ignore")

    event_id: str = Field(..., description="Provider event ID", examples=["evt_1ABC123"])
    event_type: str = Field(..., description="Raw event type", examples=["RENEWAL"])
    account_id: str | None = Field(default=None, description="Target account, if known")
    success: bool = Field(default=False, description="True once the transition applied")
    processing_state: ProcessingState = Field(default=ProcessingState.PROCESSING)
    payload: str = Field(..., description="Verbatim JSON payload")
    payload_hash: str | None = Field(default=None, description="SHA-256 of raw body")
    received_at: str = Field(..., description="When the delivery was claimed")
    processed_at: str | None = Field(default=None)
    event_timestamp: str | None = Field(
        default=None,
        description="Provider-side event time, recorded for ordering triage",
    )
    error_code: str | None = Field(default=None)
    error_message: str | None = Field(default=None)
    retryable: bool = Field(default=False)
    claim_token: str | None = Field(default=None)
    lease_expires_at: int | None = Field(
        default=None,
        description="Epoch seconds after which a PROCESSING claim may be taken over",
    )

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "WebhookEventLogEntry":
        """Build an entry from a DynamoDB item (numbers arrive as Decimal)."""
        data = dict(item)
        if data.get("lease_expires_at") is not None:
            data["lease_expires_at"] = int(data["lease_expires_at"])
        return cls.model_validate(data)
