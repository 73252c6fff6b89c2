"""Enumeration types for subscription billing data models."""

from enum import Enum


class AccountStatus(str, Enum):
    """Billing status of an account."""

    TRIAL = "trial"
    ACTIVE = "active"
    ACTIVE_FREE = "active_free"
    CANCELED = "canceled"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    FROZEN = "frozen"
    DELETED = "deleted"  # Terminal, never left via webhook


class EventType(str, Enum):
    """Subscription lifecycle events delivered by the billing provider."""

    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    CANCELLATION = "CANCELLATION"
    UNCANCELLATION = "UNCANCELLATION"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    SUBSCRIPTION_EXTENDED = "SUBSCRIPTION_EXTENDED"
    BILLING_ISSUE = "BILLING_ISSUE"
    EXPIRATION = "EXPIRATION"
    TRANSFER = "TRANSFER"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    TEST = "TEST"

    @classmethod
    def parse(cls, value: str | None) -> "EventType | None":
        """Look up an event type by its wire value.

        Args:
            value: Raw event type string from the payload

        Returns:
            Matching EventType, or None for values outside the closed set
        """
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class ProcessingState(str, Enum):
    """State of an entry in the webhook event log."""

    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
