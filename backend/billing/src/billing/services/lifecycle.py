"""Subscription lifecycle state machine.

Maps a verified webhook event and the current account onto the account
status it should move to and the billing fields to write. Pure: no I/O, no
clock reads beyond the injectable ``now``. The processor persists the result.

Transition table:

    INITIAL_PURCHASE       -> active     subscription_id, last_payment_date, product_id
    RENEWAL                -> unchanged  last_payment_date
    CANCELLATION           -> canceled
    UNCANCELLATION         -> active
    SUBSCRIPTION_PAUSED    -> paused     auto_resume_date
    SUBSCRIPTION_EXTENDED  -> active     subscription_expires_date
    BILLING_ISSUE          -> past_due   grace_period_expires_date
    EXPIRATION             -> frozen
    TRANSFER               -> active     subscription_id (sources -> frozen, no subscription)
    PRODUCT_CHANGE         -> unchanged  product_id
    TEST                   -> no account touched

Deleted accounts are terminal: events targeting them are accepted but
produce no mutation, so a delayed delivery cannot resurrect them.
"""

import datetime as dt
import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from billing.models.account import Account
from billing.models.enums import AccountStatus, EventType
from billing.models.errors import UnknownEventType
from billing.models.webhook import WebhookEvent

logger = logging.getLogger(__name__)


class Transition(BaseModel):
    """The outcome of applying one event to the account(s) it references."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    account_id: str | None = Field(default=None, description="Target account")
    previous_status: AccountStatus | None = None
    next_status: AccountStatus | None = Field(
        default=None,
        description="Target status after the event (None when no account is involved)",
    )
    updates: dict[str, Any] = Field(
        default_factory=dict,
        description="Billing fields to write on the target; empty means no mutation",
    )
    source_updates: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="TRANSFER only: per-source-account field updates",
    )
    audit_action: str
    audit_metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def has_mutations(self) -> bool:
        return bool(self.updates) or any(self.source_updates.values())


def _status_change(status: AccountStatus, **fields: Any) -> dict[str, Any]:
    """Updates that move an account to a status plus optional payload fields.

    Payload fields that are absent (None) are left untouched on the record.
    """
    updates: dict[str, Any] = {"account_status": status}
    updates.update({name: value for name, value in fields.items() if value is not None})
    return updates


class LifecycleStateMachine:
    """Computes account transitions for provider lifecycle events."""

    def apply(
        self,
        event: WebhookEvent,
        account: Account | None,
        sources: Sequence[Account] = (),
        now: dt.datetime | None = None,
    ) -> Transition:
        """Compute the transition for an event.

        Args:
            event: Verified webhook event
            account: Current target account (None only for TEST events)
            sources: TRANSFER source accounts, already looked up
            now: Clock override for payment timestamps

        Returns:
            The Transition to persist

        Raises:
            UnknownEventType: Event type outside the closed set
            ValueError: A non-TEST event was given no target account
        """
        event_type = event.event_type
        if event_type is None:
            raise UnknownEventType(event.type)

        now_iso = (now or dt.datetime.now(dt.UTC)).isoformat()

        if event_type is EventType.TEST:
            return Transition(
                event_type=event_type,
                audit_action="webhook_test_received",
                audit_metadata={"event_type": event_type.value, "timestamp": now_iso},
            )

        if account is None:
            raise ValueError(f"{event_type.value} requires a target account")

        updates, action, metadata = self._target_updates(event_type, event, now_iso)
        source_updates: dict[str, dict[str, Any]] = {}

        if event_type is EventType.TRANSFER:
            for source in sources:
                if source.account_id == account.account_id:
                    continue
                if source.is_deleted:
                    logger.info(
                        "TRANSFER source %s is deleted, leaving it untouched",
                        source.account_id,
                    )
                    continue
                source_updates[source.account_id] = {
                    "account_status": AccountStatus.FROZEN,
                    "subscription_id": None,
                    "updated_at": now_iso,
                }

        next_status = updates.get("account_status", account.account_status)

        if account.is_deleted:
            logger.info(
                "Account %s is deleted, %s accepted without mutation",
                account.account_id,
                event_type.value,
            )
            # Sources keep their subscription when the target is deleted
            updates = {}
            source_updates = {}
            next_status = AccountStatus.DELETED
        elif updates:
            updates["updated_at"] = now_iso

        return Transition(
            event_type=event_type,
            account_id=account.account_id,
            previous_status=account.account_status,
            next_status=next_status,
            updates=updates,
            source_updates=source_updates,
            audit_action=action,
            audit_metadata=metadata,
        )

    def _target_updates(
        self,
        event_type: EventType,
        event: WebhookEvent,
        now_iso: str,
    ) -> tuple[dict[str, Any], str, dict[str, Any]]:
        """Target-account updates, audit action and audit metadata per event type."""
        match event_type:
            case EventType.INITIAL_PURCHASE:
                return (
                    _status_change(
                        AccountStatus.ACTIVE,
                        subscription_id=event.subscription_id,
                        last_payment_date=now_iso,
                        product_id=event.product_id,
                    ),
                    "subscription_created",
                    {
                        "product_id": event.product_id,
                        "store": event.field("store"),
                        "price": event.price,
                    },
                )
            case EventType.RENEWAL:
                return (
                    {"last_payment_date": now_iso},
                    "subscription_renewed",
                    {"product_id": event.product_id, "expires_date": event.expiration_date},
                )
            case EventType.CANCELLATION:
                return (
                    _status_change(AccountStatus.CANCELED),
                    "subscription_canceled",
                    {
                        "cancellation_reason": event.field("cancel_reason")
                        or event.field("cancellation_reason"),
                        "expires_at": event.expiration_date,
                    },
                )
            case EventType.UNCANCELLATION:
                return (
                    _status_change(AccountStatus.ACTIVE),
                    "subscription_reactivated",
                    {"product_id": event.product_id},
                )
            case EventType.SUBSCRIPTION_PAUSED:
                return (
                    _status_change(
                        AccountStatus.PAUSED,
                        auto_resume_date=event.auto_resume_date,
                    ),
                    "subscription_paused",
                    {"auto_resume_date": event.auto_resume_date, "product_id": event.product_id},
                )
            case EventType.SUBSCRIPTION_EXTENDED:
                return (
                    _status_change(
                        AccountStatus.ACTIVE,
                        subscription_expires_date=event.expiration_date,
                    ),
                    "subscription_extended",
                    {"new_expires_date": event.expiration_date, "product_id": event.product_id},
                )
            case EventType.BILLING_ISSUE:
                return (
                    _status_change(
                        AccountStatus.PAST_DUE,
                        grace_period_expires_date=event.grace_period_expires_date,
                    ),
                    "payment_failed",
                    {
                        "grace_period_expires_at": event.grace_period_expires_date,
                        "product_id": event.product_id,
                    },
                )
            case EventType.EXPIRATION:
                return (
                    _status_change(AccountStatus.FROZEN),
                    "subscription_expired",
                    {
                        "expiration_reason": event.field("expiration_reason"),
                        "product_id": event.product_id,
                    },
                )
            case EventType.TRANSFER:
                return (
                    _status_change(
                        AccountStatus.ACTIVE,
                        subscription_id=event.subscription_id,
                    ),
                    "subscription_transferred",
                    {
                        "from_account_ids": event.transferred_from,
                        "subscription_id": event.subscription_id,
                        "product_id": event.product_id,
                    },
                )
            case EventType.PRODUCT_CHANGE:
                updates = {"product_id": event.product_id} if event.product_id else {}
                return (
                    updates,
                    "subscription_product_changed",
                    {
                        "new_product_id": event.product_id,
                        "old_product_id": event.old_product_id,
                    },
                )
            case _:
                raise UnknownEventType(event.type)
