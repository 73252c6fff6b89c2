"""Account model: the billing-relevant subset of a persisted account record."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import AccountStatus

# Fields this core is allowed to write on an account record
MUTABLE_FIELDS: frozenset[str] = frozenset(
    {
        "account_status",
        "subscription_id",
        "last_payment_date",
        "auto_resume_date",
        "grace_period_expires_date",
        "subscription_expires_date",
        "product_id",
        "updated_at",
    }
)


class Account(BaseModel):
    """An account as seen by the subscription lifecycle.

    Timestamps are ISO-8601 UTC strings, matching how they are stored.
    Unknown attributes on the stored record are ignored.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    account_id: str = Field(..., description="Account ID (the provider's app_user_id)")
    account_status: AccountStatus = Field(..., description="Current billing status")
    subscription_id: str | None = Field(
        default=None,
        description="External subscription reference",
    )
    last_payment_date: str | None = Field(default=None, description="Last successful charge")
    auto_resume_date: str | None = Field(
        default=None,
        description="When a paused subscription resumes",
    )
    grace_period_expires_date: str | None = Field(
        default=None,
        description="End of the billing-issue grace period",
    )
    subscription_expires_date: str | None = Field(
        default=None,
        description="Current expiration of the subscription",
    )
    product_id: str | None = Field(default=None, description="Subscribed product")
    updated_at: str | None = Field(default=None, description="Last mutation timestamp")

    @property
    def is_deleted(self) -> bool:
        """Deleted accounts are terminal and never mutated by webhooks."""
        return self.account_status == AccountStatus.DELETED

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Account":
        """Build an Account from a DynamoDB item."""
        return cls.model_validate(item)
