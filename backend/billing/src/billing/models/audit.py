"""Audit log record for subscription actions."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuditLogRecord(BaseModel):
    """A secondary audit entry describing what a webhook did to an account.

    Separate from the webhook event log: the event log answers "was this
    delivery applied", the audit log answers "what happened to this account".
    """

    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(..., description="Unique audit record ID", examples=["AUD-1A2B3C4D5E6F"])
    action: str = Field(..., description="Action name", examples=["subscription_created"])
    account_id: str | None = Field(default=None, description="Affected account")
    metadata: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = Field(default=None)
    correlation_id: str | None = Field(default=None)
    created_at: str = Field(..., description="ISO-8601 creation time")
