"""Process-wide configuration for the webhook processor.

Settings are read once at startup and passed explicitly to the components
that need them (signature verification, the processor, the DynamoDB layer).
"""

import logging
import os

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from billing.services.ssm_service import (
    SSMServiceError,
    get_ssm_service,
    webhook_secret_parameter,
)

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing."""


class WebhookSettings(BaseModel):
    """Configuration for the subscription webhook endpoint."""

    model_config = ConfigDict(frozen=True)

    environment: str = Field(default="dev", description="Deployment environment")
    provider_name: str = Field(default="RevenueCat", description="Billing provider")
    signature_header: str = Field(
        default="X-RevenueCat-Signature",
        description="Header carrying the hex HMAC-SHA256 of the raw body",
    )
    webhook_secret: SecretStr = Field(..., description="Shared HMAC signing secret")
    table_prefix: str | None = Field(
        default=None,
        description="DynamoDB table prefix (defaults to subscriptions-<environment>)",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound on processing one delivery",
    )
    claim_lease_seconds: int = Field(
        default=60,
        gt=0,
        description="How long an in-flight claim blocks concurrent deliveries",
    )

    @property
    def secret_bytes(self) -> bytes:
        """Signing secret as bytes for HMAC."""
        return self.webhook_secret.get_secret_value().encode("utf-8")

    @classmethod
    def from_environment(cls) -> "WebhookSettings":
        """Build settings from environment variables.

        The secret comes from REVENUECAT_WEBHOOK_SECRET, falling back to
        SSM Parameter Store.

        Raises:
            ConfigurationError: If no signing secret can be found.
        """
        environment = os.getenv("ENVIRONMENT", "dev")
        secret = os.getenv("REVENUECAT_WEBHOOK_SECRET")

        if not secret:
            parameter = webhook_secret_parameter(environment)
            try:
                secret = get_ssm_service().get_parameter(parameter)
            except SSMServiceError as e:
                raise ConfigurationError(
                    "REVENUECAT_WEBHOOK_SECRET is not set and "
                    f"{parameter} could not be read: {e}"
                ) from e

        kwargs: dict = {
            "environment": environment,
            "webhook_secret": SecretStr(secret),
            "table_prefix": os.getenv("DYNAMODB_TABLE_PREFIX"),
        }
        if os.getenv("WEBHOOK_SIGNATURE_HEADER"):
            kwargs["signature_header"] = os.environ["WEBHOOK_SIGNATURE_HEADER"]
        if os.getenv("WEBHOOK_REQUEST_TIMEOUT_SECONDS"):
            kwargs["request_timeout_seconds"] = float(
                os.environ["WEBHOOK_REQUEST_TIMEOUT_SECONDS"]
            )
        if os.getenv("WEBHOOK_CLAIM_LEASE_SECONDS"):
            kwargs["claim_lease_seconds"] = int(os.environ["WEBHOOK_CLAIM_LEASE_SECONDS"])

        logger.info("Webhook settings loaded for environment: %s", environment)
        return cls(**kwargs)
