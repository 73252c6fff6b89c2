"""FastAPI dependency injection providers for webhook services.

Factory functions wrapped in @lru_cache so every service is built once per
process and shared across requests (and across warm Lambda invocations).

Usage in routes:
    from api.dependencies import get_webhook_processor

    @router.post("/webhooks/revenuecat")
    async def handle(processor: WebhookProcessor = Depends(get_webhook_processor)):
        ...

Service Dependency Graph:
    WebhookSettings (environment / SSM)
    DynamoDBService (singleton via get_dynamodb_service)
        ├── EventDeduplicator
        │       └── AuditLogger
        └── AccountStore
    WebhookProcessor
        └── SignatureVerifier, EventDeduplicator, AccountStore,
            LifecycleStateMachine, AuditLogger

Testing:
    Use reset_services() to clear cached instances between tests.
"""

from functools import lru_cache

from billing.config import WebhookSettings
from billing.services.account_store import AccountStore
from billing.services.audit_logger import AuditLogger
from billing.services.deduplicator import EventDeduplicator
from billing.services.dynamodb import DynamoDBService, get_dynamodb_service
from billing.services.lifecycle import LifecycleStateMachine
from billing.services.signature import SignatureVerifier
from billing.services.webhook_processor import WebhookProcessor


@lru_cache
def get_settings() -> WebhookSettings:
    """Get cached WebhookSettings loaded from the environment."""
    return WebhookSettings.from_environment()


def _db() -> DynamoDBService:
    settings = get_settings()
    return get_dynamodb_service(settings.environment, settings.table_prefix)


@lru_cache
def get_deduplicator() -> EventDeduplicator:
    """Get cached EventDeduplicator instance."""
    return EventDeduplicator(_db(), lease_seconds=get_settings().claim_lease_seconds)


@lru_cache
def get_account_store() -> AccountStore:
    """Get cached AccountStore instance."""
    return AccountStore(_db())


@lru_cache
def get_audit_logger() -> AuditLogger:
    """Get cached AuditLogger instance."""
    return AuditLogger(get_deduplicator(), _db())


@lru_cache
def get_webhook_processor() -> WebhookProcessor:
    """Get cached WebhookProcessor instance.

    Returns:
        WebhookProcessor wired to the shared services.
    """
    settings = get_settings()
    return WebhookProcessor(
        settings=settings,
        verifier=SignatureVerifier(settings.secret_bytes),
        dedup=get_deduplicator(),
        store=get_account_store(),
        state_machine=LifecycleStateMachine(),
        audit_logger=get_audit_logger(),
    )


def reset_services() -> None:
    """Clear all cached service instances.

    Call this in test fixtures to ensure clean state between tests.
    Also resets the underlying DynamoDB singleton.
    """
    from billing.services.dynamodb import reset_dynamodb_service
    from billing.services.ssm_service import get_ssm_service

    get_settings.cache_clear()
    get_deduplicator.cache_clear()
    get_account_store.cache_clear()
    get_audit_logger.cache_clear()
    get_webhook_processor.cache_clear()
    get_ssm_service.cache_clear()

    reset_dynamodb_service()
