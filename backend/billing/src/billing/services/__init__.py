"""Services for subscription webhook processing."""

from .account_store import AccountStore
from .audit_logger import AuditLogger
from .deduplicator import EventClaim, EventDeduplicator
from .dynamodb import DynamoDBService, get_dynamodb_service, reset_dynamodb_service
from .lifecycle import LifecycleStateMachine, Transition
from .signature import SignatureVerifier, compute_payload_hash, compute_signature, verify
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .webhook_processor import AuditAction, ProcessingResult, WebhookProcessor

__all__ = [
    "AccountStore",
    "AuditAction",
    "AuditLogger",
    "DynamoDBService",
    "EventClaim",
    "EventDeduplicator",
    "LifecycleStateMachine",
    "ProcessingResult",
    "SSMService",
    "SSMServiceError",
    "SignatureVerifier",
    "Transition",
    "WebhookProcessor",
    "compute_payload_hash",
    "compute_signature",
    "get_dynamodb_service",
    "get_ssm_service",
    "reset_dynamodb_service",
    "verify",
]
