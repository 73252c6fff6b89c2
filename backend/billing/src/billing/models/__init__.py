"""Pydantic models for subscription billing data entities."""

from .account import MUTABLE_FIELDS, Account
from .audit import AuditLogRecord
from .enums import AccountStatus, EventType, ProcessingState
from .errors import (
    ERROR_HTTP_STATUS,
    ERROR_MESSAGES,
    RETRYABLE_ERRORS,
    AccountNotFound,
    ErrorCode,
    ErrorResponse,
    InternalError,
    InvalidSignature,
    MalformedPayload,
    MethodNotAllowed,
    MissingSubjectId,
    RequestTimeout,
    StoreUnavailable,
    UnknownEventType,
    WebhookError,
)
from .webhook import WebhookEvent, WebhookEventLogEntry

__all__ = [
    # Enums
    "AccountStatus",
    "EventType",
    "ProcessingState",
    # Account
    "Account",
    "MUTABLE_FIELDS",
    # Webhook
    "WebhookEvent",
    "WebhookEventLogEntry",
    # Audit
    "AuditLogRecord",
    # Errors
    "AccountNotFound",
    "ErrorCode",
    "ErrorResponse",
    "ERROR_HTTP_STATUS",
    "ERROR_MESSAGES",
    "InternalError",
    "InvalidSignature",
    "MalformedPayload",
    "MethodNotAllowed",
    "MissingSubjectId",
    "RequestTimeout",
    "RETRYABLE_ERRORS",
    "StoreUnavailable",
    "UnknownEventType",
    "WebhookError",
]
