"""Standard error codes for the subscription webhook processor.

Every failure the webhook endpoint can produce maps to exactly one ErrorCode.
The code decides the HTTP status, the stable message substring callers grep
for, and whether a provider redelivery can be expected to succeed.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_405_METHOD_NOT_ALLOWED,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
)


class ErrorCode(str, Enum):
    """Standard error codes for webhook processing."""

    # Request-level rejections (never reach the event log)
    INVALID_SIGNATURE = "ERR_WEBHOOK_001"
    METHOD_NOT_ALLOWED = "ERR_WEBHOOK_002"
    MALFORMED_PAYLOAD = "ERR_WEBHOOK_003"

    # Business rejections (logged with success=false)
    MISSING_SUBJECT_ID = "ERR_WEBHOOK_004"
    ACCOUNT_NOT_FOUND = "ERR_WEBHOOK_005"
    UNKNOWN_EVENT_TYPE = "ERR_WEBHOOK_006"

    # Infrastructure failures (logged with success=false, retryable)
    STORE_UNAVAILABLE = "ERR_WEBHOOK_007"
    REQUEST_TIMEOUT = "ERR_WEBHOOK_008"

    # Anything the processor did not anticipate (logged with success=false)
    INTERNAL_ERROR = "ERR_WEBHOOK_009"


# Human-readable error messages. These substrings are part of the HTTP contract.
ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.INVALID_SIGNATURE: "Invalid signature",
    ErrorCode.METHOD_NOT_ALLOWED: "Method not allowed",
    ErrorCode.MALFORMED_PAYLOAD: "Malformed payload",
    ErrorCode.MISSING_SUBJECT_ID: "Missing user_id in webhook event",
    ErrorCode.ACCOUNT_NOT_FOUND: "Account not found",
    ErrorCode.UNKNOWN_EVENT_TYPE: "Unknown event type",
    ErrorCode.STORE_UNAVAILABLE: "Account store unavailable",
    ErrorCode.REQUEST_TIMEOUT: "Request timed out",
    ErrorCode.INTERNAL_ERROR: "Internal error",
}

ERROR_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_SIGNATURE: HTTP_401_UNAUTHORIZED,
    ErrorCode.METHOD_NOT_ALLOWED: HTTP_405_METHOD_NOT_ALLOWED,
    ErrorCode.MALFORMED_PAYLOAD: HTTP_400_BAD_REQUEST,
    ErrorCode.MISSING_SUBJECT_ID: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.ACCOUNT_NOT_FOUND: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.UNKNOWN_EVENT_TYPE: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.STORE_UNAVAILABLE: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.REQUEST_TIMEOUT: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.INTERNAL_ERROR: HTTP_500_INTERNAL_SERVER_ERROR,
}

# Failures a provider redelivery is expected to fix
RETRYABLE_ERRORS: set[ErrorCode] = {
    ErrorCode.STORE_UNAVAILABLE,
    ErrorCode.REQUEST_TIMEOUT,
}


class ErrorResponse(BaseModel):
    """JSON body returned for every failed webhook request."""

    model_config = ConfigDict(strict=True)

    error: str
    code: ErrorCode
    retryable: bool = False


class WebhookError(Exception):
    """Base exception for webhook processing failures.

    Carries an ErrorCode; the message always starts with the stable
    ERROR_MESSAGES text so callers can match on it.
    """

    code: ErrorCode = ErrorCode.MALFORMED_PAYLOAD

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        if code is not None:
            self.code = code
        base = ERROR_MESSAGES[self.code]
        self.message = f"{base}: {detail}" if detail else base
        self.details = details
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        """HTTP status for this error."""
        return ERROR_HTTP_STATUS[self.code]

    @property
    def retryable(self) -> bool:
        """True if redelivering the same event may succeed."""
        return self.code in RETRYABLE_ERRORS

    def to_response(self) -> ErrorResponse:
        """Convert this exception to the JSON error body."""
        return ErrorResponse(
            error=self.message,
            code=self.code,
            retryable=self.retryable,
        )


class InvalidSignature(WebhookError):
    """Signature header missing, malformed or not matching the body."""

    code = ErrorCode.INVALID_SIGNATURE


class MethodNotAllowed(WebhookError):
    """Any method other than POST on the webhook path."""

    code = ErrorCode.METHOD_NOT_ALLOWED


class MalformedPayload(WebhookError):
    """Body is not JSON or lacks the fields needed to identify the event."""

    code = ErrorCode.MALFORMED_PAYLOAD


class MissingSubjectId(WebhookError):
    """Non-TEST event without a usable app_user_id."""

    code = ErrorCode.MISSING_SUBJECT_ID


class AccountNotFound(WebhookError):
    """No account record exists for the referenced app_user_id."""

    code = ErrorCode.ACCOUNT_NOT_FOUND

    def __init__(self, account_id: str, **kwargs: Any):
        self.account_id = account_id
        super().__init__(account_id, **kwargs)


class UnknownEventType(WebhookError):
    """Event type outside the closed EventType set."""

    code = ErrorCode.UNKNOWN_EVENT_TYPE

    def __init__(self, event_type: Optional[str], **kwargs: Any):
        self.event_type = event_type
        super().__init__(event_type or "<empty>", **kwargs)


class StoreUnavailable(WebhookError):
    """The account store or event log could not be read or written."""

    code = ErrorCode.STORE_UNAVAILABLE


class RequestTimeout(WebhookError):
    """Processing did not finish within the request timeout."""

    code = ErrorCode.REQUEST_TIMEOUT


class InternalError(WebhookError):
    """Unexpected failure while applying an event, such as an unreadable stored record."""

    code = ErrorCode.INTERNAL_ERROR
