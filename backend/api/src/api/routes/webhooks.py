"""Webhook endpoint for billing provider subscription events.

Provides endpoints for:
- RevenueCat lifecycle events (purchase, renewal, cancellation, ...)

This endpoint does NOT use API authentication: the provider signs the raw
body with the shared webhook secret and the signature is verified before
anything else happens.
"""

import asyncio

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel

from api.dependencies import get_audit_logger, get_webhook_processor
from billing.models.errors import ErrorResponse, RequestTimeout
from billing.services.audit_logger import AuditLogger
from billing.services.webhook_processor import WebhookProcessor
from billing.utils.logging import get_correlation_id, get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


# === Response Models ===


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned for an accepted delivery."""

    success: bool = True
    duplicate: bool | None = None
    event_id: str | None = None
    event_type: str | None = None


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# === Webhook Endpoint ===


@router.post(
    "/webhooks/revenuecat",
    summary="Receive RevenueCat webhook events",
    description="""
Endpoint for RevenueCat subscription lifecycle events. Moves the referenced
account through its subscription states and records every delivery in the
webhook event log.

**No authentication required** - the body signature is verified using the
shared webhook secret (`X-RevenueCat-Signature`, hex HMAC-SHA256).

**Idempotent**: Redelivered events (same event id) return 200 with
`duplicate: true` and are not applied again.
""",
    response_model=WebhookAckResponse,
    response_model_exclude_none=True,
    responses={
        200: {"description": "Event applied (or already applied)", "model": WebhookAckResponse},
        400: {"description": "Malformed payload", "model": ErrorResponse},
        401: {"description": "Invalid signature", "model": ErrorResponse},
        405: {"description": "Method not allowed", "model": ErrorResponse},
        500: {"description": "Processing failed; the provider will retry", "model": ErrorResponse},
        503: {"description": "Processing timed out; the provider will retry", "model": ErrorResponse},
    },
)
async def handle_revenuecat_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    audit_logger: AuditLogger = Depends(get_audit_logger),
) -> WebhookAckResponse:
    """Handle incoming RevenueCat webhook events.

    Verifies the signature on the raw body, dedupes, applies the lifecycle
    transition and records the outcome. Secondary audit records are written
    after the response is sent.
    """
    settings = processor.settings
    payload = await request.body()
    signature = request.headers.get(settings.signature_header)
    ip_address = _client_ip(request)

    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(processor.process, payload, signature, ip_address),
            timeout=settings.request_timeout_seconds,
        )
    except TimeoutError as e:
        logger.error(
            "Webhook processing exceeded %.1fs, relying on provider redelivery",
            settings.request_timeout_seconds,
        )
        raise RequestTimeout(f"exceeded {settings.request_timeout_seconds:g}s") from e

    correlation_id = get_correlation_id()
    for action in result.audit_actions:
        background_tasks.add_task(
            audit_logger.record_action,
            action.action,
            action.account_id,
            action.metadata,
            ip_address,
            correlation_id,
        )

    return WebhookAckResponse(
        duplicate=True if result.duplicate else None,
        event_id=result.event_id,
        event_type=result.event_type,
    )
