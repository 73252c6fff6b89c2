"""Webhook processing pipeline.

Business logic for handling provider webhook deliveries, separate from
HTTP routing concerns:

    verify signature -> parse -> dedupe/claim -> resolve account(s)
        -> state machine -> persist -> record outcome

Failures are raised as WebhookError subclasses; the API layer maps them to
HTTP responses. Every signature-valid delivery with an event id ends with
exactly one event log entry, whether it succeeded or not.
"""

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from billing.models.account import Account
from billing.models.enums import EventType
from billing.models.errors import (
    InternalError,
    InvalidSignature,
    MalformedPayload,
    MissingSubjectId,
    StoreUnavailable,
    WebhookError,
)
from billing.models.webhook import WebhookEvent
from billing.utils.logging import get_correlation_id, log_account_transition, log_webhook_event

from .account_store import AccountStore
from .audit_logger import AuditLogger
from .deduplicator import EventClaim, EventDeduplicator
from .lifecycle import LifecycleStateMachine, Transition
from .signature import SignatureVerifier, compute_payload_hash

if TYPE_CHECKING:
    from billing.config import WebhookSettings

logger = logging.getLogger(__name__)

WEBHOOK_RECEIVED_ACTION = "revenuecat_webhook_received"


class AuditAction(BaseModel):
    """A secondary audit record to write once the response is on its way."""

    action: str
    account_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProcessingResult(BaseModel):
    """Outcome of a delivery that was acknowledged with 200."""

    event_id: str
    event_type: str
    duplicate: bool = False
    account_id: str | None = None
    audit_actions: list[AuditAction] = Field(default_factory=list)


class WebhookProcessor:
    """Processes one webhook delivery end to end.

    Synchronous: every step is a blocking DynamoDB call. The API layer runs
    it in a worker thread under a timeout.
    """

    def __init__(
        self,
        settings: "WebhookSettings",
        verifier: SignatureVerifier,
        dedup: EventDeduplicator,
        store: AccountStore,
        state_machine: LifecycleStateMachine,
        audit_logger: AuditLogger,
    ) -> None:
        self._settings = settings
        self._verifier = verifier
        self._dedup = dedup
        self._store = store
        self._state_machine = state_machine
        self._audit = audit_logger

    @property
    def settings(self) -> "WebhookSettings":
        return self._settings

    def process(
        self,
        raw_body: bytes,
        signature_header: str | None,
        ip_address: str | None = None,
    ) -> ProcessingResult:
        """Verify, dedupe and apply one delivery.

        Args:
            raw_body: Exact request bytes
            signature_header: Value of the signature header
            ip_address: Caller address for audit records written on failure

        Returns:
            ProcessingResult for a 200 acknowledgement

        Raises:
            InvalidSignature: Signature missing or wrong (nothing is logged)
            MalformedPayload: Body unusable
            MissingSubjectId: Non-TEST event without app_user_id
            AccountNotFound: Target or TRANSFER source does not exist
            UnknownEventType: Event type outside the closed set
            StoreUnavailable: Account store or event log failure
            InternalError: Any other failure while applying the event
        """
        if not self._verifier.verify(raw_body, signature_header):
            raise InvalidSignature()

        # No event id means no trusted key to log under
        event = WebhookEvent.from_body(raw_body)
        log_webhook_event(logger, event.type, event.id, result="received")

        if self._dedup.already_processed(event.id):
            return self._duplicate(event)

        claim = self._dedup.claim(event, compute_payload_hash(raw_body))
        if claim is None:
            return self._duplicate(event)

        try:
            transition = self._apply(event)
        except WebhookError as e:
            self._record_failure(claim, event, e, ip_address)
            raise
        except Exception as e:
            logger.exception("Unexpected error applying event %s", event.id)
            error = InternalError(type(e).__name__)
            self._record_failure(claim, event, error, ip_address)
            raise error from e

        if not self._audit.record(claim, event, transition.account_id, success=True):
            logger.warning("Event %s applied but its log entry was taken over", event.id)

        return ProcessingResult(
            event_id=event.id,
            event_type=event.type,
            account_id=transition.account_id,
            audit_actions=[
                self._received_action(event),
                AuditAction(
                    action=transition.audit_action,
                    account_id=transition.account_id,
                    metadata=transition.audit_metadata,
                ),
            ],
        )

    def _apply(self, event: WebhookEvent) -> Transition:
        """Resolve accounts, compute the transition and persist it."""
        if not event.type:
            raise MalformedPayload("missing event type")

        event_type = event.event_type
        if event_type is EventType.TEST:
            return self._state_machine.apply(event, None)

        if not event.subject_id:
            raise MissingSubjectId()

        account = self._store.get(event.subject_id)

        # Sources are resolved before anything is written
        sources: list[Account] = []
        if event_type is EventType.TRANSFER:
            sources = [
                self._store.get(source_id)
                for source_id in dict.fromkeys(event.transferred_from)
                if source_id != account.account_id
            ]

        transition = self._state_machine.apply(event, account, sources)
        self._persist(event, transition)
        return transition

    def _persist(self, event: WebhookEvent, transition: Transition) -> None:
        """Write the transition, sources first, one atomic update per account."""
        for source_id, updates in transition.source_updates.items():
            self._store.update(source_id, updates)
            log_account_transition(
                logger,
                source_id,
                event_type=event.type,
                next_status=updates["account_status"].value,
                fields=list(updates),
                transferred_to=transition.account_id,
            )

        if transition.account_id is None:
            return

        if not transition.updates:
            log_webhook_event(
                logger,
                event.type,
                event.id,
                account_id=transition.account_id,
                result="skipped",
                reason="no mutation",
                account_status=transition.next_status,
            )
            return

        self._store.update(transition.account_id, transition.updates)
        log_account_transition(
            logger,
            transition.account_id,
            event_type=event.type,
            previous_status=transition.previous_status.value if transition.previous_status else None,
            next_status=transition.next_status.value if transition.next_status else None,
            fields=list(transition.updates),
        )

    def _record_failure(
        self,
        claim: EventClaim,
        event: WebhookEvent,
        error: WebhookError,
        ip_address: str | None,
    ) -> None:
        """Log a failed attempt, keeping the original error as the outcome.

        The delivery was verified, so its received audit record is written
        here as well.
        """
        received = self._received_action(event)
        self._audit.record_action(
            received.action,
            received.account_id,
            received.metadata,
            ip_address=ip_address,
            correlation_id=get_correlation_id(),
        )
        try:
            self._audit.record(claim, event, event.subject_id or None, success=False, error=error)
        except StoreUnavailable as log_error:
            # Entry stays PROCESSING; the lease expiry makes it reclaimable
            logger.error(
                "Could not record failure of event %s (%s): %s",
                event.id,
                error.code.value,
                log_error,
            )

    def _duplicate(self, event: WebhookEvent) -> ProcessingResult:
        log_webhook_event(logger, event.type, event.id, result="duplicate")
        return ProcessingResult(
            event_id=event.id,
            event_type=event.type,
            duplicate=True,
            account_id=event.subject_id or None,
        )

    @staticmethod
    def _received_action(event: WebhookEvent) -> AuditAction:
        return AuditAction(
            action=WEBHOOK_RECEIVED_ACTION,
            account_id=event.subject_id or None,
            metadata={
                "event_type": event.type,
                "event_id": event.id,
                "product_id": event.product_id,
                "store": event.field("store"),
            },
        )
