"""Webhook signature verification.

The billing provider signs the raw request body with HMAC-SHA256 using the
shared webhook secret and sends the hex digest in a header. Verification must
run on the exact bytes received, before any JSON parsing.
"""

import hashlib
import hmac
import logging
import string

logger = logging.getLogger(__name__)

_HEX_DIGITS = frozenset(string.hexdigits)
_SIGNATURE_LENGTH = hashlib.sha256().digest_size * 2


def compute_signature(raw_body: bytes, secret: bytes) -> str:
    """Compute the hex HMAC-SHA256 signature of a body.

    Args:
        raw_body: Exact request bytes
        secret: Shared signing secret

    Returns:
        Lowercase hex digest
    """
    return hmac.new(secret, raw_body, hashlib.sha256).hexdigest()


def compute_payload_hash(raw_body: bytes) -> str:
    """Compute SHA-256 hash of a webhook body for the event log."""
    return hashlib.sha256(raw_body).hexdigest()


def verify(raw_body: bytes, signature_header: str | None, secret: bytes) -> bool:
    """Check that a body was signed with the shared secret.

    Never raises: a missing, malformed or mismatching header all yield False.

    Args:
        raw_body: Exact request bytes
        signature_header: Value of the signature header (hex digest)
        secret: Shared signing secret

    Returns:
        True if the signature matches
    """
    if not secret:
        logger.error("Webhook signature check attempted without a signing secret")
        return False

    if not signature_header:
        logger.warning("Webhook signature header missing")
        return False

    candidate = signature_header.strip().lower()
    if len(candidate) != _SIGNATURE_LENGTH or not _HEX_DIGITS.issuperset(candidate):
        logger.warning("Webhook signature header malformed (length=%d)", len(candidate))
        return False

    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, candidate):
        # Only prefixes, never full digests
        logger.warning(
            "Webhook signature mismatch (expected %s..., received %s...)",
            expected[:8],
            candidate[:8],
        )
        return False

    return True


class SignatureVerifier:
    """Verifier bound to one signing secret.

    Usage:
        verifier = SignatureVerifier(settings.secret_bytes)
        if not verifier.verify(body, request.headers.get(settings.signature_header)):
            ...
    """

    def __init__(self, secret: bytes) -> None:
        self._secret = secret

    def verify(self, raw_body: bytes, signature_header: str | None) -> bool:
        return verify(raw_body, signature_header, self._secret)

    def sign(self, raw_body: bytes) -> str:
        """Sign a body with this verifier's secret (tests and tooling)."""
        return compute_signature(raw_body, self._secret)
