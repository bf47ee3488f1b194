"""HMAC verification for payment gateway callbacks."""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Optional

from ..exceptions import WebhookSignatureError

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check ``signature`` against the HMAC-SHA256 hex digest of ``raw_body``.

    Returns ``False`` when no secret is configured, in which case the caller
    proceeds unverified. Raises :class:`WebhookSignatureError` for a missing
    or mismatching signature.
    """

    if not secret:
        logger.warning("Webhook secret not configured, skipping signature verification")
        return False
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8")):
        raise WebhookSignatureError("Invalid webhook signature")
    return True


__all__ = ["compute_signature", "verify_signature"]
