"""Payment gateway callback verification and handling."""

from .handler import PAID_STATUSES, WebhookHandler, WebhookOutcome
from .signature import compute_signature, verify_signature

__all__ = [
    "PAID_STATUSES",
    "WebhookHandler",
    "WebhookOutcome",
    "compute_signature",
    "verify_signature",
]
