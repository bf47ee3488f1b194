"""Exceptions raised by the entitlement and subscription engine."""
from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for billing engine errors."""


class InvalidTransition(BillingError):
    """Raised when an event is not legal for the subscription's current status.

    This is recoverable: callers report it and leave state untouched.
    """

    def __init__(self, subscription_id: str, status: object, event: object, message: Optional[str] = None) -> None:
        self.subscription_id = subscription_id
        self.status = getattr(status, "value", status)
        self.event = getattr(event, "value", event)
        super().__init__(
            message
            or f"Cannot apply '{self.event}' to subscription {subscription_id} in status '{self.status}'"
        )


class PricingNotConfigured(BillingError, LookupError):
    """No price exists for the requested module plan and billing period."""


class GatewayNotConfigured(BillingError):
    """Gateway renewal mode is selected but no payment gateway is configured."""


class GatewayError(BillingError):
    """The payment gateway could not be reached or rejected the request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class WebhookSignatureError(BillingError):
    """The webhook signature is missing or does not match the payload."""


class WebhookPayloadError(BillingError):
    """The webhook payload is malformed or missing required fields."""


__all__ = [
    "BillingError",
    "GatewayError",
    "GatewayNotConfigured",
    "InvalidTransition",
    "PricingNotConfigured",
    "WebhookPayloadError",
    "WebhookSignatureError",
]
