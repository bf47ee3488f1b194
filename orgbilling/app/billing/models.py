"""Domain models for the payment ledger and billing notifications."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..pricing.models import BillingPeriod
from ..subscriptions.models import Subscription


class PaymentStatus(str, Enum):
    """Status of a gateway transaction attempt."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Payment(BaseModel):
    """One row per gateway transaction attempt."""

    payment_id: str
    organization_id: str
    module_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount_minor_units: int = Field(ge=0)
    currency: str = Field(default="SAR", min_length=3, max_length=3)
    status: PaymentStatus = PaymentStatus.PENDING
    provider: str
    provider_ref: str
    invoice_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_settled(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED


class PaymentClaim(BaseModel):
    """Gateway-confirmed charge details used when the ledger has no row yet."""

    organization_id: str
    module_id: str
    plan: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    amount_minor_units: int = Field(default=0, ge=0)
    currency: str = "SAR"
    subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ConfirmationResult(BaseModel):
    """Outcome of confirming a payment through the ledger."""

    applied: bool
    payment: Optional[Payment] = None
    subscription: Optional[Subscription] = None
    subscription_created: bool = False

    model_config = ConfigDict(frozen=True)


class GatewayInvoice(BaseModel):
    """Hosted invoice as reported by the payment gateway."""

    invoice_id: str
    status: str
    amount_minor_units: int = 0
    currency: str = "SAR"
    invoice_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class BillingContact(BaseModel):
    """Recipient of billing notifications for an organization."""

    organization_id: str
    email: str
    name: Optional[str] = None
    organization_name: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class NotificationTemplate(str, Enum):
    """Templates emitted to the notification sink."""

    RENEWAL_REMINDER = "renewal_reminder"
    PAYMENT_REQUIRED = "payment_required"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    TRIAL_EXPIRING = "trial_expiring"
    TRIAL_EXPIRED = "trial_expired"


class BillingNotification(BaseModel):
    """Notification handed to the external delivery channel by value."""

    recipient: str
    template_id: NotificationTemplate
    parameters: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)
