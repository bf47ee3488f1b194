"""Domain models for the subscription lifecycle."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..pricing.models import BillingPeriod


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


class SubscriptionEvent(str, Enum):
    """Events that drive subscription transitions."""

    RENEW = "renew"
    EXPIRE = "expire"
    CANCEL = "cancel"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    COMPLETE_CANCELLATION = "complete_cancellation"
    EXTEND_GRACE = "extend_grace"
    CHANGE_PLAN = "change_plan"


class Subscription(BaseModel):
    """Billing-period state for one organization and module."""

    subscription_id: str
    organization_id: str
    module_id: str
    plan: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    grace_period_expires_at: Optional[datetime] = None
    seats: Optional[int] = Field(default=None, ge=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def grace_deadline(self, grace_period_days: int) -> datetime:
        """Instant after which an unpaid subscription must expire."""

        if self.grace_period_expires_at is not None:
            return self.grace_period_expires_at
        return self.current_period_end + timedelta(days=grace_period_days)


class SubscriptionPeriod(BaseModel):
    """History row written on every billing-period rollover."""

    subscription_id: str
    period_start: datetime
    period_end: datetime
    payment_id: Optional[str] = None
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)
