"""Domain models for module pricing."""
from __future__ import annotations

import calendar
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BillingPeriod(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_period(start: datetime, period: BillingPeriod) -> datetime:
    """Return the end of a billing cycle starting at ``start``.

    Month arithmetic is calendar based; the day is clamped to the length of
    the target month (Jan 31 + 1 month -> Feb 28/29).
    """

    if period == BillingPeriod.YEARLY:
        return _add_months(start, 12)
    return _add_months(start, 1)


class ModulePrice(BaseModel):
    """Price of a module for a given plan and billing period."""

    module_id: str
    plan: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    amount_minor_units: int = Field(ge=0)
    currency: str = Field(default="SAR", min_length=3, max_length=3)
    max_seats: Optional[int] = Field(default=None, ge=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    def display_amount(self) -> str:
        major, minor = divmod(self.amount_minor_units, 100)
        return f"{major}.{minor:02d} {self.currency}"
