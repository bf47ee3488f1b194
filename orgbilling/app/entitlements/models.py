"""Domain models for module entitlements."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DenialReason(str, Enum):
    """Why an organization is not entitled to a module."""

    MODULE_NOT_FOUND = "module_not_found"
    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    EXPIRED = "expired"
    TRIAL_EXPIRED = "trial_expired"


class Module(BaseModel):
    """Catalog product unit that can be enabled for an organization."""

    module_id: str
    key: str
    name: str
    is_active: bool = True

    model_config = ConfigDict(frozen=True)


class Entitlement(BaseModel):
    """Authoritative "can use" record for an organization and module."""

    organization_id: str
    module_id: str
    enabled: bool = False
    plan: Optional[str] = None
    seats: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    def denial_reason(self, now: datetime) -> Optional[DenialReason]:
        """Return the reason access is denied at ``now``, or ``None`` when entitled."""

        if not self.enabled:
            return DenialReason.DISABLED
        if self.expires_at is not None and self.expires_at <= now:
            return DenialReason.EXPIRED
        if self.trial_ends_at is not None and self.trial_ends_at <= now:
            return DenialReason.TRIAL_EXPIRED
        return None

    def is_active(self, now: datetime) -> bool:
        return self.denial_reason(now) is None

    def is_trial(self, now: datetime) -> bool:
        return self.trial_ends_at is not None and self.trial_ends_at > now


class EntitlementDecision(BaseModel):
    """Result of an entitlement check consumed by module gating."""

    organization_id: str
    module_key: str
    entitled: bool
    reason: Optional[DenialReason] = None
    plan: Optional[str] = None
    expires_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class EntitlementSummary(BaseModel):
    """Entitlement view listed for an organization."""

    module: Module
    entitlement: Entitlement
    is_expired: bool
    is_trial: bool

    model_config = ConfigDict(frozen=True)
