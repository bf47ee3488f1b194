"""The error raised when an organization is not entitled to a module."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

from ..entitlements.models import DenialReason, EntitlementDecision

_MESSAGES = {
    DenialReason.MODULE_NOT_FOUND: "Module '{module}' does not exist.",
    DenialReason.NOT_FOUND: "Module '{module}' is not enabled for this organization.",
    DenialReason.DISABLED: "Module '{module}' is disabled for this organization.",
    DenialReason.EXPIRED: "The subscription for module '{module}' has expired.",
    DenialReason.TRIAL_EXPIRED: "The trial for module '{module}' has ended.",
}


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class FeatureGateError(Exception):
    """A module gate refused an organization.

    The error code, HTTP status and message all follow from ``reason``; an
    unknown module is a 404, every other denial a 403.
    """

    def __init__(
        self,
        module_key: str,
        reason: DenialReason,
        *,
        organization_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        trial_ends_at: Optional[datetime] = None,
    ) -> None:
        self.module_key = module_key
        self.reason = reason
        self.organization_id = organization_id
        self.expires_at = expires_at
        self.trial_ends_at = trial_ends_at
        super().__init__(self.message)

    @classmethod
    def from_decision(cls, decision: EntitlementDecision) -> "FeatureGateError":
        return cls(
            decision.module_key,
            decision.reason or DenialReason.NOT_FOUND,
            organization_id=decision.organization_id,
            expires_at=decision.expires_at,
            trial_ends_at=decision.trial_ends_at,
        )

    @property
    def code(self) -> str:
        return f"module_{self.reason.value}"

    @property
    def message(self) -> str:
        return _MESSAGES[self.reason].format(module=self.module_key)

    @property
    def status_code(self) -> int:
        if self.reason == DenialReason.MODULE_NOT_FOUND:
            return status.HTTP_404_NOT_FOUND
        return status.HTTP_403_FORBIDDEN

    @property
    def renewable(self) -> bool:
        """Whether paying for the module would lift the denial."""

        return self.reason in (DenialReason.EXPIRED, DenialReason.TRIAL_EXPIRED)

    @property
    def payload(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "module": self.module_key,
            "reason": self.reason.value,
            "renewable": self.renewable,
            "expires_at": _isoformat(self.expires_at),
            "trial_ends_at": _isoformat(self.trial_ends_at),
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.payload)
