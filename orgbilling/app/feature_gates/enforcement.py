"""Helpers for enforcing module entitlements on API routes."""
from __future__ import annotations

from typing import Callable

from fastapi import Depends, Header

from ..entitlements.models import EntitlementDecision
from ..entitlements.service import EntitlementService
from ..services.billing import get_entitlement_service
from .exceptions import FeatureGateError


def require_entitlement(decision: EntitlementDecision) -> EntitlementDecision:
    """Raise :class:`FeatureGateError` unless ``decision`` grants access."""

    if not decision.entitled:
        raise FeatureGateError.from_decision(decision)
    return decision


def get_is_super_admin() -> bool:
    """Whether the caller bypasses module checks.

    The host application overrides this dependency with its own
    authentication; by default nobody is a super admin.
    """

    return False


def require_module_enabled(module_key: str) -> Callable[..., EntitlementDecision]:
    """Build a FastAPI dependency that rejects requests for disabled modules."""

    def _dependency(
        organization_id: str = Header(..., alias="X-Organization-Id"),
        is_super_admin: bool = Depends(get_is_super_admin),
        service: EntitlementService = Depends(get_entitlement_service),
    ) -> EntitlementDecision:
        decision = service.check(organization_id, module_key, is_super_admin=is_super_admin)
        try:
            return require_entitlement(decision)
        except FeatureGateError as exc:
            raise exc.to_http_exception() from exc

    return _dependency


__all__ = ["get_is_super_admin", "require_entitlement", "require_module_enabled"]
