"""Entitlement checks and administrative module toggles."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from ..billing.protocols import BillingRepository
from .models import DenialReason, Entitlement, EntitlementDecision, EntitlementSummary, Module

logger = logging.getLogger(__name__)


class EntitlementService:
    """Answers "may this organization use this module right now?".

    Decisions are read from the repository on every call and never cached, so
    a committed transition is visible to the next check.
    """

    def __init__(
        self,
        repository: BillingRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _require_module(self, module_key: str) -> Module:
        module = self._repository.get_module_by_key(module_key)
        if module is None:
            raise LookupError(f"Module not found: {module_key}")
        return module

    def check(
        self,
        organization_id: str,
        module_key: str,
        *,
        now: Optional[datetime] = None,
        is_super_admin: bool = False,
    ) -> EntitlementDecision:
        current_time = now or self._clock()
        if is_super_admin:
            return EntitlementDecision(
                organization_id=organization_id,
                module_key=module_key,
                entitled=True,
                checked_at=current_time,
            )

        module = self._repository.get_module_by_key(module_key)
        if module is None or not module.is_active:
            return EntitlementDecision(
                organization_id=organization_id,
                module_key=module_key,
                entitled=False,
                reason=DenialReason.MODULE_NOT_FOUND,
                checked_at=current_time,
            )

        entitlement = self._repository.get_entitlement(organization_id, module.module_id)
        if entitlement is None:
            return EntitlementDecision(
                organization_id=organization_id,
                module_key=module_key,
                entitled=False,
                reason=DenialReason.NOT_FOUND,
                checked_at=current_time,
            )

        reason = entitlement.denial_reason(current_time)
        return EntitlementDecision(
            organization_id=organization_id,
            module_key=module_key,
            entitled=reason is None,
            reason=reason,
            plan=entitlement.plan,
            expires_at=entitlement.expires_at,
            trial_ends_at=entitlement.trial_ends_at,
            checked_at=current_time,
        )

    def is_entitled(self, organization_id: str, module_key: str, *, now: Optional[datetime] = None) -> bool:
        return self.check(organization_id, module_key, now=now).entitled

    def enable_module(
        self,
        organization_id: str,
        module_key: str,
        *,
        plan: Optional[str] = None,
        seats: Optional[int] = None,
        trial_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """Enable a module outside the payment flow, optionally as a trial."""

        if trial_days is not None and trial_days <= 0:
            raise ValueError("trial_days must be positive")
        module = self._require_module(module_key)
        current_time = now or self._clock()
        trial_ends_at = current_time + timedelta(days=trial_days) if trial_days else None

        with self._repository.transaction() as repo:
            existing = repo.get_entitlement(organization_id, module.module_id, for_update=True)
            base = existing or Entitlement(
                organization_id=organization_id,
                module_id=module.module_id,
                created_at=current_time,
            )
            entitlement = repo.save_entitlement(
                base.model_copy(
                    update={
                        "enabled": True,
                        "plan": plan or base.plan,
                        "seats": seats or base.seats,
                        "expires_at": None,
                        "trial_ends_at": trial_ends_at,
                        "updated_at": current_time,
                    }
                )
            )

        logger.info(
            "module enabled",
            extra={
                "organization_id": organization_id,
                "module_key": module_key,
                "trial_ends_at": trial_ends_at.isoformat() if trial_ends_at else None,
            },
        )
        return entitlement

    def disable_module(
        self,
        organization_id: str,
        module_key: str,
        *,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        module = self._require_module(module_key)
        current_time = now or self._clock()
        with self._repository.transaction() as repo:
            existing = repo.get_entitlement(organization_id, module.module_id, for_update=True)
            if existing is None:
                raise LookupError(f"Module {module_key} is not enabled for organization {organization_id}")
            entitlement = repo.save_entitlement(
                existing.model_copy(update={"enabled": False, "updated_at": current_time})
            )

        logger.info(
            "module disabled",
            extra={"organization_id": organization_id, "module_key": module_key},
        )
        return entitlement

    def list_for_organization(
        self,
        organization_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> List[EntitlementSummary]:
        current_time = now or self._clock()
        summaries: List[EntitlementSummary] = []
        for entitlement in self._repository.list_entitlements(organization_id):
            module = self._repository.get_module(entitlement.module_id)
            if module is None:
                continue
            summaries.append(
                EntitlementSummary(
                    module=module,
                    entitlement=entitlement,
                    is_expired=entitlement.expires_at is not None and entitlement.expires_at <= current_time,
                    is_trial=entitlement.is_trial(current_time),
                )
            )
        summaries.sort(key=lambda summary: summary.module.name)
        return summaries


__all__ = ["EntitlementService"]
