"""Daily sweep that warns about ending trials and disables expired ones."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from ..billing.notifications import BillingNoticeDispatcher
from ..billing.protocols import BillingRepository
from ..entitlements.models import Entitlement

logger = logging.getLogger(__name__)

TRIAL_NOTICE_DAYS = frozenset({3, 1, 0})


@dataclass
class TrialRunSummary:
    started_at: datetime
    processed: int = 0
    notified: int = 0
    expired: int = 0
    errors: int = 0


def whole_days_remaining(trial_ends_at: datetime, now: datetime) -> int:
    """Completed days left before ``trial_ends_at``; 0 means it ends within a day."""

    return math.floor((trial_ends_at - now).total_seconds() / 86400)


class TrialExpiryJob:
    """Notifies organizations about ending trials and switches off expired ones."""

    def __init__(
        self,
        repository: BillingRepository,
        notices: BillingNoticeDispatcher,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.notices = notices
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self, now: Optional[datetime] = None) -> TrialRunSummary:
        current_time = now or self._clock()
        summary = TrialRunSummary(started_at=current_time)

        for entitlement in self.repository.list_trial_entitlements():
            summary.processed += 1
            try:
                if entitlement.trial_ends_at <= current_time:
                    if self._disable(entitlement, current_time):
                        summary.expired += 1
                    continue
                days_left = whole_days_remaining(entitlement.trial_ends_at, current_time)
                if days_left in TRIAL_NOTICE_DAYS and self.notices.trial_expiring(entitlement, days_left):
                    summary.notified += 1
            except Exception:
                logger.exception(
                    "Trial expiry processing failed",
                    extra={
                        "organization_id": entitlement.organization_id,
                        "module_id": entitlement.module_id,
                    },
                )
                summary.errors += 1

        logger.info(
            "Trial expiry sweep completed",
            extra={
                "processed": summary.processed,
                "notified": summary.notified,
                "expired": summary.expired,
                "errors": summary.errors,
            },
        )
        return summary

    def _disable(self, entitlement: Entitlement, now: datetime) -> bool:
        with self.repository.transaction() as repo:
            current = repo.get_entitlement(entitlement.organization_id, entitlement.module_id, for_update=True)
            # A payment may have converted the trial since the sweep listed it.
            if (
                current is None
                or not current.enabled
                or current.trial_ends_at is None
                or current.trial_ends_at > now
            ):
                return False
            disabled = repo.save_entitlement(current.model_copy(update={"enabled": False, "updated_at": now}))

        self.notices.trial_expired(disabled)
        logger.info(
            "Expired trial disabled",
            extra={"organization_id": disabled.organization_id, "module_id": disabled.module_id},
        )
        return True


__all__ = ["TRIAL_NOTICE_DAYS", "TrialExpiryJob", "TrialRunSummary", "whole_days_remaining"]
