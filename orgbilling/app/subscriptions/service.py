"""Read-modify-write access to subscriptions shared by every writer."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from ..billing.notifications import BillingNoticeDispatcher
from ..billing.protocols import BillingRepository
from ..entitlements.models import Entitlement
from ..exceptions import InvalidTransition, PricingNotConfigured
from ..pricing.models import BillingPeriod
from .models import Subscription, SubscriptionEvent, SubscriptionPeriod
from .state_machine import EntitlementEffect, Transition, apply_event

logger = logging.getLogger(__name__)


def persist_transition(
    repository: BillingRepository,
    transition: Transition,
    *,
    now: datetime,
    payment_id: Optional[str] = None,
    created: bool = False,
) -> Optional[Entitlement]:
    """Write a transition's subscription and entitlement effect.

    Must be called inside ``repository.transaction()`` so the subscription,
    entitlement and period rows commit together.
    """

    subscription = transition.subscription
    if created:
        repository.insert_subscription(subscription)
    else:
        repository.save_subscription(subscription)

    if transition.period_rolled_over:
        repository.record_period(
            SubscriptionPeriod(
                subscription_id=subscription.subscription_id,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
                payment_id=payment_id,
                recorded_at=now,
            )
        )

    existing = repository.get_entitlement(
        subscription.organization_id, subscription.module_id, for_update=True
    )
    effect = transition.entitlement_effect

    if effect == EntitlementEffect.ENABLE:
        base = existing or Entitlement(
            organization_id=subscription.organization_id,
            module_id=subscription.module_id,
            created_at=now,
        )
        entitlement = base.model_copy(
            update={
                "enabled": True,
                "plan": subscription.plan,
                "seats": subscription.seats or base.seats,
                "expires_at": None,
                "trial_ends_at": None,
                "updated_at": now,
            }
        )
        return repository.save_entitlement(entitlement)

    if effect == EntitlementEffect.DISABLE:
        base = existing or Entitlement(
            organization_id=subscription.organization_id,
            module_id=subscription.module_id,
            plan=subscription.plan,
            created_at=now,
        )
        update = {"enabled": False, "updated_at": now}
        if transition.entitlement_expires_at is not None:
            update["expires_at"] = transition.entitlement_expires_at
        return repository.save_entitlement(base.model_copy(update=update))

    if transition.event == SubscriptionEvent.CHANGE_PLAN and existing is not None:
        return repository.save_entitlement(
            existing.model_copy(update={"plan": subscription.plan, "updated_at": now})
        )
    return existing


@dataclass(slots=True)
class SubscriptionService:
    """Applies lifecycle events to stored subscriptions."""

    repository: BillingRepository
    notices: Optional[BillingNoticeDispatcher] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def get(self, subscription_id: str) -> Subscription:
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise LookupError(f"Subscription not found: {subscription_id}")
        return subscription

    def list_for_organization(self, organization_id: str) -> Sequence[Subscription]:
        return self.repository.list_subscriptions(organization_id)

    def apply(
        self,
        subscription_id: str,
        event: SubscriptionEvent,
        *,
        now: Optional[datetime] = None,
        expected_period_end: Optional[datetime] = None,
        **params: object,
    ) -> Transition:
        """Re-read the subscription under lock, apply ``event`` and persist it.

        ``expected_period_end`` rejects the event with :class:`InvalidTransition`
        when the locked row no longer has the period the caller decided on.
        """

        current_time = now or self._now()
        with self.repository.transaction() as repo:
            subscription = repo.get_subscription(subscription_id, for_update=True)
            if subscription is None:
                raise LookupError(f"Subscription not found: {subscription_id}")
            if expected_period_end is not None and subscription.current_period_end != expected_period_end:
                raise InvalidTransition(
                    subscription_id,
                    subscription.status,
                    event,
                    "Subscription period changed since it was read",
                )
            transition = apply_event(subscription, event, now=current_time, **params)
            persist_transition(repo, transition, now=current_time)

        logger.info(
            "subscription transition applied",
            extra={
                "subscription_id": subscription_id,
                "event": event.value,
                "previous_status": transition.previous_status.value if transition.previous_status else None,
                "status": transition.subscription.status.value,
            },
        )
        return transition

    def cancel(
        self,
        subscription_id: str,
        *,
        organization_id: str,
        at_period_end: bool = True,
        now: Optional[datetime] = None,
    ) -> Subscription:
        subscription = self.get(subscription_id)
        if subscription.organization_id != organization_id:
            raise LookupError(f"Subscription not found: {subscription_id}")

        current_time = now or self._now()
        event = SubscriptionEvent.CANCEL_AT_PERIOD_END if at_period_end else SubscriptionEvent.CANCEL
        transition = self.apply(subscription_id, event, now=current_time)

        updated = transition.subscription
        effective_at = updated.current_period_end if at_period_end else current_time
        if self.notices is not None:
            self.notices.subscription_canceled(updated, effective_at)
        return updated

    def change_plan(
        self,
        subscription_id: str,
        *,
        plan: str,
        billing_period: Optional[BillingPeriod] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        subscription = self.get(subscription_id)
        period = BillingPeriod(billing_period) if billing_period else subscription.billing_period
        if self.repository.lookup_price(subscription.module_id, plan, period) is None:
            raise PricingNotConfigured(
                f"No price configured for module {subscription.module_id} plan '{plan}' ({period.value})"
            )
        transition = self.apply(
            subscription_id,
            SubscriptionEvent.CHANGE_PLAN,
            now=now,
            plan=plan,
            billing_period=period,
        )
        return transition.subscription


__all__ = ["SubscriptionService", "persist_transition"]
