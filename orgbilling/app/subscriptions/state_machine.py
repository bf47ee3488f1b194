"""Transition functions for the subscription lifecycle.

Every legal ``(status, event)`` pair maps to exactly one function in
``_TRANSITIONS``; anything else raises :class:`InvalidTransition`. The
functions are pure: they return a :class:`Transition` describing the new
subscription and the entitlement side effect, and persistence is left to
:class:`~orgbilling.app.subscriptions.service.SubscriptionService`.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from ..exceptions import InvalidTransition
from ..pricing.models import BillingPeriod, add_billing_period
from .models import Subscription, SubscriptionEvent, SubscriptionStatus


class EntitlementEffect(str, Enum):
    """What a transition requires of the matching entitlement."""

    ENABLE = "enable"
    DISABLE = "disable"
    NONE = "none"


@dataclass(frozen=True)
class Transition:
    """Outcome of applying an event to a subscription."""

    subscription: Subscription
    event: SubscriptionEvent
    previous_status: Optional[SubscriptionStatus]
    entitlement_effect: EntitlementEffect = EntitlementEffect.NONE
    entitlement_expires_at: Optional[datetime] = None
    period_rolled_over: bool = False


def start_subscription(
    *,
    subscription_id: str,
    organization_id: str,
    module_id: str,
    plan: str,
    billing_period: BillingPeriod,
    now: datetime,
    seats: Optional[int] = None,
) -> Transition:
    """Create the first active subscription for an organization and module."""

    subscription = Subscription(
        subscription_id=subscription_id,
        organization_id=organization_id,
        module_id=module_id,
        plan=plan,
        billing_period=billing_period,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=now,
        current_period_end=add_billing_period(now, billing_period),
        seats=seats,
        created_at=now,
        updated_at=now,
    )
    return Transition(
        subscription=subscription,
        event=SubscriptionEvent.RENEW,
        previous_status=None,
        entitlement_effect=EntitlementEffect.ENABLE,
        period_rolled_over=True,
    )


def _renew(subscription: Subscription, *, now: datetime) -> Transition:
    period_end = add_billing_period(now, subscription.billing_period)
    if period_end <= subscription.current_period_end:
        # Paid ahead of time: never move the period end backwards.
        period_end = add_billing_period(subscription.current_period_end, subscription.billing_period)

    renewed = subscription.model_copy(
        update={
            "status": SubscriptionStatus.ACTIVE,
            "current_period_start": now,
            "current_period_end": period_end,
            "cancel_at_period_end": False,
            "canceled_at": None,
            "grace_period_expires_at": None,
            "updated_at": now,
        }
    )
    return Transition(
        subscription=renewed,
        event=SubscriptionEvent.RENEW,
        previous_status=subscription.status,
        entitlement_effect=EntitlementEffect.ENABLE,
        period_rolled_over=True,
    )


def _expire(subscription: Subscription, *, now: datetime) -> Transition:
    expired = subscription.model_copy(
        update={"status": SubscriptionStatus.EXPIRED, "updated_at": now}
    )
    return Transition(
        subscription=expired,
        event=SubscriptionEvent.EXPIRE,
        previous_status=subscription.status,
        entitlement_effect=EntitlementEffect.DISABLE,
        entitlement_expires_at=subscription.current_period_end,
    )


def _cancel(subscription: Subscription, *, now: datetime) -> Transition:
    canceled = subscription.model_copy(
        update={
            "status": SubscriptionStatus.CANCELED,
            "canceled_at": now,
            "cancel_at_period_end": False,
            "updated_at": now,
        }
    )
    return Transition(
        subscription=canceled,
        event=SubscriptionEvent.CANCEL,
        previous_status=subscription.status,
        entitlement_effect=EntitlementEffect.DISABLE,
    )


def _schedule_cancellation(subscription: Subscription, *, now: datetime) -> Transition:
    scheduled = subscription.model_copy(
        update={"cancel_at_period_end": True, "updated_at": now}
    )
    return Transition(
        subscription=scheduled,
        event=SubscriptionEvent.CANCEL_AT_PERIOD_END,
        previous_status=subscription.status,
    )


def _complete_cancellation(subscription: Subscription, *, now: datetime) -> Transition:
    if not subscription.cancel_at_period_end or now < subscription.current_period_end:
        raise InvalidTransition(
            subscription.subscription_id,
            subscription.status,
            SubscriptionEvent.COMPLETE_CANCELLATION,
            "Cancellation can only complete once a scheduled cancellation reaches the period end",
        )
    canceled = subscription.model_copy(
        update={
            "status": SubscriptionStatus.CANCELED,
            "canceled_at": subscription.canceled_at or now,
            "updated_at": now,
        }
    )
    return Transition(
        subscription=canceled,
        event=SubscriptionEvent.COMPLETE_CANCELLATION,
        previous_status=subscription.status,
        entitlement_effect=EntitlementEffect.DISABLE,
    )


def _extend_grace(
    subscription: Subscription,
    *,
    now: datetime,
    extension_days: int,
    grace_period_days: int,
) -> Transition:
    # The failed attempt counts as a period end pushed out by ``extension_days``,
    # with the full grace window still ahead of it.
    deadline = max(
        subscription.grace_deadline(grace_period_days),
        now + timedelta(days=extension_days + grace_period_days),
    )
    extended = subscription.model_copy(
        update={"grace_period_expires_at": deadline, "updated_at": now}
    )
    return Transition(
        subscription=extended,
        event=SubscriptionEvent.EXTEND_GRACE,
        previous_status=subscription.status,
    )


def _change_plan(
    subscription: Subscription,
    *,
    now: datetime,
    plan: str,
    billing_period: Optional[BillingPeriod] = None,
) -> Transition:
    changed = subscription.model_copy(
        update={
            "plan": plan,
            "billing_period": billing_period or subscription.billing_period,
            "updated_at": now,
        }
    )
    return Transition(
        subscription=changed,
        event=SubscriptionEvent.CHANGE_PLAN,
        previous_status=subscription.status,
    )


_TRANSITIONS: Dict[Tuple[SubscriptionStatus, SubscriptionEvent], Callable[..., Transition]] = {
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.RENEW): _renew,
    (SubscriptionStatus.EXPIRED, SubscriptionEvent.RENEW): _renew,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.EXPIRE): _expire,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.CANCEL): _cancel,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.CANCEL_AT_PERIOD_END): _schedule_cancellation,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.COMPLETE_CANCELLATION): _complete_cancellation,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.EXTEND_GRACE): _extend_grace,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.CHANGE_PLAN): _change_plan,
    (SubscriptionStatus.EXPIRED, SubscriptionEvent.CHANGE_PLAN): _change_plan,
}


def is_allowed(status: SubscriptionStatus, event: SubscriptionEvent) -> bool:
    return (status, event) in _TRANSITIONS


def apply_event(
    subscription: Subscription,
    event: SubscriptionEvent,
    *,
    now: datetime,
    **params: object,
) -> Transition:
    """Apply ``event`` to ``subscription`` or raise :class:`InvalidTransition`."""

    handler = _TRANSITIONS.get((subscription.status, event))
    if handler is None:
        raise InvalidTransition(subscription.subscription_id, subscription.status, event)
    return handler(subscription, now=now, **params)


__all__ = [
    "EntitlementEffect",
    "Transition",
    "apply_event",
    "is_allowed",
    "start_subscription",
]
