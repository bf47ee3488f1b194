"""Subscription lifecycle models and transition table."""

from .models import Subscription, SubscriptionEvent, SubscriptionPeriod, SubscriptionStatus
from .state_machine import EntitlementEffect, Transition, apply_event, is_allowed, start_subscription

__all__ = [
    "EntitlementEffect",
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionPeriod",
    "SubscriptionStatus",
    "Transition",
    "apply_event",
    "is_allowed",
    "start_subscription",
]
