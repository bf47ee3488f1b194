from __future__ import annotations

from datetime import timedelta

import pytest

from orgbilling.app.exceptions import InvalidTransition, PricingNotConfigured
from orgbilling.app.pricing import BillingPeriod, ModulePrice
from orgbilling.app.subscriptions import SubscriptionEvent, SubscriptionStatus


def test_cancel_at_period_end_keeps_module_enabled(billing_components, seed_subscription, now):
    repository, _, notifier, engine = billing_components
    subscription = seed_subscription(period_end=now + timedelta(days=12))

    updated = engine.subscriptions.cancel("sub_1", organization_id="org_1", now=now)

    assert updated.cancel_at_period_end is True
    assert updated.status == SubscriptionStatus.ACTIVE
    assert repository.get_entitlement("org_1", "mod_crm").enabled is True
    assert notifier.templates() == ["subscription_canceled"]
    assert notifier.sent[0].parameters["effective_at"] == subscription.current_period_end.strftime("%Y-%m-%d")


def test_cancel_immediately_disables_module(billing_components, seed_subscription, now):
    repository, _, _, engine = billing_components
    seed_subscription(period_end=now + timedelta(days=12))

    updated = engine.subscriptions.cancel("sub_1", organization_id="org_1", at_period_end=False, now=now)

    assert updated.status == SubscriptionStatus.CANCELED
    assert repository.get_entitlement("org_1", "mod_crm").enabled is False
    assert engine.entitlements.check("org_1", "crm", now=now).entitled is False


def test_cancel_rejects_other_organization(billing_components, seed_subscription, now):
    _, _, _, engine = billing_components
    seed_subscription(period_end=now + timedelta(days=12))

    with pytest.raises(LookupError):
        engine.subscriptions.cancel("sub_1", organization_id="org_other", now=now)


def test_cancel_twice_is_invalid(billing_components, seed_subscription, now):
    _, _, _, engine = billing_components
    seed_subscription(period_end=now + timedelta(days=12))
    engine.subscriptions.cancel("sub_1", organization_id="org_1", at_period_end=False, now=now)

    with pytest.raises(InvalidTransition):
        engine.subscriptions.cancel("sub_1", organization_id="org_1", now=now)


def test_change_plan_requires_price(billing_components, seed_subscription, now):
    _, _, _, engine = billing_components
    seed_subscription(period_end=now + timedelta(days=12))

    with pytest.raises(PricingNotConfigured) as exc:
        engine.subscriptions.change_plan("sub_1", plan="enterprise", now=now)

    assert isinstance(exc.value, LookupError)
    assert engine.subscriptions.get("sub_1").plan == "pro"


def test_change_plan_updates_entitlement_plan(billing_components, seed_subscription, now):
    repository, _, _, engine = billing_components
    seed_subscription(period_end=now + timedelta(days=12))
    repository.add_price(
        ModulePrice(
            module_id="mod_crm",
            plan="enterprise",
            billing_period=BillingPeriod.YEARLY,
            amount_minor_units=250000,
        )
    )

    updated = engine.subscriptions.change_plan(
        "sub_1",
        plan="enterprise",
        billing_period=BillingPeriod.YEARLY,
        now=now,
    )

    assert updated.plan == "enterprise"
    assert updated.billing_period == BillingPeriod.YEARLY
    assert repository.get_entitlement("org_1", "mod_crm").plan == "enterprise"


def test_apply_rejects_stale_period(billing_components, seed_subscription, now):
    repository, _, _, engine = billing_components
    subscription = seed_subscription(period_end=now - timedelta(days=20))

    with pytest.raises(InvalidTransition):
        engine.subscriptions.apply(
            "sub_1",
            SubscriptionEvent.EXPIRE,
            now=now,
            expected_period_end=subscription.current_period_end - timedelta(days=30),
        )

    assert repository.get_subscription("sub_1").status == SubscriptionStatus.ACTIVE
    assert repository.get_entitlement("org_1", "mod_crm").enabled is True


def test_apply_unknown_subscription(billing_components, now):
    _, _, _, engine = billing_components

    with pytest.raises(LookupError):
        engine.subscriptions.apply("missing", SubscriptionEvent.EXPIRE, now=now)


def test_list_for_organization_newest_first(billing_components, seed_subscription, now):
    _, _, _, engine = billing_components
    seed_subscription("sub_crm", period_end=now + timedelta(days=3))
    seed_subscription(
        "sub_hr",
        period_end=now + timedelta(days=20),
        module_id="mod_hr",
        plan="basic",
    )

    subscriptions = engine.subscriptions.list_for_organization("org_1")

    assert {subscription.subscription_id for subscription in subscriptions} == {"sub_crm", "sub_hr"}
    assert engine.subscriptions.list_for_organization("org_2") == []
