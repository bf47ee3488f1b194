from __future__ import annotations

from datetime import timedelta

import pytest

from orgbilling.app.entitlements import DenialReason, Entitlement
from orgbilling.app.entitlements.service import EntitlementService


@pytest.fixture
def entitlement_service(repository, now):
    return repository, EntitlementService(repository, clock=lambda: now)


def test_check_allows_enabled_module(entitlement_service, now):
    repository, service = entitlement_service
    repository.save_entitlement(
        Entitlement(
            organization_id="org_1",
            module_id="mod_crm",
            enabled=True,
            plan="pro",
            expires_at=now + timedelta(days=3),
        )
    )

    decision = service.check("org_1", "crm")

    assert decision.entitled is True
    assert decision.reason is None
    assert decision.plan == "pro"
    assert decision.expires_at == now + timedelta(days=3)
    assert decision.checked_at == now


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"enabled": False}, DenialReason.DISABLED),
        ({"expires_at": "past"}, DenialReason.EXPIRED),
        ({"trial_ends_at": "past"}, DenialReason.TRIAL_EXPIRED),
    ],
)
def test_check_reports_denial_reason(entitlement_service, now, overrides, reason):
    repository, service = entitlement_service
    values = {"enabled": True}
    for key, value in overrides.items():
        values[key] = now - timedelta(minutes=1) if value == "past" else value
    repository.save_entitlement(Entitlement(organization_id="org_1", module_id="mod_crm", **values))

    decision = service.check("org_1", "crm")

    assert decision.entitled is False
    assert decision.reason == reason


def test_expiry_is_exclusive_at_boundary(entitlement_service, now):
    repository, service = entitlement_service
    repository.save_entitlement(
        Entitlement(organization_id="org_1", module_id="mod_crm", enabled=True, expires_at=now)
    )

    assert service.check("org_1", "crm", now=now - timedelta(seconds=1)).entitled is True
    assert service.check("org_1", "crm", now=now).reason == DenialReason.EXPIRED


def test_check_unknown_or_inactive_module(entitlement_service):
    _, service = entitlement_service

    assert service.check("org_1", "does-not-exist").reason == DenialReason.MODULE_NOT_FOUND
    assert service.check("org_1", "legacy-reports").reason == DenialReason.MODULE_NOT_FOUND


def test_check_without_entitlement(entitlement_service):
    _, service = entitlement_service

    decision = service.check("org_1", "hr")

    assert decision.entitled is False
    assert decision.reason == DenialReason.NOT_FOUND


def test_super_admin_bypasses_checks(entitlement_service):
    _, service = entitlement_service

    decision = service.check("org_1", "does-not-exist", is_super_admin=True)

    assert decision.entitled is True
    assert service.is_entitled("org_1", "hr") is False


def test_enable_module_as_trial(entitlement_service, now):
    repository, service = entitlement_service

    entitlement = service.enable_module("org_1", "hr", plan="basic", seats=5, trial_days=14)

    assert entitlement.enabled is True
    assert entitlement.trial_ends_at == now + timedelta(days=14)
    assert entitlement.seats == 5
    assert repository.get_entitlement("org_1", "mod_hr") == entitlement
    assert service.check("org_1", "hr").entitled is True
    assert service.check("org_1", "hr", now=now + timedelta(days=14)).reason == DenialReason.TRIAL_EXPIRED


def test_enable_module_validates_input(entitlement_service):
    _, service = entitlement_service

    with pytest.raises(ValueError):
        service.enable_module("org_1", "hr", trial_days=0)
    with pytest.raises(LookupError):
        service.enable_module("org_1", "unknown")


def test_disable_module(entitlement_service):
    repository, service = entitlement_service
    service.enable_module("org_1", "crm", plan="pro")

    entitlement = service.disable_module("org_1", "crm")

    assert entitlement.enabled is False
    assert service.check("org_1", "crm").reason == DenialReason.DISABLED
    with pytest.raises(LookupError):
        service.disable_module("org_1", "hr")


def test_list_for_organization_sorted_by_module_name(entitlement_service, now):
    repository, service = entitlement_service
    service.enable_module("org_1", "hr", trial_days=7)
    repository.save_entitlement(
        Entitlement(
            organization_id="org_1",
            module_id="mod_crm",
            enabled=False,
            expires_at=now - timedelta(days=1),
        )
    )
    service.enable_module("org_2", "crm")

    summaries = service.list_for_organization("org_1")

    assert [summary.module.key for summary in summaries] == ["crm", "hr"]
    assert summaries[0].is_expired is True
    assert summaries[0].is_trial is False
    assert summaries[1].is_trial is True
