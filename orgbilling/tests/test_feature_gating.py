from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from orgbilling.app.entitlements import DenialReason, EntitlementDecision
from orgbilling.app.entitlements.service import EntitlementService
from orgbilling.app.feature_gates import (
    FeatureGateError,
    get_is_super_admin,
    require_entitlement,
    require_module_enabled,
)
from orgbilling.app.services.billing import get_entitlement_service


def _decision(**overrides) -> EntitlementDecision:
    values = {"organization_id": "org_1", "module_key": "crm", "entitled": True}
    values.update(overrides)
    return EntitlementDecision(**values)


def test_require_entitlement_allows_entitled_decision():
    decision = _decision()

    assert require_entitlement(decision) is decision


def test_require_entitlement_rejects_expired_module():
    expired_at = datetime(2025, 3, 1, tzinfo=timezone.utc)

    with pytest.raises(FeatureGateError) as exc:
        require_entitlement(_decision(entitled=False, reason=DenialReason.EXPIRED, expires_at=expired_at))

    assert exc.value.code == "module_expired"
    assert exc.value.status_code == 403
    assert exc.value.payload["module"] == "crm"
    assert exc.value.payload["expires_at"] == expired_at.isoformat()


def test_require_entitlement_unknown_module_is_not_found():
    with pytest.raises(FeatureGateError) as exc:
        require_entitlement(_decision(entitled=False, reason=DenialReason.MODULE_NOT_FOUND))

    assert exc.value.status_code == 404
    assert exc.value.to_http_exception().detail["error"] == "module_module_not_found"


def test_gate_error_carries_denial_context():
    trial_end = datetime(2025, 3, 5, tzinfo=timezone.utc)
    decision = _decision(entitled=False, reason=DenialReason.TRIAL_EXPIRED, trial_ends_at=trial_end)

    error = FeatureGateError.from_decision(decision)

    assert error.reason == DenialReason.TRIAL_EXPIRED
    assert error.organization_id == "org_1"
    assert error.renewable is True
    assert str(error) == "The trial for module 'crm' has ended."
    assert error.payload == {
        "error": "module_trial_expired",
        "message": "The trial for module 'crm' has ended.",
        "module": "crm",
        "reason": "trial_expired",
        "renewable": True,
        "expires_at": None,
        "trial_ends_at": trial_end.isoformat(),
    }


@pytest.mark.parametrize(
    "reason, status_code, renewable",
    [
        (DenialReason.MODULE_NOT_FOUND, 404, False),
        (DenialReason.NOT_FOUND, 403, False),
        (DenialReason.DISABLED, 403, False),
        (DenialReason.EXPIRED, 403, True),
    ],
)
def test_gate_error_status_follows_reason(reason, status_code, renewable):
    error = FeatureGateError("crm", reason)

    assert error.status_code == status_code
    assert error.code == f"module_{reason.value}"
    assert error.renewable is renewable


def test_denial_without_reason_reads_as_not_enabled():
    error = FeatureGateError.from_decision(_decision(entitled=False))

    assert error.reason == DenialReason.NOT_FOUND
    assert error.status_code == 403


@pytest.fixture
def gated_client(repository):
    app = FastAPI()

    @app.get("/crm/contacts")
    def list_contacts(decision: EntitlementDecision = Depends(require_module_enabled("crm"))):
        return {"plan": decision.plan}

    app.dependency_overrides[get_entitlement_service] = lambda: EntitlementService(repository)
    return repository, app, TestClient(app)


def test_module_gate_dependency(gated_client):
    repository, _, client = gated_client
    service = EntitlementService(repository)
    service.enable_module("org_1", "crm", plan="pro")

    allowed = client.get("/crm/contacts", headers={"X-Organization-Id": "org_1"})
    denied = client.get("/crm/contacts", headers={"X-Organization-Id": "org_2"})
    missing_header = client.get("/crm/contacts")

    assert allowed.status_code == 200
    assert allowed.json() == {"plan": "pro"}
    assert denied.status_code == 403
    assert denied.json()["detail"]["reason"] == "not_found"
    assert missing_header.status_code == 422


def test_module_gate_trial_expired(gated_client):
    repository, _, client = gated_client
    service = EntitlementService(repository)
    service.enable_module(
        "org_1",
        "crm",
        trial_days=1,
        now=datetime.now(timezone.utc) - timedelta(days=2),
    )

    response = client.get("/crm/contacts", headers={"X-Organization-Id": "org_1"})

    assert response.status_code == 403
    assert response.json()["detail"]["error"] == "module_trial_expired"
    assert response.json()["detail"]["renewable"] is True


def test_super_admin_bypasses_gate(gated_client):
    _, app, client = gated_client
    app.dependency_overrides[get_is_super_admin] = lambda: True

    response = client.get("/crm/contacts", headers={"X-Organization-Id": "org_without_modules"})

    assert response.status_code == 200
