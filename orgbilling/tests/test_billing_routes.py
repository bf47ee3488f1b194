from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from orgbilling.app.billing import BillingConfig
from orgbilling.app.entitlements import Entitlement
from orgbilling.app.routes.billing import router
from orgbilling.app.services.billing import build_billing_engine, get_billing_engine
from orgbilling.app.subscriptions import Subscription
from orgbilling.app.webhooks import compute_signature
from orgbilling.billing_jobs import RenewalJobRunner, get_job_runner

SECRET = "whsec_routes"


class ExplodingWebhookHandler:
    def handle(self, raw_body, signature, *, now=None):
        raise RuntimeError("database unavailable")


@pytest.fixture
def client_components(repository, recording_notifier):
    engine = build_billing_engine(
        repository,
        config=BillingConfig(webhook_secret=SECRET),
        notifier=recording_notifier,
    )
    runner = RenewalJobRunner(lambda: engine)
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_billing_engine] = lambda: engine
    app.dependency_overrides[get_job_runner] = lambda: runner
    return repository, engine, app, TestClient(app)


def _seed(repository, *, period_end: datetime) -> Subscription:
    subscription = Subscription(
        subscription_id="sub_1",
        organization_id="org_1",
        module_id="mod_crm",
        plan="pro",
        current_period_start=period_end - timedelta(days=30),
        current_period_end=period_end,
    )
    repository.insert_subscription(subscription)
    repository.save_entitlement(
        Entitlement(organization_id="org_1", module_id="mod_crm", enabled=True, plan="pro")
    )
    return subscription


def _callback_body() -> bytes:
    return json.dumps(
        {
            "id": "inv_web",
            "status": "paid",
            "amount": 9900,
            "metadata": {"organizationId": "org_2", "moduleId": "mod_crm", "plan": "pro"},
        }
    ).encode("utf-8")


def test_payment_callback_applies_signed_payment(client_components):
    repository, _, _, client = client_components
    raw_body = _callback_body()

    response = client.post(
        "/api/billing/payment-callback",
        content=raw_body,
        headers={"X-Moyasar-Signature": compute_signature(raw_body, SECRET), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["subscriptionCreated"] is True
    assert repository.get_entitlement("org_2", "mod_crm").enabled is True


def test_payment_callback_rejects_bad_signature(client_components):
    repository, _, _, client = client_components

    response = client.post(
        "/api/billing/payment-callback",
        content=_callback_body(),
        headers={"X-Moyasar-Signature": "0" * 64},
    )

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid webhook signature"}
    assert repository.payments == {}


def test_payment_callback_rejects_malformed_body(client_components):
    _, _, _, client = client_components
    raw_body = b'{"status": "paid"}'

    response = client.post(
        "/api/billing/payment-callback",
        content=raw_body,
        headers={"X-Moyasar-Signature": compute_signature(raw_body, SECRET)},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Missing required fields"}


def test_payment_callback_reports_internal_errors(client_components):
    _, engine, app, client = client_components
    broken = replace(engine, webhooks=ExplodingWebhookHandler())
    app.dependency_overrides[get_billing_engine] = lambda: broken

    response = client.post("/api/billing/payment-callback", content=_callback_body())

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_check_entitlement_route(client_components):
    repository, _, _, client = client_components
    _seed(repository, period_end=datetime.now(timezone.utc) + timedelta(days=10))

    allowed = client.get("/api/billing/entitlements/org_1/crm").json()
    denied = client.get("/api/billing/entitlements/org_1/hr").json()

    assert allowed["entitled"] is True
    assert allowed["organizationId"] == "org_1"
    assert denied["entitled"] is False
    assert denied["reason"] == "not_found"


def test_list_subscriptions_route(client_components):
    repository, _, _, client = client_components
    _seed(repository, period_end=datetime.now(timezone.utc) + timedelta(days=10))

    payload = client.get("/api/billing/organizations/org_1/subscriptions").json()

    assert [item["id"] for item in payload["subscriptions"]] == ["sub_1"]
    assert payload["subscriptions"][0]["billingPeriod"] == "monthly"
    assert payload["modules"][0]["moduleKey"] == "crm"


def test_cancel_subscription_route(client_components):
    repository, _, _, client = client_components
    _seed(repository, period_end=datetime.now(timezone.utc) + timedelta(days=10))

    missing = client.post("/api/billing/subscriptions/sub_1/cancel", json={"organizationId": "org_2"})
    response = client.post("/api/billing/subscriptions/sub_1/cancel", json={"organizationId": "org_1"})
    again = client.post(
        "/api/billing/subscriptions/sub_1/cancel",
        json={"organizationId": "org_1", "atPeriodEnd": False},
    )
    repeated = client.post("/api/billing/subscriptions/sub_1/cancel", json={"organizationId": "org_1"})

    assert missing.status_code == 404
    assert response.status_code == 200
    assert response.json()["cancelAtPeriodEnd"] is True
    assert again.json()["status"] == "canceled"
    assert repeated.status_code == 400


def test_change_plan_route_requires_price(client_components):
    repository, _, _, client = client_components
    _seed(repository, period_end=datetime.now(timezone.utc) + timedelta(days=10))

    missing_price = client.put("/api/billing/subscriptions/sub_1/plan", json={"plan": "enterprise"})
    yearly = client.put(
        "/api/billing/subscriptions/sub_1/plan",
        json={"plan": "pro", "billingPeriod": "yearly"},
    )

    assert missing_price.status_code == 404
    assert yearly.status_code == 200
    assert yearly.json()["billingPeriod"] == "yearly"


def test_list_payments_route(client_components):
    _, _, _, client = client_components
    raw_body = _callback_body()
    client.post(
        "/api/billing/payment-callback",
        content=raw_body,
        headers={"X-Moyasar-Signature": compute_signature(raw_body, SECRET)},
    )

    payload = client.get("/api/billing/organizations/org_2/payments").json()

    assert [payment["providerRef"] for payment in payload["payments"]] == ["inv_web"]
    assert payload["payments"][0]["status"] == "succeeded"


def test_run_renewals_route(client_components):
    repository, _, _, client = client_components
    _seed(repository, period_end=datetime.now(timezone.utc) + timedelta(days=2, hours=12))

    response = client.post("/api/billing/jobs/renewals")
    metrics = client.get("/api/billing/jobs/metrics").json()

    assert response.status_code == 200
    payload = response.json()
    assert payload["processed"] == 1
    assert payload["results"][0]["action"] == "active"
    assert metrics["renewals"]["runs"] == 1
