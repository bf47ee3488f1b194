from __future__ import annotations

import json
import threading
from datetime import timedelta

import pytest

from orgbilling.app.billing import BillingConfig, PaymentStatus
from orgbilling.app.exceptions import WebhookPayloadError, WebhookSignatureError
from orgbilling.app.services.billing import build_billing_engine
from orgbilling.app.subscriptions import SubscriptionStatus
from orgbilling.app.webhooks import compute_signature, verify_signature


def _body(**overrides) -> bytes:
    payload = {
        "id": "inv_first",
        "status": "paid",
        "amount": 9900,
        "currency": "sar",
        "metadata": {
            "organizationId": "org_2",
            "moduleId": "mod_crm",
            "plan": "pro",
            "billingPeriod": "monthly",
        },
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def webhook_engine(repository, recording_notifier):
    engine = build_billing_engine(repository, config=BillingConfig(), notifier=recording_notifier)
    return repository, engine


@pytest.fixture
def signed_engine(repository):
    engine = build_billing_engine(repository, config=BillingConfig(webhook_secret="whsec_test"))
    return repository, engine


def test_first_purchase_creates_subscription(webhook_engine, now):
    repository, engine = webhook_engine

    outcome = engine.webhooks.handle(_body(), None, now=now)

    assert outcome.status_code == 200
    assert outcome.applied is True
    assert outcome.body["success"] is True
    assert outcome.body["subscriptionCreated"] is True
    subscription = repository.get_subscription(outcome.body["subscriptionId"])
    assert subscription.organization_id == "org_2"
    assert subscription.status == SubscriptionStatus.ACTIVE
    payment = repository.get_payment("moyasar", "inv_first")
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.currency == "SAR"
    assert engine.entitlements.check("org_2", "crm", now=now).entitled is True


def test_redelivery_is_acknowledged_without_changes(webhook_engine, now):
    repository, engine = webhook_engine
    engine.webhooks.handle(_body(), None, now=now)

    outcome = engine.webhooks.handle(_body(), None, now=now + timedelta(minutes=1))

    assert outcome.applied is False
    assert outcome.body == {"received": True, "message": "Webhook already processed"}
    assert len(repository.subscriptions) == 1
    assert len(repository.periods) == 1
    assert len(repository.payments) == 1


def test_redelivery_after_cache_loss_is_still_idempotent(webhook_engine, now):
    repository, engine = webhook_engine
    engine.webhooks.handle(_body(), None, now=now)
    engine.webhooks.cache.clear()

    outcome = engine.webhooks.handle(_body(), None, now=now)

    assert outcome.applied is False
    assert len(repository.periods) == 1


def test_concurrent_deliveries_apply_once(webhook_engine, now):
    repository, engine = webhook_engine
    deliveries = 8
    barrier = threading.Barrier(deliveries)
    outcomes = []
    errors = []

    def deliver():
        barrier.wait()
        try:
            outcomes.append(engine.webhooks.handle(_body(), None, now=now))
        except Exception as exc:
            errors.append(exc)

    workers = [threading.Thread(target=deliver) for _ in range(deliveries)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    assert errors == []
    assert len(outcomes) == deliveries
    assert all(outcome.status_code == 200 for outcome in outcomes)
    assert sum(1 for outcome in outcomes if outcome.applied) == 1
    assert len(repository.payments) == 1
    assert repository.get_payment("moyasar", "inv_first").status == PaymentStatus.SUCCEEDED
    assert len(repository.subscriptions) == 1
    assert len(repository.periods) == 1


def test_event_envelope_is_unwrapped(webhook_engine, now):
    repository, engine = webhook_engine
    envelope = json.dumps({"type": "invoice.paid", "data": json.loads(_body())}).encode("utf-8")

    outcome = engine.webhooks.handle(envelope, None, now=now)

    assert outcome.applied is True
    assert repository.get_payment("moyasar", "inv_first") is not None


def test_unpaid_status_is_acknowledged(webhook_engine, now):
    repository, engine = webhook_engine

    outcome = engine.webhooks.handle(_body(status="initiated"), None, now=now)

    assert outcome.body["message"] == "Payment not completed yet"
    assert repository.payments == {}


def test_unknown_module_is_acknowledged(webhook_engine, now):
    repository, engine = webhook_engine
    body = _body(metadata={"organizationId": "org_2", "moduleId": "mod_missing", "plan": "pro"})

    outcome = engine.webhooks.handle(body, None, now=now)

    assert outcome.status_code == 200
    assert outcome.body["message"] == "Unknown module"
    assert repository.subscriptions == {}


def test_module_can_be_referenced_by_key(webhook_engine, now):
    repository, engine = webhook_engine
    body = _body(metadata={"organizationId": "org_2", "moduleKey": "crm", "plan": "pro"})

    outcome = engine.webhooks.handle(body, None, now=now)

    assert outcome.applied is True
    assert repository.get_entitlement("org_2", "mod_crm").enabled is True


def test_unknown_subscription_is_acknowledged(webhook_engine, seed_subscription, now):
    repository, engine = webhook_engine
    seed_subscription(period_end=now + timedelta(days=3))
    body = _body(
        metadata={
            "organizationId": "org_2",
            "moduleId": "mod_crm",
            "plan": "pro",
            "subscriptionId": "sub_1",
        }
    )

    outcome = engine.webhooks.handle(body, None, now=now)

    assert outcome.body["message"] == "Unknown subscription"
    assert repository.get_subscription("sub_1").current_period_end == now + timedelta(days=3)


def test_payment_for_canceled_subscription_is_flagged(webhook_engine, seed_subscription, now):
    repository, engine = webhook_engine
    seed_subscription(
        period_end=now + timedelta(days=3),
        status=SubscriptionStatus.CANCELED,
        canceled_at=now - timedelta(days=1),
    )
    body = _body(
        metadata={
            "organizationId": "org_1",
            "moduleId": "mod_crm",
            "plan": "pro",
            "subscriptionId": "sub_1",
        }
    )

    outcome = engine.webhooks.handle(body, None, now=now)

    assert outcome.status_code == 200
    assert outcome.applied is False
    assert outcome.body["message"] == "Subscription cannot be renewed; payment flagged for review"
    assert repository.get_subscription("sub_1").status == SubscriptionStatus.CANCELED


def test_plan_is_inherited_from_subscription(webhook_engine, seed_subscription, now):
    repository, engine = webhook_engine
    seed_subscription(period_end=now - timedelta(days=2))
    body = _body(metadata={"organizationId": "org_1", "moduleId": "mod_crm", "subscriptionId": "sub_1"})

    outcome = engine.webhooks.handle(body, None, now=now)

    assert outcome.applied is True
    assert outcome.body["subscriptionCreated"] is False
    assert repository.get_subscription("sub_1").current_period_end > now


@pytest.mark.parametrize(
    "raw_body",
    [
        b"not json",
        b"[]",
        json.dumps({"status": "paid"}).encode("utf-8"),
        json.dumps({"id": "inv_1"}).encode("utf-8"),
        json.dumps({"id": "inv_1", "status": "paid", "metadata": {"plan": "pro"}}).encode("utf-8"),
        json.dumps(
            {
                "id": "inv_1",
                "status": "paid",
                "metadata": {"organizationId": "org_2", "moduleId": "mod_crm", "plan": "pro", "billingPeriod": "weekly"},
            }
        ).encode("utf-8"),
    ],
)
def test_malformed_payload_is_rejected(webhook_engine, now, raw_body):
    repository, engine = webhook_engine

    with pytest.raises(WebhookPayloadError):
        engine.webhooks.handle(raw_body, None, now=now)

    assert repository.payments == {}


def test_missing_plan_for_new_purchase_is_rejected(webhook_engine, now):
    _, engine = webhook_engine

    with pytest.raises(WebhookPayloadError):
        engine.webhooks.handle(_body(metadata={"organizationId": "org_2", "moduleId": "mod_crm"}), None, now=now)


def test_signature_is_required_when_secret_configured(signed_engine, now):
    repository, engine = signed_engine
    raw_body = _body()

    with pytest.raises(WebhookSignatureError):
        engine.webhooks.handle(raw_body, None, now=now)
    with pytest.raises(WebhookSignatureError):
        engine.webhooks.handle(raw_body, compute_signature(raw_body, "wrong"), now=now)
    assert repository.payments == {}

    outcome = engine.webhooks.handle(raw_body, compute_signature(raw_body, "whsec_test"), now=now)
    assert outcome.applied is True


def test_verify_signature_without_secret_proceeds():
    assert verify_signature(b"{}", None, None) is False
    assert verify_signature(b"{}", compute_signature(b"{}", "s"), "s") is True
    with pytest.raises(WebhookSignatureError):
        verify_signature(b"{}", "café", "s")


def test_gateway_invoice_overrides_callback_body(billing_components, seed_subscription, now):
    repository, gateway, _, engine = billing_components
    seed_subscription(period_end=now - timedelta(days=1))
    engine.scheduler.run(now)

    pending = engine.webhooks.handle(b'{"id": "inv_1", "status": "paid"}', None, now=now)
    assert pending.body["message"] == "Payment not completed yet"
    assert gateway.fetched == ["inv_1"]

    gateway.mark_paid("inv_1")
    outcome = engine.webhooks.handle(b'{"id": "inv_1", "status": "paid"}', None, now=now)

    assert outcome.applied is True
    assert outcome.body["subscriptionId"] == "sub_1"
    assert repository.get_payment("moyasar", "inv_1").status == PaymentStatus.SUCCEEDED
