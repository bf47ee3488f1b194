from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from orgbilling.app.billing import BillingConfig, BillingContact, BillingNotification, GatewayInvoice
from orgbilling.app.billing.memory import InMemoryBillingRepository
from orgbilling.app.entitlements import Entitlement, Module
from orgbilling.app.exceptions import GatewayError
from orgbilling.app.pricing import BillingPeriod, ModulePrice
from orgbilling.app.services.billing import build_billing_engine
from orgbilling.app.subscriptions import Subscription, SubscriptionStatus


class FakeGateway:
    name = "moyasar"

    def __init__(self) -> None:
        self.invoices: Dict[str, GatewayInvoice] = {}
        self.created: List[Dict[str, object]] = []
        self.fetched: List[str] = []
        self.error: Optional[Exception] = None

    def create_invoice(self, **kwargs) -> GatewayInvoice:
        if self.error is not None:
            raise self.error
        invoice_id = f"inv_{len(self.created) + 1}"
        invoice = GatewayInvoice(
            invoice_id=invoice_id,
            status="initiated",
            amount_minor_units=kwargs["amount_minor_units"],
            currency=kwargs["currency"],
            invoice_url=f"https://pay.test/invoices/{invoice_id}",
            expires_at=kwargs["expires_at"],
            metadata=dict(kwargs["metadata"]),
        )
        self.created.append(kwargs)
        self.invoices[invoice_id] = invoice
        return invoice

    def get_invoice(self, invoice_id: str) -> GatewayInvoice:
        self.fetched.append(invoice_id)
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise GatewayError(f"Invoice {invoice_id} not found", status_code=404)
        return invoice

    def mark_paid(self, invoice_id: str) -> GatewayInvoice:
        paid = self.invoices[invoice_id].model_copy(update={"status": "paid"})
        self.invoices[invoice_id] = paid
        return paid


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[BillingNotification] = []
        self.error: Optional[Exception] = None

    def send(self, notification: BillingNotification) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(notification)

    def templates(self) -> List[str]:
        return [notification.template_id.value for notification in self.sent]


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    repo = InMemoryBillingRepository()
    repo.add_module(Module(module_id="mod_crm", key="crm", name="CRM"))
    repo.add_module(Module(module_id="mod_hr", key="hr", name="HR"))
    repo.add_module(Module(module_id="mod_old", key="legacy-reports", name="Legacy Reports", is_active=False))
    repo.add_price(ModulePrice(module_id="mod_crm", plan="pro", amount_minor_units=9900, currency="SAR"))
    repo.add_price(
        ModulePrice(
            module_id="mod_crm",
            plan="pro",
            billing_period=BillingPeriod.YEARLY,
            amount_minor_units=99000,
            currency="SAR",
        )
    )
    repo.add_price(ModulePrice(module_id="mod_hr", plan="basic", amount_minor_units=4900, currency="SAR"))
    repo.add_contact(
        BillingContact(
            organization_id="org_1",
            email="billing@acme.test",
            name="Dana",
            organization_name="Acme",
        )
    )
    return repo


@pytest.fixture
def seed_subscription(repository, now):
    """Store an active subscription together with its enabled entitlement."""

    def _seed(
        subscription_id: str = "sub_1",
        *,
        period_end: datetime,
        organization_id: str = "org_1",
        module_id: str = "mod_crm",
        plan: str = "pro",
        **overrides,
    ) -> Subscription:
        subscription = Subscription(
            subscription_id=subscription_id,
            organization_id=organization_id,
            module_id=module_id,
            plan=plan,
            current_period_start=overrides.pop("period_start", period_end - timedelta(days=30)),
            current_period_end=period_end,
            created_at=now - timedelta(days=60),
            **overrides,
        )
        repository.insert_subscription(subscription)
        repository.save_entitlement(
            Entitlement(
                organization_id=organization_id,
                module_id=module_id,
                enabled=subscription.status == SubscriptionStatus.ACTIVE,
                plan=plan,
            )
        )
        return subscription

    return _seed


@pytest.fixture
def billing_components(repository):
    gateway = FakeGateway()
    notifier = RecordingNotifier()
    engine = build_billing_engine(repository, config=BillingConfig(), gateway=gateway, notifier=notifier)
    return repository, gateway, notifier, engine


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()
