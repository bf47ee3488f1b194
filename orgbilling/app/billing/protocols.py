"""Collaborator protocols required by the billing engine."""
from __future__ import annotations

from datetime import datetime
from typing import ContextManager, Dict, Optional, Protocol, Sequence, Tuple

from ..entitlements.models import Entitlement, Module
from ..pricing.models import BillingPeriod, ModulePrice
from ..subscriptions.models import Subscription, SubscriptionPeriod
from .models import BillingContact, BillingNotification, GatewayInvoice, Payment


class BillingRepository(Protocol):
    """Persistence operations for entitlements, subscriptions, and payments.

    Writes made through the repository yielded by :meth:`transaction` commit
    together or not at all. ``for_update`` reads lock the row until the
    transaction ends.
    """

    def transaction(self) -> ContextManager["BillingRepository"]:
        ...

    def get_module(self, module_id: str) -> Optional[Module]:
        ...

    def get_module_by_key(self, key: str) -> Optional[Module]:
        ...

    def get_entitlement(
        self,
        organization_id: str,
        module_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Entitlement]:
        ...

    def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        ...

    def list_entitlements(self, organization_id: str) -> Sequence[Entitlement]:
        ...

    def list_trial_entitlements(self) -> Sequence[Entitlement]:
        ...

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        ...

    def find_lineage_subscription(
        self,
        organization_id: str,
        module_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        ...

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def save_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def list_subscriptions(self, organization_id: str) -> Sequence[Subscription]:
        ...

    def list_renewal_candidates(self, cutoff: datetime) -> Sequence[str]:
        ...

    def list_due_cancellations(self, now: datetime) -> Sequence[str]:
        ...

    def record_period(self, period: SubscriptionPeriod) -> SubscriptionPeriod:
        ...

    def insert_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        ...

    def get_payment(self, provider: str, provider_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        ...

    def save_payment(self, payment: Payment) -> Payment:
        ...

    def find_open_payment(self, subscription_id: str, now: datetime) -> Optional[Payment]:
        ...

    def list_payments(self, organization_id: str, *, limit: int = 50) -> Sequence[Payment]:
        ...

    def get_billing_contact(self, organization_id: str) -> Optional[BillingContact]:
        ...

    def lookup_price(
        self,
        module_id: str,
        plan: str,
        billing_period: BillingPeriod,
    ) -> Optional[ModulePrice]:
        ...


class PaymentGateway(Protocol):
    """Hosted invoice API of the external payment gateway."""

    name: str

    def create_invoice(
        self,
        *,
        amount_minor_units: int,
        currency: str,
        description: str,
        metadata: Dict[str, object],
        success_url: str,
        back_url: str,
        callback_url: str,
        expires_at: datetime,
    ) -> GatewayInvoice:
        ...

    def get_invoice(self, invoice_id: str) -> GatewayInvoice:
        ...


class BillingNotifier(Protocol):
    """Hands billing notifications to the external delivery channel."""

    def send(self, notification: BillingNotification) -> None:
        ...


__all__ = ["BillingNotifier", "BillingRepository", "PaymentGateway"]
