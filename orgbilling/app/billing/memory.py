"""In-process billing repository for tests and local development."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from ..entitlements.models import Entitlement, Module
from ..pricing.catalog import StaticPriceCatalog
from ..pricing.models import BillingPeriod, ModulePrice
from ..subscriptions.models import Subscription, SubscriptionPeriod, SubscriptionStatus
from .models import BillingContact, Payment, PaymentStatus


class InMemoryBillingRepository:
    """Repository holding all billing state in dictionaries.

    Transactions are serialized with a re-entrant lock and roll back to a
    snapshot when the block raises. Records are immutable, so shallow copies
    of the dictionaries are enough for the snapshot.
    """

    def __init__(self, prices: Optional[StaticPriceCatalog] = None) -> None:
        self._lock = threading.RLock()
        self.modules: Dict[str, Module] = {}
        self.entitlements: Dict[Tuple[str, str], Entitlement] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.periods: List[SubscriptionPeriod] = []
        self.payments: Dict[Tuple[str, str], Payment] = {}
        self.contacts: Dict[str, BillingContact] = {}
        self.prices = prices or StaticPriceCatalog()

    def _snapshot(self) -> tuple:
        return (
            dict(self.entitlements),
            dict(self.subscriptions),
            list(self.periods),
            dict(self.payments),
        )

    def _restore(self, snapshot: tuple) -> None:
        entitlements, subscriptions, periods, payments = snapshot
        self.entitlements = entitlements
        self.subscriptions = subscriptions
        self.periods = periods
        self.payments = payments

    @contextmanager
    def transaction(self) -> Iterator["InMemoryBillingRepository"]:
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise

    # Seeding helpers -----------------------------------------------------

    def add_module(self, module: Module) -> Module:
        self.modules[module.module_id] = module
        return module

    def add_contact(self, contact: BillingContact) -> BillingContact:
        self.contacts[contact.organization_id] = contact
        return contact

    def add_price(self, price: ModulePrice) -> ModulePrice:
        self.prices.add(price)
        return price

    # Modules and pricing -------------------------------------------------

    def get_module(self, module_id: str) -> Optional[Module]:
        return self.modules.get(module_id)

    def get_module_by_key(self, key: str) -> Optional[Module]:
        for module in self.modules.values():
            if module.key == key:
                return module
        return None

    def lookup_price(
        self,
        module_id: str,
        plan: str,
        billing_period: BillingPeriod,
    ) -> Optional[ModulePrice]:
        return self.prices.lookup_price(module_id, plan, billing_period)

    def list_prices(self, module_id: str) -> List[ModulePrice]:
        return self.prices.list_prices(module_id)

    # Entitlements --------------------------------------------------------

    def get_entitlement(
        self,
        organization_id: str,
        module_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Entitlement]:
        with self._lock:
            return self.entitlements.get((organization_id, module_id))

    def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        with self._lock:
            self.entitlements[(entitlement.organization_id, entitlement.module_id)] = entitlement
            return entitlement

    def list_entitlements(self, organization_id: str) -> List[Entitlement]:
        with self._lock:
            return [
                entitlement
                for (org_id, _), entitlement in self.entitlements.items()
                if org_id == organization_id
            ]

    def list_trial_entitlements(self) -> List[Entitlement]:
        with self._lock:
            return sorted(
                (
                    entitlement
                    for entitlement in self.entitlements.values()
                    if entitlement.enabled and entitlement.trial_ends_at is not None
                ),
                key=lambda entitlement: entitlement.trial_ends_at,
            )

    # Subscriptions -------------------------------------------------------

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        with self._lock:
            return self.subscriptions.get(subscription_id)

    def find_lineage_subscription(
        self,
        organization_id: str,
        module_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        with self._lock:
            lineage = [
                subscription
                for subscription in self.subscriptions.values()
                if subscription.organization_id == organization_id
                and subscription.module_id == module_id
                and subscription.status != SubscriptionStatus.CANCELED
            ]
            if not lineage:
                return None
            return max(lineage, key=lambda subscription: subscription.created_at)

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.subscription_id in self.subscriptions:
                raise ValueError(f"Subscription already exists: {subscription.subscription_id}")
            if subscription.status != SubscriptionStatus.CANCELED and self.find_lineage_subscription(
                subscription.organization_id, subscription.module_id
            ):
                raise ValueError("An active subscription already exists for this organization and module")
            self.subscriptions[subscription.subscription_id] = subscription
            return subscription

    def save_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.subscription_id not in self.subscriptions:
                raise LookupError(f"Subscription not found: {subscription.subscription_id}")
            self.subscriptions[subscription.subscription_id] = subscription
            return subscription

    def list_subscriptions(self, organization_id: str) -> List[Subscription]:
        with self._lock:
            return sorted(
                (
                    subscription
                    for subscription in self.subscriptions.values()
                    if subscription.organization_id == organization_id
                ),
                key=lambda subscription: subscription.created_at,
                reverse=True,
            )

    def list_renewal_candidates(self, cutoff: datetime) -> List[str]:
        with self._lock:
            candidates = [
                subscription
                for subscription in self.subscriptions.values()
                if subscription.status == SubscriptionStatus.ACTIVE
                and not subscription.cancel_at_period_end
                and subscription.current_period_end <= cutoff
            ]
            candidates.sort(key=lambda subscription: subscription.current_period_end)
            return [subscription.subscription_id for subscription in candidates]

    def list_due_cancellations(self, now: datetime) -> List[str]:
        with self._lock:
            return [
                subscription.subscription_id
                for subscription in self.subscriptions.values()
                if subscription.status == SubscriptionStatus.ACTIVE
                and subscription.cancel_at_period_end
                and subscription.current_period_end <= now
            ]

    def record_period(self, period: SubscriptionPeriod) -> SubscriptionPeriod:
        with self._lock:
            self.periods.append(period)
            return period

    # Payments ------------------------------------------------------------

    def insert_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        with self._lock:
            key = (payment.provider, payment.provider_ref)
            existing = self.payments.get(key)
            if existing is not None:
                return existing, False
            self.payments[key] = payment
            return payment, True

    def get_payment(self, provider: str, provider_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        with self._lock:
            return self.payments.get((provider, provider_ref))

    def save_payment(self, payment: Payment) -> Payment:
        with self._lock:
            key = (payment.provider, payment.provider_ref)
            if key not in self.payments:
                raise LookupError(f"Payment not found: {payment.payment_id}")
            self.payments[key] = payment
            return payment

    def find_open_payment(self, subscription_id: str, now: datetime) -> Optional[Payment]:
        with self._lock:
            open_payments = [
                payment
                for payment in self.payments.values()
                if payment.subscription_id == subscription_id
                and payment.status == PaymentStatus.PENDING
                and (payment.expires_at is None or payment.expires_at > now)
            ]
            if not open_payments:
                return None
            return max(open_payments, key=lambda payment: payment.created_at)

    def list_payments(self, organization_id: str, *, limit: int = 50) -> List[Payment]:
        with self._lock:
            matching = sorted(
                (payment for payment in self.payments.values() if payment.organization_id == organization_id),
                key=lambda payment: payment.created_at,
                reverse=True,
            )
            return matching[:limit]

    # Contacts ------------------------------------------------------------

    def get_billing_contact(self, organization_id: str) -> Optional[BillingContact]:
        return self.contacts.get(organization_id)


__all__ = ["InMemoryBillingRepository"]
