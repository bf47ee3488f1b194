"""Payment ledger: records charge attempts and applies confirmed payments once."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple
from uuid import uuid4

from ..exceptions import InvalidTransition
from ..subscriptions.models import SubscriptionEvent, SubscriptionStatus
from ..subscriptions.service import persist_transition
from ..subscriptions.state_machine import Transition, apply_event, start_subscription
from .cache import DeliveryCache, InMemoryDeliveryCache
from .models import ConfirmationResult, Payment, PaymentClaim, PaymentStatus
from .protocols import BillingRepository

logger = logging.getLogger(__name__)


def delivery_key(provider: str, provider_ref: str) -> str:
    return f"{provider}:{provider_ref}"


@dataclass(slots=True)
class PaymentLedger:
    """Guards against applying the same gateway payment more than once.

    ``(provider, provider_ref)`` is unique in the repository and a payment is
    marked ``succeeded`` in the same transaction that renews the subscription,
    so a redelivered confirmation finds the settled row and does nothing. The
    delivery cache only short-circuits repeats that are already known.
    """

    repository: BillingRepository
    cache: DeliveryCache = field(default_factory=InMemoryDeliveryCache)
    default_provider: str = "moyasar"

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def record_attempt(
        self,
        subscription_id: str,
        amount_minor_units: int,
        provider_ref: str,
        *,
        currency: str = "SAR",
        provider: Optional[str] = None,
        invoice_url: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        expected_period_end: Optional[datetime] = None,
    ) -> Payment:
        """Record a pending charge; an existing ``provider_ref`` returns the stored row.

        With ``expected_period_end`` the charge is refused with
        :class:`InvalidTransition` when the subscription was renewed or left
        ``active`` after the caller read it.
        """

        current_time = now or self._now()
        provider_name = provider or self.default_provider
        with self.repository.transaction() as repo:
            subscription = repo.get_subscription(subscription_id, for_update=True)
            if subscription is None:
                raise LookupError(f"Subscription not found: {subscription_id}")
            if expected_period_end is not None and (
                subscription.status != SubscriptionStatus.ACTIVE
                or subscription.current_period_end != expected_period_end
            ):
                raise InvalidTransition(
                    subscription_id,
                    subscription.status,
                    "record_attempt",
                    "Subscription changed before the renewal charge was recorded",
                )
            payment = Payment(
                payment_id=f"pay_{uuid4().hex}",
                organization_id=subscription.organization_id,
                module_id=subscription.module_id,
                subscription_id=subscription.subscription_id,
                amount_minor_units=amount_minor_units,
                currency=currency,
                status=PaymentStatus.PENDING,
                provider=provider_name,
                provider_ref=provider_ref,
                invoice_url=invoice_url,
                expires_at=expires_at,
                created_at=current_time,
                updated_at=current_time,
            )
            stored, created = repo.insert_payment(payment)

        if not created:
            logger.info(
                "payment attempt already recorded",
                extra={"provider": provider_name, "provider_ref": provider_ref, "payment_id": stored.payment_id},
            )
        return stored

    def is_settled(self, provider_ref: str, provider: Optional[str] = None) -> bool:
        payment = self.repository.get_payment(provider or self.default_provider, provider_ref)
        return payment is not None and payment.is_settled

    def list_payments(self, organization_id: str, *, limit: int = 50) -> Sequence[Payment]:
        return self.repository.list_payments(organization_id, limit=limit)

    def confirm(
        self,
        provider_ref: str,
        *,
        provider: Optional[str] = None,
        now: Optional[datetime] = None,
        claim: Optional[PaymentClaim] = None,
    ) -> ConfirmationResult:
        """Apply a gateway-confirmed payment exactly once.

        The payment row is locked, the target subscription renewed (or
        created), the entitlement and period history written and the payment
        marked settled in one transaction. Any exception rolls all of it back.
        ``claim`` describes the charge when the ledger never saw the attempt.
        """

        current_time = now or self._now()
        provider_name = provider or self.default_provider
        key = delivery_key(provider_name, provider_ref)
        if self.cache.seen(key, current_time):
            return ConfirmationResult(applied=False)

        with self.repository.transaction() as repo:
            payment = self._locked_payment(repo, provider_name, provider_ref, claim, current_time)

            if payment.status == PaymentStatus.SUCCEEDED:
                subscription = (
                    repo.get_subscription(payment.subscription_id) if payment.subscription_id else None
                )
                result = ConfirmationResult(applied=False, payment=payment, subscription=subscription)
            else:
                transition, created = self._transition_for(repo, payment, claim, current_time)
                persist_transition(
                    repo,
                    transition,
                    now=current_time,
                    payment_id=payment.payment_id,
                    created=created,
                )
                subscription = transition.subscription
                settled = repo.save_payment(
                    payment.model_copy(
                        update={
                            "status": PaymentStatus.SUCCEEDED,
                            "subscription_id": subscription.subscription_id,
                            "module_id": subscription.module_id,
                            "paid_at": current_time,
                            "updated_at": current_time,
                        }
                    )
                )
                result = ConfirmationResult(
                    applied=True,
                    payment=settled,
                    subscription=subscription,
                    subscription_created=created,
                )

        self.cache.mark(key, current_time)
        if result.applied:
            logger.info(
                "payment confirmed",
                extra={
                    "provider": provider_name,
                    "provider_ref": provider_ref,
                    "subscription_id": result.subscription.subscription_id if result.subscription else None,
                    "subscription_created": result.subscription_created,
                },
            )
        else:
            logger.info(
                "payment already settled",
                extra={"provider": provider_name, "provider_ref": provider_ref},
            )
        return result

    def _locked_payment(
        self,
        repo: BillingRepository,
        provider: str,
        provider_ref: str,
        claim: Optional[PaymentClaim],
        now: datetime,
    ) -> Payment:
        payment = repo.get_payment(provider, provider_ref, for_update=True)
        if payment is not None:
            return payment
        if claim is None:
            raise LookupError(f"Payment not found: {provider}:{provider_ref}")

        repo.insert_payment(
            Payment(
                payment_id=f"pay_{uuid4().hex}",
                organization_id=claim.organization_id,
                module_id=claim.module_id,
                subscription_id=claim.subscription_id,
                amount_minor_units=claim.amount_minor_units,
                currency=claim.currency,
                status=PaymentStatus.PENDING,
                provider=provider,
                provider_ref=provider_ref,
                created_at=now,
                updated_at=now,
            )
        )
        # Another transaction may have inserted the row first; read it back under lock.
        payment = repo.get_payment(provider, provider_ref, for_update=True)
        if payment is None:
            raise LookupError(f"Payment not found: {provider}:{provider_ref}")
        return payment

    def _transition_for(
        self,
        repo: BillingRepository,
        payment: Payment,
        claim: Optional[PaymentClaim],
        now: datetime,
    ) -> Tuple[Transition, bool]:
        if payment.subscription_id:
            subscription = repo.get_subscription(payment.subscription_id, for_update=True)
            if subscription is None:
                raise LookupError(f"Subscription not found: {payment.subscription_id}")
            return apply_event(subscription, SubscriptionEvent.RENEW, now=now), False

        if not payment.module_id:
            raise LookupError(f"Payment {payment.payment_id} is not linked to a module")

        subscription = repo.find_lineage_subscription(
            payment.organization_id, payment.module_id, for_update=True
        )
        if subscription is not None:
            if claim is not None and (
                claim.plan != subscription.plan or claim.billing_period != subscription.billing_period
            ):
                subscription = subscription.model_copy(
                    update={"plan": claim.plan, "billing_period": claim.billing_period}
                )
            return apply_event(subscription, SubscriptionEvent.RENEW, now=now), False

        if claim is None:
            raise LookupError(f"No subscription to apply payment {payment.payment_id} to")
        transition = start_subscription(
            subscription_id=f"sub_{uuid4().hex}",
            organization_id=payment.organization_id,
            module_id=payment.module_id,
            plan=claim.plan,
            billing_period=claim.billing_period,
            now=now,
        )
        return transition, True


__all__ = ["PaymentLedger", "delivery_key"]
