"""Daily renewal sweep over subscriptions approaching or past their period end."""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

from ..billing.config import BillingConfig, RenewalMode
from ..billing.ledger import PaymentLedger
from ..billing.notifications import BillingNoticeDispatcher
from ..billing.protocols import BillingRepository, PaymentGateway
from ..exceptions import GatewayError, GatewayNotConfigured, InvalidTransition
from ..subscriptions.models import Subscription, SubscriptionEvent, SubscriptionStatus
from ..subscriptions.service import SubscriptionService

logger = logging.getLogger(__name__)

REMINDER_DAYS = frozenset({7, 3, 1})


class RenewalAction(str, Enum):
    """What the sweep did with a subscription."""

    ACTIVE = "active"
    SKIPPED = "skipped"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PRICING_MISSING = "pricing_missing"
    INVOICE_CREATED = "invoice_created"
    INVOICE_PENDING = "invoice_pending"
    GRACE_EXTENDED = "grace_extended"
    GATEWAY_NOT_CONFIGURED = "gateway_not_configured"
    RENEWED = "renewed"
    FAILED = "failed"


@dataclass(frozen=True)
class RenewalResult:
    subscription_id: str
    success: bool
    action: RenewalAction
    message: str
    error: Optional[str] = None
    reminder_sent: bool = False


@dataclass
class RenewalRunSummary:
    """Per-subscription results of one sweep."""

    started_at: datetime
    results: List[RenewalResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def reminders_sent(self) -> int:
        return sum(1 for result in self.results if result.reminder_sent)

    def count(self, action: RenewalAction) -> int:
        return sum(1 for result in self.results if result.action == action)


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days until ``moment``, rounded up."""

    return math.ceil((moment - now).total_seconds() / 86400)


class RenewalScheduler:
    """Finds subscriptions due for renewal and moves each one forward.

    Every subscription is processed from a fresh read of its own row and a
    failure is recorded without stopping the sweep. State changes go through
    :class:`SubscriptionService` and :class:`PaymentLedger`; gateway calls are
    made outside any repository transaction.
    """

    def __init__(
        self,
        repository: BillingRepository,
        subscriptions: SubscriptionService,
        ledger: PaymentLedger,
        notices: BillingNoticeDispatcher,
        *,
        config: Optional[BillingConfig] = None,
        gateway: Optional[PaymentGateway] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.subscriptions = subscriptions
        self.ledger = ledger
        self.notices = notices
        self.config = config or BillingConfig()
        self.gateway = gateway
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._reminders_sent: Set[Tuple[str, datetime, int]] = set()
        self._reminder_lock = threading.Lock()

    def run(self, now: Optional[datetime] = None) -> RenewalRunSummary:
        current_time = now or self._clock()
        summary = RenewalRunSummary(started_at=current_time)
        self._prune_reminders(current_time)

        cutoff = current_time + timedelta(days=self.config.grace_period_days)
        candidate_ids = list(self.repository.list_renewal_candidates(cutoff))
        for subscription_id in self.repository.list_due_cancellations(current_time):
            if subscription_id not in candidate_ids:
                candidate_ids.append(subscription_id)

        for subscription_id in candidate_ids:
            try:
                result = self.renew_subscription(subscription_id, now=current_time)
            except Exception as exc:
                logger.exception(
                    "Renewal failed for subscription",
                    extra={"subscription_id": subscription_id},
                )
                result = RenewalResult(
                    subscription_id=subscription_id,
                    success=False,
                    action=RenewalAction.FAILED,
                    message="Failed to renew subscription",
                    error=f"{type(exc).__name__}: {exc}",
                )
            summary.results.append(result)

        logger.info(
            "Renewal sweep completed",
            extra={
                "processed": summary.processed,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "reminders_sent": summary.reminders_sent,
            },
        )
        return summary

    def renew_subscription(self, subscription_id: str, *, now: Optional[datetime] = None) -> RenewalResult:
        current_time = now or self._clock()
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None:
            return RenewalResult(
                subscription_id=subscription_id,
                success=False,
                action=RenewalAction.FAILED,
                message="Subscription not found",
            )
        if subscription.status != SubscriptionStatus.ACTIVE:
            return RenewalResult(
                subscription_id=subscription_id,
                success=True,
                action=RenewalAction.SKIPPED,
                message=f"Subscription is {subscription.status.value}",
            )

        try:
            if subscription.cancel_at_period_end:
                return self._complete_cancellation(subscription, current_time)

            days_left = days_until(subscription.current_period_end, current_time)
            reminder_sent = False
            if days_left in REMINDER_DAYS:
                reminder_sent = self._send_reminder(subscription, days_left)

            if current_time >= subscription.current_period_end:
                result = self._attempt_renewal(subscription, current_time)
            else:
                result = RenewalResult(
                    subscription_id=subscription_id,
                    success=True,
                    action=RenewalAction.ACTIVE,
                    message=f"Subscription is active, expires in {days_left} days",
                )
        except InvalidTransition as exc:
            # Renewed or canceled by another writer after this sweep read it.
            logger.info(
                "Subscription changed during renewal sweep",
                extra={"subscription_id": subscription_id, "error": str(exc)},
            )
            return RenewalResult(
                subscription_id=subscription_id,
                success=True,
                action=RenewalAction.SKIPPED,
                message=str(exc),
            )
        if reminder_sent:
            result = replace(result, reminder_sent=True)
        return result

    def handle_renewal_confirmed(self, subscription: Subscription) -> None:
        """Forget reminders for a subscription whose renewal payment arrived."""

        with self._reminder_lock:
            self._reminders_sent = {
                key for key in self._reminders_sent if key[0] != subscription.subscription_id
            }

    def _send_reminder(self, subscription: Subscription, days_left: int) -> bool:
        key = (subscription.subscription_id, subscription.current_period_end, days_left)
        with self._reminder_lock:
            if key in self._reminders_sent:
                return False
        if not self.notices.renewal_reminder(subscription, days_left):
            return False
        with self._reminder_lock:
            self._reminders_sent.add(key)
        return True

    def _prune_reminders(self, now: datetime) -> None:
        """Drop suppression keys for periods that have already ended."""

        with self._reminder_lock:
            self._reminders_sent = {key for key in self._reminders_sent if key[1] > now}

    def _complete_cancellation(self, subscription: Subscription, now: datetime) -> RenewalResult:
        if now < subscription.current_period_end:
            return RenewalResult(
                subscription_id=subscription.subscription_id,
                success=True,
                action=RenewalAction.SKIPPED,
                message="Subscription is canceled at period end",
            )
        transition = self.subscriptions.apply(
            subscription.subscription_id,
            SubscriptionEvent.COMPLETE_CANCELLATION,
            now=now,
            expected_period_end=subscription.current_period_end,
        )
        self.notices.subscription_canceled(transition.subscription, subscription.current_period_end)
        return RenewalResult(
            subscription_id=subscription.subscription_id,
            success=True,
            action=RenewalAction.CANCELED,
            message="Scheduled cancellation completed",
        )

    def _expire(self, subscription: Subscription, now: datetime) -> Subscription:
        transition = self.subscriptions.apply(
            subscription.subscription_id,
            SubscriptionEvent.EXPIRE,
            now=now,
            expected_period_end=subscription.current_period_end,
        )
        self.notices.subscription_expired(transition.subscription)
        return transition.subscription

    def _attempt_renewal(self, subscription: Subscription, now: datetime) -> RenewalResult:
        subscription_id = subscription.subscription_id

        if now >= subscription.grace_deadline(self.config.grace_period_days):
            self._expire(subscription, now)
            return RenewalResult(
                subscription_id=subscription_id,
                success=True,
                action=RenewalAction.EXPIRED,
                message="Grace period ended, subscription expired",
            )

        price = self.repository.lookup_price(
            subscription.module_id, subscription.plan, subscription.billing_period
        )
        if price is None:
            self._expire(subscription, now)
            logger.warning(
                "No price configured for renewal; subscription expired",
                extra={
                    "subscription_id": subscription_id,
                    "module_id": subscription.module_id,
                    "plan": subscription.plan,
                    "billing_period": subscription.billing_period.value,
                },
            )
            return RenewalResult(
                subscription_id=subscription_id,
                success=False,
                action=RenewalAction.PRICING_MISSING,
                message="No pricing found, subscription expired",
                error="PricingNotConfigured",
            )

        if self.config.renewal_mode == RenewalMode.MANUAL:
            provider_ref = f"manual_{subscription_id}_{subscription.current_period_end:%Y%m%d%H%M%S}"
            self.ledger.record_attempt(
                subscription_id,
                price.amount_minor_units,
                provider_ref,
                currency=price.currency,
                provider="manual",
                now=now,
                expected_period_end=subscription.current_period_end,
            )
            confirmation = self.ledger.confirm(provider_ref, provider="manual", now=now)
            if confirmation.subscription is not None:
                self.handle_renewal_confirmed(confirmation.subscription)
            return RenewalResult(
                subscription_id=subscription_id,
                success=True,
                action=RenewalAction.RENEWED,
                message="Subscription renewed manually",
            )

        if self.gateway is None:
            error = GatewayNotConfigured("Gateway renewal mode is selected but no gateway is configured")
            logger.error(
                "Renewal skipped: payment gateway not configured",
                extra={"subscription_id": subscription_id},
            )
            return RenewalResult(
                subscription_id=subscription_id,
                success=False,
                action=RenewalAction.GATEWAY_NOT_CONFIGURED,
                message=str(error),
                error=type(error).__name__,
            )

        fresh = self.repository.get_subscription(subscription_id)
        if fresh is None or fresh.current_period_end != subscription.current_period_end:
            raise InvalidTransition(
                subscription_id,
                fresh.status if fresh else subscription.status,
                "record_attempt",
                "Subscription period changed since it was read",
            )
        if self.repository.find_open_payment(subscription_id, now) is not None:
            return RenewalResult(
                subscription_id=subscription_id,
                success=True,
                action=RenewalAction.INVOICE_PENDING,
                message="Renewal invoice already pending",
            )

        module = self.repository.get_module(subscription.module_id)
        module_name = module.name if module else subscription.module_id
        expires_at = now + timedelta(days=self.config.invoice_expiry_days)
        try:
            invoice = self.gateway.create_invoice(
                amount_minor_units=price.amount_minor_units,
                currency=price.currency,
                description=f"Renewal: {module_name} - {subscription.plan} plan",
                metadata={
                    "organizationId": subscription.organization_id,
                    "moduleId": subscription.module_id,
                    "moduleKey": module.key if module else None,
                    "plan": subscription.plan,
                    "billingPeriod": subscription.billing_period.value,
                    "subscriptionId": subscription_id,
                    "isRenewal": True,
                },
                success_url=f"{self.config.billing_url}/subscriptions?renewal=success",
                back_url=f"{self.config.billing_url}/subscriptions",
                callback_url=self.config.callback_url,
                expires_at=expires_at,
            )
        except GatewayError as exc:
            transition = self.subscriptions.apply(
                subscription_id,
                SubscriptionEvent.EXTEND_GRACE,
                now=now,
                expected_period_end=subscription.current_period_end,
                extension_days=self.config.gateway_failure_extension_days,
                grace_period_days=self.config.grace_period_days,
            )
            logger.warning(
                "Gateway unavailable for renewal; grace period extended",
                extra={
                    "subscription_id": subscription_id,
                    "grace_period_expires_at": transition.subscription.grace_period_expires_at.isoformat()
                    if transition.subscription.grace_period_expires_at
                    else None,
                    "error": str(exc),
                },
            )
            return RenewalResult(
                subscription_id=subscription_id,
                success=False,
                action=RenewalAction.GRACE_EXTENDED,
                message="Gateway unavailable, grace period extended",
                error=str(exc),
            )

        payment = self.ledger.record_attempt(
            subscription_id,
            price.amount_minor_units,
            invoice.invoice_id,
            currency=price.currency,
            provider=self.gateway.name,
            invoice_url=invoice.invoice_url,
            expires_at=invoice.expires_at or expires_at,
            now=now,
            expected_period_end=subscription.current_period_end,
        )
        self.notices.payment_required(subscription, payment)
        return RenewalResult(
            subscription_id=subscription_id,
            success=True,
            action=RenewalAction.INVOICE_CREATED,
            message="Renewal invoice created, waiting for payment",
        )


__all__ = [
    "REMINDER_DAYS",
    "RenewalAction",
    "RenewalResult",
    "RenewalRunSummary",
    "RenewalScheduler",
    "days_until",
]
