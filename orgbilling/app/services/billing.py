"""Application wiring for the billing engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from ... import app_context
from ..billing.cache import InMemoryDeliveryCache
from ..billing.config import BillingConfig, RenewalMode, load_billing_config, load_email_settings
from ..billing.gateway import MoyasarGateway
from ..billing.ledger import PaymentLedger
from ..billing.mailers import create_mailer
from ..billing.notifications import BillingNoticeDispatcher, EmailBillingNotifier
from ..billing.protocols import BillingNotifier, BillingRepository, PaymentGateway
from ..billing.repository import PostgresBillingRepository
from ..entitlements.service import EntitlementService
from ..renewals.scheduler import RenewalScheduler
from ..renewals.trials import TrialExpiryJob
from ..subscriptions.service import SubscriptionService
from ..webhooks.handler import WebhookHandler

logger = logging.getLogger("billing")


@dataclass(frozen=True)
class BillingEngine:
    """Every billing component, built over one repository and one config."""

    config: BillingConfig
    repository: BillingRepository
    entitlements: EntitlementService
    subscriptions: SubscriptionService
    ledger: PaymentLedger
    scheduler: RenewalScheduler
    trials: TrialExpiryJob
    webhooks: WebhookHandler


def build_billing_engine(
    repository: BillingRepository,
    *,
    config: Optional[BillingConfig] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[BillingNotifier] = None,
) -> BillingEngine:
    """Assemble the engine; stores and caches are created per engine."""

    engine_config = config or BillingConfig()
    cache = InMemoryDeliveryCache(
        ttl_seconds=engine_config.idempotency_cache_ttl_seconds,
        max_entries=engine_config.idempotency_cache_max_entries,
    )
    notices = BillingNoticeDispatcher(repository, notifier, engine_config)
    ledger = PaymentLedger(repository, cache=cache, default_provider=engine_config.provider_name)
    subscriptions = SubscriptionService(repository, notices=notices)
    scheduler = RenewalScheduler(
        repository,
        subscriptions,
        ledger,
        notices,
        config=engine_config,
        gateway=gateway,
    )
    webhooks = WebhookHandler(
        repository,
        ledger,
        cache,
        webhook_secret=engine_config.webhook_secret,
        gateway=gateway,
        scheduler=scheduler,
        provider=engine_config.provider_name,
    )
    return BillingEngine(
        config=engine_config,
        repository=repository,
        entitlements=EntitlementService(repository),
        subscriptions=subscriptions,
        ledger=ledger,
        scheduler=scheduler,
        trials=TrialExpiryJob(repository, notices),
        webhooks=webhooks,
    )


@lru_cache(maxsize=1)
def get_billing_engine() -> BillingEngine:
    config = load_billing_config()
    repository = app_context.get_repository() or PostgresBillingRepository()
    gateway = MoyasarGateway.from_config(config)
    if gateway is None and config.renewal_mode == RenewalMode.GATEWAY:
        logger.warning("MOYASAR_SECRET_KEY not configured; gateway renewals and invoice re-fetch are disabled")

    email_settings = load_email_settings()
    notifier = EmailBillingNotifier(create_mailer(email_settings), email_settings)
    logger.info(
        "Billing engine configured",
        extra={
            "renewal_mode": config.renewal_mode.value,
            "provider": config.provider_name,
            "gateway_configured": gateway is not None,
            "grace_period_days": config.grace_period_days,
            "mail_transport": email_settings.transport.value,
        },
    )
    return build_billing_engine(repository, config=config, gateway=gateway, notifier=notifier)


def get_entitlement_service() -> EntitlementService:
    return get_billing_engine().entitlements


def get_subscription_service() -> SubscriptionService:
    return get_billing_engine().subscriptions


def get_payment_ledger() -> PaymentLedger:
    return get_billing_engine().ledger


def get_webhook_handler() -> WebhookHandler:
    return get_billing_engine().webhooks


__all__ = [
    "BillingEngine",
    "build_billing_engine",
    "get_billing_engine",
    "get_entitlement_service",
    "get_payment_ledger",
    "get_subscription_service",
    "get_webhook_handler",
]
