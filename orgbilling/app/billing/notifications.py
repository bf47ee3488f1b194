"""Billing notification sinks and the dispatcher that builds notices."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Dict, Optional

from ...mail.renderer import render_subject_body
from ..entitlements.models import Entitlement
from ..subscriptions.models import Subscription
from .config import BillingConfig, EmailSettings
from .mailers import BillingEmail, Mailer
from .models import BillingContact, BillingNotification, NotificationTemplate, Payment
from .protocols import BillingNotifier, BillingRepository

logger = logging.getLogger(__name__)


class LoggingBillingNotifier:
    """Writes notifications to the log instead of delivering them."""

    def __init__(self, logger_name: str = "billing") -> None:
        self._logger = logging.getLogger(logger_name)

    def send(self, notification: BillingNotification) -> None:
        self._logger.info(
            "billing notification",
            extra={
                "recipient": notification.recipient,
                "template_id": notification.template_id.value,
                "parameters": dict(notification.parameters),
            },
        )


class EmailBillingNotifier:
    """Renders notification templates and delivers them through a mailer."""

    # Notices about money owed or access lost are copied to finance.
    FINANCE_COPY = frozenset(
        {
            NotificationTemplate.PAYMENT_REQUIRED,
            NotificationTemplate.SUBSCRIPTION_CANCELED,
            NotificationTemplate.SUBSCRIPTION_EXPIRED,
        }
    )

    def __init__(self, mailer: Mailer, settings: EmailSettings) -> None:
        self.mailer = mailer
        self.settings = settings

    def compose(self, notification: BillingNotification) -> BillingEmail:
        context: Dict[str, str] = {
            "sender_name": self.settings.from_name,
            "support_email": self.settings.support_email,
        }
        context.update(notification.parameters)
        subject, text_body, html_body = render_subject_body(notification.template_id.value, context)
        bcc = self.settings.finance_bcc if notification.template_id in self.FINANCE_COPY else ()
        return BillingEmail(
            recipient=notification.recipient,
            subject=subject,
            text_body=text_body,
            html_body=html_body,
            template_id=notification.template_id.value,
            bcc=bcc,
        )

    def send(self, notification: BillingNotification) -> None:
        email = self.compose(notification)
        attempts = self.settings.max_attempts
        backoff = self.settings.backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                self.mailer.deliver(email)
            except Exception:
                logger.exception(
                    "Failed to send billing email",
                    extra={
                        "template_id": email.template_id,
                        "email_recipient": email.recipient,
                        "email_attempt": attempt,
                        "email_attempts": attempts,
                    },
                )
                if attempt >= attempts:
                    raise
                if backoff > 0:
                    time.sleep(backoff * attempt)
                continue

            logger.info(
                "Billing email dispatched",
                extra={
                    "template_id": email.template_id,
                    "email_recipient": email.recipient,
                    "email_bcc_count": len(email.bcc),
                    **self.mailer.describe(),
                },
            )
            return


def _format_date(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.strftime("%Y-%m-%d")


class BillingNoticeDispatcher:
    """Builds billing notices for an organization's billing contact.

    Delivery is best effort. A missing contact or a failing sink is logged and
    never propagates into the caller's state transition.
    """

    def __init__(
        self,
        repository: BillingRepository,
        notifier: Optional[BillingNotifier],
        config: Optional[BillingConfig] = None,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.config = config or BillingConfig()

    def _base_parameters(self, contact: BillingContact, module_id: str) -> Dict[str, str]:
        module = self.repository.get_module(module_id)
        return {
            "recipient_name": contact.name or contact.email,
            "organization_name": contact.organization_name or contact.organization_id,
            "module_name": module.name if module else module_id,
            "billing_url": self.config.billing_url,
        }

    def _dispatch(
        self,
        template: NotificationTemplate,
        organization_id: str,
        module_id: str,
        parameters: Dict[str, str],
    ) -> bool:
        if self.notifier is None:
            return False
        try:
            contact = self.repository.get_billing_contact(organization_id)
            if contact is None:
                logger.warning(
                    "No billing contact for organization; notification skipped",
                    extra={"organization_id": organization_id, "template_id": template.value},
                )
                return False
            payload = self._base_parameters(contact, module_id)
            payload.update(parameters)
            self.notifier.send(
                BillingNotification(recipient=contact.email, template_id=template, parameters=payload)
            )
        except Exception:
            logger.exception(
                "Billing notification failed",
                extra={"organization_id": organization_id, "template_id": template.value},
            )
            return False
        return True

    def renewal_reminder(self, subscription: Subscription, days_until_expiry: int) -> bool:
        return self._dispatch(
            NotificationTemplate.RENEWAL_REMINDER,
            subscription.organization_id,
            subscription.module_id,
            {
                "plan": subscription.plan,
                "days_until_expiry": str(days_until_expiry),
                "period_end": _format_date(subscription.current_period_end),
            },
        )

    def payment_required(self, subscription: Subscription, payment: Payment) -> bool:
        grace_deadline = subscription.grace_deadline(self.config.grace_period_days)
        return self._dispatch(
            NotificationTemplate.PAYMENT_REQUIRED,
            subscription.organization_id,
            subscription.module_id,
            {
                "plan": subscription.plan,
                "amount": f"{payment.amount_minor_units / 100:.2f}",
                "currency": payment.currency,
                "invoice_url": payment.invoice_url or self.config.billing_url,
                "invoice_expires_at": _format_date(payment.expires_at),
                "grace_deadline": _format_date(grace_deadline),
            },
        )

    def subscription_canceled(self, subscription: Subscription, effective_at: datetime) -> bool:
        return self._dispatch(
            NotificationTemplate.SUBSCRIPTION_CANCELED,
            subscription.organization_id,
            subscription.module_id,
            {"plan": subscription.plan, "effective_at": _format_date(effective_at)},
        )

    def subscription_expired(self, subscription: Subscription) -> bool:
        return self._dispatch(
            NotificationTemplate.SUBSCRIPTION_EXPIRED,
            subscription.organization_id,
            subscription.module_id,
            {"plan": subscription.plan, "expired_at": _format_date(subscription.current_period_end)},
        )

    def trial_expiring(self, entitlement: Entitlement, days_remaining: int) -> bool:
        return self._dispatch(
            NotificationTemplate.TRIAL_EXPIRING,
            entitlement.organization_id,
            entitlement.module_id,
            {
                "days_remaining": str(days_remaining),
                "trial_ends_at": _format_date(entitlement.trial_ends_at),
            },
        )

    def trial_expired(self, entitlement: Entitlement) -> bool:
        return self._dispatch(
            NotificationTemplate.TRIAL_EXPIRED,
            entitlement.organization_id,
            entitlement.module_id,
            {"trial_ended_at": _format_date(entitlement.trial_ends_at)},
        )


__all__ = ["BillingNoticeDispatcher", "EmailBillingNotifier", "LoggingBillingNotifier"]
