"""Billing engine settings loaded from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass
from email.utils import formataddr
from enum import Enum
from typing import Mapping, Optional, Tuple


class RenewalMode(str, Enum):
    """How the scheduler collects payment for a due renewal."""

    GATEWAY = "gateway"
    MANUAL = "manual"


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for renewals, the gateway, and webhook intake."""

    grace_period_days: int = 14
    gateway_failure_extension_days: int = 7
    renewal_mode: RenewalMode = RenewalMode.GATEWAY
    provider_name: str = "moyasar"
    gateway_secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    gateway_api_url: str = "https://api.moyasar.com/v1"
    webhook_signature_header: str = "X-Moyasar-Signature"
    idempotency_cache_ttl_seconds: int = 24 * 60 * 60
    idempotency_cache_max_entries: int = 1000
    invoice_expiry_days: int = 7
    frontend_url: str = "http://localhost:3000"
    api_url: str = "http://localhost:8000"
    scheduler_enabled: bool = False
    renewal_hour: int = 2
    trial_hour: int = 3

    @property
    def gateway_configured(self) -> bool:
        return bool(self.gateway_secret_key)

    @property
    def billing_url(self) -> str:
        return f"{self.frontend_url}/billing"

    @property
    def callback_url(self) -> str:
        return f"{self.api_url}/api/billing/payment-callback"


class MailTransport(str, Enum):
    """Where rendered billing notices go."""

    LOG = "log"
    SMTP = "smtp"


@dataclass(frozen=True)
class EmailSettings:
    """Sender identity, transport and retry policy for billing notices.

    ``finance_bcc`` receives a blind copy of every notice that concerns money
    owed or access lost; reminders and trial notices are not copied.
    """

    transport: MailTransport = MailTransport.LOG
    from_email: str = "billing@example.com"
    from_name: str = "Billing"
    reply_to: Optional[str] = None
    finance_bcc: Tuple[str, ...] = ()
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    smtp_timeout_seconds: int = 30
    max_attempts: int = 3
    backoff_seconds: float = 2.0

    @property
    def sender(self) -> str:
        return formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email

    @property
    def support_email(self) -> str:
        return self.reply_to or self.from_email


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int, minimum: int = 0) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc
    if parsed < minimum:
        raise ValueError(f"Expected integer >= {minimum}, got {parsed}")
    return parsed


def _to_hour(value: Optional[str], *, default: int) -> int:
    hour = _to_int(value, default=default)
    if hour > 23:
        raise ValueError(f"Expected an hour between 0 and 23, got {hour}")
    return hour


def _to_renewal_mode(value: Optional[str]) -> RenewalMode:
    if value is None or value.strip() == "":
        return RenewalMode.GATEWAY
    try:
        return RenewalMode(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported BILLING_RENEWAL_MODE {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    secret_key = env_mapping.get("MOYASAR_SECRET_KEY") or None
    webhook_secret = env_mapping.get("MOYASAR_WEBHOOK_SECRET") or secret_key

    return BillingConfig(
        grace_period_days=_to_int(env_mapping.get("BILLING_GRACE_PERIOD_DAYS"), default=14),
        gateway_failure_extension_days=_to_int(
            env_mapping.get("BILLING_GATEWAY_FAILURE_EXTENSION_DAYS"), default=7, minimum=1
        ),
        renewal_mode=_to_renewal_mode(env_mapping.get("BILLING_RENEWAL_MODE")),
        provider_name=(env_mapping.get("BILLING_PROVIDER") or "moyasar").strip().lower(),
        gateway_secret_key=secret_key,
        webhook_secret=webhook_secret,
        gateway_api_url=(env_mapping.get("MOYASAR_API_URL") or "https://api.moyasar.com/v1").rstrip("/"),
        webhook_signature_header=env_mapping.get("BILLING_WEBHOOK_SIGNATURE_HEADER") or "X-Moyasar-Signature",
        idempotency_cache_ttl_seconds=_to_int(
            env_mapping.get("BILLING_IDEMPOTENCY_CACHE_TTL_SECONDS"), default=24 * 60 * 60, minimum=1
        ),
        idempotency_cache_max_entries=_to_int(
            env_mapping.get("BILLING_IDEMPOTENCY_CACHE_MAX_ENTRIES"), default=1000, minimum=1
        ),
        invoice_expiry_days=_to_int(env_mapping.get("BILLING_INVOICE_EXPIRY_DAYS"), default=7, minimum=1),
        frontend_url=(env_mapping.get("FRONTEND_URL") or "http://localhost:3000").rstrip("/"),
        api_url=(env_mapping.get("API_URL") or "http://localhost:8000").rstrip("/"),
        scheduler_enabled=_to_bool(env_mapping.get("BILLING_SCHEDULER_ENABLED"), default=False),
        renewal_hour=_to_hour(env_mapping.get("BILLING_RENEWAL_HOUR"), default=2),
        trial_hour=_to_hour(env_mapping.get("BILLING_TRIAL_HOUR"), default=3),
    )


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc
    if parsed < 0:
        raise ValueError(f"Expected a non-negative value, got {parsed}")
    return parsed


def _to_transport(value: Optional[str]) -> MailTransport:
    if value is None or value.strip() == "":
        return MailTransport.LOG
    lowered = value.strip().lower()
    if lowered == "dev":
        return MailTransport.LOG
    try:
        return MailTransport(lowered)
    except ValueError as exc:
        raise ValueError(f"Unsupported BILLING_EMAIL_TRANSPORT {value!r}") from exc


def _to_addresses(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(address.strip() for address in value.split(",") if address.strip())


def load_email_settings(env: Optional[Mapping[str, str]] = None) -> EmailSettings:
    """Load :class:`EmailSettings` from environment variables.

    The ``BILLING_`` keys win; the generic ``EMAIL_PROVIDER`` and
    ``FROM_EMAIL`` keys are read when the billing ones are unset.
    """

    env_mapping = os.environ if env is None else env

    return EmailSettings(
        transport=_to_transport(
            env_mapping.get("BILLING_EMAIL_TRANSPORT") or env_mapping.get("EMAIL_PROVIDER")
        ),
        from_email=(
            env_mapping.get("BILLING_FROM_EMAIL")
            or env_mapping.get("FROM_EMAIL")
            or "billing@example.com"
        ),
        from_name=env_mapping.get("BILLING_FROM_NAME", "Billing").strip(),
        reply_to=env_mapping.get("BILLING_REPLY_TO") or None,
        finance_bcc=_to_addresses(env_mapping.get("BILLING_FINANCE_BCC")),
        smtp_host=env_mapping.get("SMTP_HOST") or "localhost",
        smtp_port=_to_int(env_mapping.get("SMTP_PORT"), default=587, minimum=1),
        smtp_username=env_mapping.get("SMTP_USER") or None,
        smtp_password=env_mapping.get("SMTP_PASS") or None,
        smtp_use_tls=_to_bool(env_mapping.get("SMTP_USE_TLS"), default=True),
        smtp_timeout_seconds=_to_int(env_mapping.get("SMTP_TIMEOUT_SECONDS"), default=30, minimum=1),
        max_attempts=_to_int(env_mapping.get("BILLING_EMAIL_MAX_ATTEMPTS"), default=3, minimum=1),
        backoff_seconds=_to_float(env_mapping.get("BILLING_EMAIL_RETRY_BACKOFF"), default=2.0),
    )


__all__ = [
    "BillingConfig",
    "EmailSettings",
    "MailTransport",
    "RenewalMode",
    "load_billing_config",
    "load_email_settings",
]
