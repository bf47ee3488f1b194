"""Ingestion of payment gateway callbacks."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..billing.cache import DeliveryCache
from ..billing.ledger import PaymentLedger, delivery_key
from ..billing.models import PaymentClaim
from ..billing.protocols import BillingRepository, PaymentGateway
from ..entitlements.models import Module
from ..exceptions import InvalidTransition, WebhookPayloadError
from ..pricing.models import BillingPeriod
from ..renewals.scheduler import RenewalScheduler
from .signature import verify_signature

logger = logging.getLogger(__name__)

PAID_STATUSES = frozenset({"paid", "succeeded", "captured"})


@dataclass(frozen=True)
class WebhookOutcome:
    """Response the HTTP layer returns to the gateway."""

    body: Dict[str, Any] = field(default_factory=dict)
    status_code: int = 200
    applied: bool = False


def _acknowledge(message: str) -> WebhookOutcome:
    return WebhookOutcome(body={"received": True, "message": message})


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return False


def _parse_body(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise WebhookPayloadError("Request body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Request body must be a JSON object")
    # Event envelopes carry the invoice or payment object under ``data``.
    data = payload.get("data")
    if isinstance(data, dict) and ("type" in payload or "id" not in payload):
        return data
    return payload


class WebhookHandler:
    """Verifies, de-duplicates, interprets and applies gateway callbacks.

    Signature and payload errors surface as :class:`WebhookSignatureError`
    and :class:`WebhookPayloadError`. Deliveries that cannot be matched to
    state are acknowledged and logged so the gateway stops retrying. Any
    other exception means nothing was applied and the gateway should retry.
    """

    def __init__(
        self,
        repository: BillingRepository,
        ledger: PaymentLedger,
        cache: DeliveryCache,
        *,
        webhook_secret: Optional[str] = None,
        gateway: Optional[PaymentGateway] = None,
        scheduler: Optional[RenewalScheduler] = None,
        provider: str = "moyasar",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.cache = cache
        self.webhook_secret = webhook_secret
        self.gateway = gateway
        self.scheduler = scheduler
        self.provider = provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def handle(self, raw_body: bytes, signature: Optional[str], *, now: Optional[datetime] = None) -> WebhookOutcome:
        current_time = now or self._clock()
        verify_signature(raw_body, signature, self.webhook_secret)
        body = _parse_body(raw_body)

        event_id = body.get("id") or body.get("invoice_id") or body.get("payment_id")
        status = body.get("status")
        if not event_id or not status:
            raise WebhookPayloadError("Missing required fields")
        event_id = str(event_id)
        provider_ref = str(body.get("invoice_id") or event_id)

        logger.info(
            "Webhook received",
            extra={"provider": self.provider, "event_id": event_id, "status": status},
        )

        if self.cache.seen(delivery_key(self.provider, event_id), current_time) or self.ledger.is_settled(
            provider_ref, self.provider
        ):
            return _acknowledge("Webhook already processed")

        metadata: Dict[str, Any] = dict(body.get("metadata") or {}) if isinstance(body.get("metadata"), dict) else {}
        amount = body.get("amount") or 0
        currency = body.get("currency") or "SAR"
        if self.gateway is not None:
            invoice = self.gateway.get_invoice(provider_ref)
            status = invoice.status
            metadata.update(invoice.metadata)
            amount = invoice.amount_minor_units or amount
            currency = invoice.currency or currency

        if str(status).lower() not in PAID_STATUSES:
            return _acknowledge("Payment not completed yet")

        organization_id = metadata.get("organizationId")
        module_ref = metadata.get("moduleId") or metadata.get("moduleKey")
        if not organization_id or not module_ref:
            raise WebhookPayloadError("Missing organization or module information")
        organization_id = str(organization_id)

        module = self._resolve_module(str(module_ref), metadata.get("moduleKey"))
        if module is None:
            logger.warning(
                "Webhook references an unknown module; acknowledged without changes",
                extra={"event_id": event_id, "module_ref": module_ref},
            )
            return _acknowledge("Unknown module")

        subscription_id = metadata.get("subscriptionId") or None
        inherited_plan: Optional[str] = None
        if subscription_id:
            subscription = self.repository.get_subscription(str(subscription_id))
            if subscription is None or subscription.organization_id != organization_id:
                logger.warning(
                    "Webhook references an unknown subscription; acknowledged without changes",
                    extra={"event_id": event_id, "subscription_id": subscription_id},
                )
                return _acknowledge("Unknown subscription")
            inherited_plan = subscription.plan
        else:
            lineage = self.repository.find_lineage_subscription(organization_id, module.module_id)
            inherited_plan = lineage.plan if lineage else None

        plan = metadata.get("plan") or inherited_plan
        if not plan:
            raise WebhookPayloadError("Missing plan information")
        try:
            billing_period = BillingPeriod(str(metadata.get("billingPeriod") or BillingPeriod.MONTHLY.value).lower())
        except ValueError as exc:
            raise WebhookPayloadError(f"Unsupported billing period {metadata.get('billingPeriod')!r}") from exc
        try:
            amount_minor_units = max(0, int(amount))
        except (TypeError, ValueError) as exc:
            raise WebhookPayloadError("Amount must be an integer number of minor units") from exc

        claim = PaymentClaim(
            organization_id=organization_id,
            module_id=module.module_id,
            plan=str(plan),
            billing_period=billing_period,
            amount_minor_units=amount_minor_units,
            currency=str(currency).upper(),
            subscription_id=str(subscription_id) if subscription_id else None,
        )

        try:
            result = self.ledger.confirm(provider_ref, provider=self.provider, now=current_time, claim=claim)
        except InvalidTransition as exc:
            logger.warning(
                "Payment received for a subscription that cannot be renewed; needs operator review",
                extra={
                    "event_id": event_id,
                    "provider_ref": provider_ref,
                    "subscription_id": exc.subscription_id,
                    "status": exc.status,
                },
            )
            return _acknowledge("Subscription cannot be renewed; payment flagged for review")

        if result.subscription is not None and self.scheduler is not None and _is_truthy(metadata.get("isRenewal")):
            self.scheduler.handle_renewal_confirmed(result.subscription)

        self.cache.mark(delivery_key(self.provider, event_id), current_time)
        if not result.applied:
            return _acknowledge("Webhook already processed")

        return WebhookOutcome(
            body={
                "success": True,
                "subscriptionId": result.subscription.subscription_id if result.subscription else None,
                "subscriptionCreated": result.subscription_created,
            },
            applied=True,
        )

    def _resolve_module(self, module_ref: str, module_key: Optional[Any]) -> Optional[Module]:
        module = self.repository.get_module(module_ref)
        if module is None:
            module = self.repository.get_module_by_key(str(module_key) if module_key else module_ref)
        return module


__all__ = ["PAID_STATUSES", "WebhookHandler", "WebhookOutcome"]
