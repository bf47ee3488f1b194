"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing.models import Payment
from ..entitlements.models import DenialReason, EntitlementDecision, EntitlementSummary
from ..pricing.models import BillingPeriod
from ..renewals.scheduler import RenewalResult, RenewalRunSummary
from ..subscriptions.models import Subscription, SubscriptionStatus


class EntitlementCheckResponse(BaseModel):
    organization_id: str = Field(alias="organizationId")
    module_key: str = Field(alias="moduleKey")
    entitled: bool
    reason: Optional[DenialReason] = None
    plan: Optional[str] = None
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)
    trial_ends_at: Optional[datetime] = Field(alias="trialEndsAt", default=None)
    checked_at: datetime = Field(alias="checkedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_decision(cls, decision: EntitlementDecision) -> "EntitlementCheckResponse":
        return cls(
            organization_id=decision.organization_id,
            module_key=decision.module_key,
            entitled=decision.entitled,
            reason=decision.reason,
            plan=decision.plan,
            expires_at=decision.expires_at,
            trial_ends_at=decision.trial_ends_at,
            checked_at=decision.checked_at,
        )


class SubscriptionResponse(BaseModel):
    id: str
    organization_id: str = Field(alias="organizationId")
    module_id: str = Field(alias="moduleId")
    plan: str
    billing_period: BillingPeriod = Field(alias="billingPeriod")
    status: SubscriptionStatus
    current_period_start: datetime = Field(alias="currentPeriodStart")
    current_period_end: datetime = Field(alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    grace_period_expires_at: Optional[datetime] = Field(alias="gracePeriodExpiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.subscription_id,
            organization_id=subscription.organization_id,
            module_id=subscription.module_id,
            plan=subscription.plan,
            billing_period=subscription.billing_period,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=subscription.canceled_at,
            grace_period_expires_at=subscription.grace_period_expires_at,
        )


class OrgModuleResponse(BaseModel):
    module_id: str = Field(alias="moduleId")
    module_key: str = Field(alias="moduleKey")
    module_name: str = Field(alias="moduleName")
    enabled: bool
    plan: Optional[str] = None
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)
    trial_ends_at: Optional[datetime] = Field(alias="trialEndsAt", default=None)
    is_expired: bool = Field(alias="isExpired")
    is_trial: bool = Field(alias="isTrial")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: EntitlementSummary) -> "OrgModuleResponse":
        return cls(
            module_id=summary.module.module_id,
            module_key=summary.module.key,
            module_name=summary.module.name,
            enabled=summary.entitlement.enabled,
            plan=summary.entitlement.plan,
            expires_at=summary.entitlement.expires_at,
            trial_ends_at=summary.entitlement.trial_ends_at,
            is_expired=summary.is_expired,
            is_trial=summary.is_trial,
        )


class SubscriptionListResponse(BaseModel):
    subscriptions: List[SubscriptionResponse]
    modules: List[OrgModuleResponse]

    model_config = ConfigDict(populate_by_name=True)


class CancelSubscriptionRequest(BaseModel):
    organization_id: str = Field(alias="organizationId")
    at_period_end: bool = Field(alias="atPeriodEnd", default=True)

    model_config = ConfigDict(populate_by_name=True)


class ChangePlanRequest(BaseModel):
    plan: str = Field(min_length=1)
    billing_period: Optional[BillingPeriod] = Field(alias="billingPeriod", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PaymentResponse(BaseModel):
    id: str
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    module_id: Optional[str] = Field(alias="moduleId", default=None)
    amount_minor_units: int = Field(alias="amountMinorUnits")
    currency: str
    status: str
    provider: str
    provider_ref: str = Field(alias="providerRef")
    invoice_url: Optional[str] = Field(alias="invoiceUrl", default=None)
    paid_at: Optional[datetime] = Field(alias="paidAt", default=None)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            id=payment.payment_id,
            subscription_id=payment.subscription_id,
            module_id=payment.module_id,
            amount_minor_units=payment.amount_minor_units,
            currency=payment.currency,
            status=payment.status.value,
            provider=payment.provider,
            provider_ref=payment.provider_ref,
            invoice_url=payment.invoice_url,
            paid_at=payment.paid_at,
            created_at=payment.created_at,
        )


class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]

    model_config = ConfigDict(populate_by_name=True)


class RenewalResultResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    success: bool
    action: str
    message: str
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: RenewalResult) -> "RenewalResultResponse":
        return cls(
            subscription_id=result.subscription_id,
            success=result.success,
            action=result.action.value,
            message=result.message,
            error=result.error,
        )


class RenewalJobResponse(BaseModel):
    started_at: datetime = Field(alias="startedAt")
    processed: int
    succeeded: int
    failed: int
    reminders_sent: int = Field(alias="remindersSent")
    results: List[RenewalResultResponse]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: RenewalRunSummary) -> "RenewalJobResponse":
        return cls(
            started_at=summary.started_at,
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
            reminders_sent=summary.reminders_sent,
            results=[RenewalResultResponse.from_result(result) for result in summary.results],
        )


__all__ = [
    "CancelSubscriptionRequest",
    "ChangePlanRequest",
    "EntitlementCheckResponse",
    "OrgModuleResponse",
    "PaymentListResponse",
    "PaymentResponse",
    "RenewalJobResponse",
    "RenewalResultResponse",
    "SubscriptionListResponse",
    "SubscriptionResponse",
]
