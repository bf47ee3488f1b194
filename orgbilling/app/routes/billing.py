"""API routes exposing billing functionality."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ...billing_jobs import RenewalJobRunner, get_job_runner
from ..exceptions import InvalidTransition, WebhookPayloadError, WebhookSignatureError
from ..schemas.billing import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    EntitlementCheckResponse,
    OrgModuleResponse,
    PaymentListResponse,
    PaymentResponse,
    RenewalJobResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
)
from ..services.billing import BillingEngine, get_billing_engine

logger = logging.getLogger("billing")

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/payment-callback")
async def payment_callback(request: Request, engine: BillingEngine = Depends(get_billing_engine)) -> JSONResponse:
    raw_body = await request.body()
    signature = request.headers.get(engine.config.webhook_signature_header)
    try:
        outcome = engine.webhooks.handle(raw_body, signature)
    except WebhookSignatureError as exc:
        logger.warning("Rejected payment callback", extra={"reason": str(exc)})
        return JSONResponse({"error": str(exc)}, status_code=status.HTTP_401_UNAUTHORIZED)
    except WebhookPayloadError as exc:
        return JSONResponse({"error": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)
    except Exception:
        logger.exception("Payment callback processing failed")
        return JSONResponse({"error": "Internal server error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(outcome.body, status_code=outcome.status_code)


@router.get("/entitlements/{organization_id}/{module_key}", response_model=EntitlementCheckResponse)
def check_entitlement(
    organization_id: str,
    module_key: str,
    engine: BillingEngine = Depends(get_billing_engine),
) -> EntitlementCheckResponse:
    decision = engine.entitlements.check(organization_id, module_key)
    return EntitlementCheckResponse.from_decision(decision)


@router.get("/organizations/{organization_id}/subscriptions", response_model=SubscriptionListResponse)
def list_subscriptions(
    organization_id: str,
    engine: BillingEngine = Depends(get_billing_engine),
) -> SubscriptionListResponse:
    subscriptions = engine.subscriptions.list_for_organization(organization_id)
    modules = engine.entitlements.list_for_organization(organization_id)
    return SubscriptionListResponse(
        subscriptions=[SubscriptionResponse.from_subscription(item) for item in subscriptions],
        modules=[OrgModuleResponse.from_summary(item) for item in modules],
    )


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    subscription_id: str,
    payload: CancelSubscriptionRequest,
    engine: BillingEngine = Depends(get_billing_engine),
) -> SubscriptionResponse:
    try:
        subscription = engine.subscriptions.cancel(
            subscription_id,
            organization_id=payload.organization_id,
            at_period_end=payload.at_period_end,
        )
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.put("/subscriptions/{subscription_id}/plan", response_model=SubscriptionResponse)
def change_plan(
    subscription_id: str,
    payload: ChangePlanRequest,
    engine: BillingEngine = Depends(get_billing_engine),
) -> SubscriptionResponse:
    try:
        subscription = engine.subscriptions.change_plan(
            subscription_id,
            plan=payload.plan,
            billing_period=payload.billing_period,
        )
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.get("/organizations/{organization_id}/payments", response_model=PaymentListResponse)
def list_payments(
    organization_id: str,
    limit: int = Query(50, ge=1, le=200),
    engine: BillingEngine = Depends(get_billing_engine),
) -> PaymentListResponse:
    payments = engine.ledger.list_payments(organization_id, limit=limit)
    return PaymentListResponse(payments=[PaymentResponse.from_payment(item) for item in payments])


@router.post("/jobs/renewals", response_model=RenewalJobResponse)
def run_renewals(runner: RenewalJobRunner = Depends(get_job_runner)) -> RenewalJobResponse:
    summary = runner.run_renewal_job()
    if summary is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Renewal job already running")
    return RenewalJobResponse.from_summary(summary)


@router.get("/jobs/metrics")
def job_metrics(runner: RenewalJobRunner = Depends(get_job_runner)) -> dict:
    return runner.get_metrics()
