"""Tenant billing routes: current plan, entitlements, checkout and lifecycle.

Reads need an active organisation; anything that changes the subscription
needs the organisation's billing admin role.
"""

import structlog
from fastapi import APIRouter, Depends, Query

from steward.api.deps import entitlement_service, plan_catalog, reconciliation_service, subscription_service
from steward.core.auth import ClerkUser, require_billing_admin, require_tenant
from steward.schemas.billing import (
    CancelRequest,
    ChangePlanRequest,
    ChangePlanResponse,
    CheckoutRequest,
    CheckoutResponse,
    CurrentSubscriptionResponse,
    EntitlementsResponse,
    InvoiceResponse,
    PortalResponse,
    SubscriptionResponse,
    invoice_to_response,
    snapshot_to_response,
    subscription_to_response,
)
from steward.schemas.plans import PlanResponse, plan_to_response
from steward.services.audit_service import Actor
from steward.services.entitlement_service import EntitlementService
from steward.services.plan_catalog import PlanCatalog
from steward.services.reconciliation_service import ReconciliationService
from steward.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/billing/plans", response_model=list[PlanResponse])
async def list_plans(
    user: ClerkUser = Depends(require_tenant),
    catalog: PlanCatalog = Depends(plan_catalog),
):
    return [plan_to_response(plan) for plan in await catalog.list_public_plans()]


@router.get("/billing/subscription", response_model=CurrentSubscriptionResponse)
async def get_subscription(
    user: ClerkUser = Depends(require_tenant),
    service: SubscriptionService = Depends(subscription_service),
):
    subscription = await service.current_subscription(user.tenant_id)
    return CurrentSubscriptionResponse(
        subscription=subscription_to_response(subscription) if subscription is not None else None
    )


@router.get("/billing/subscription/history", response_model=list[SubscriptionResponse])
async def get_subscription_history(
    limit: int = Query(default=50, ge=1, le=200),
    user: ClerkUser = Depends(require_tenant),
    service: SubscriptionService = Depends(subscription_service),
):
    return [subscription_to_response(row) for row in await service.subscription_history(user.tenant_id, limit)]


@router.get("/billing/entitlements", response_model=EntitlementsResponse)
async def get_entitlements(
    user: ClerkUser = Depends(require_tenant),
    service: EntitlementService = Depends(entitlement_service),
):
    return snapshot_to_response(user.tenant_id, await service.resolve(user.tenant_id))


@router.post("/billing/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    user: ClerkUser = Depends(require_billing_admin),
    service: SubscriptionService = Depends(subscription_service),
):
    """Open a hosted checkout. The subscription itself arrives by webhook."""
    email = body.email or user.claims.get("email")
    checkout = await service.start_checkout(
        user.tenant_id,
        body.plan_code,
        body.provider,
        customer_email=email,
        actor=Actor.user(user.user_id),
    )
    return CheckoutResponse(checkout_url=checkout.url, reference=checkout.reference)


@router.post("/billing/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    body: ChangePlanRequest,
    user: ClerkUser = Depends(require_billing_admin),
    service: SubscriptionService = Depends(subscription_service),
):
    result = await service.change_plan(
        user.tenant_id,
        body.plan_code,
        body.effective,
        actor=Actor.user(user.user_id),
    )
    return ChangePlanResponse(
        applied=result.applied,
        scheduled=result.scheduled,
        message=result.message,
        subscription=subscription_to_response(result.subscription),
    )


@router.post("/billing/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    body: CancelRequest,
    user: ClerkUser = Depends(require_billing_admin),
    service: SubscriptionService = Depends(subscription_service),
):
    subscription = await service.cancel_subscription(
        user.tenant_id,
        at_period_end=body.at_period_end,
        actor=Actor.user(user.user_id),
    )
    return subscription_to_response(subscription)


@router.post("/billing/resume", response_model=SubscriptionResponse)
async def resume_subscription(
    user: ClerkUser = Depends(require_billing_admin),
    service: SubscriptionService = Depends(subscription_service),
):
    subscription = await service.resume_subscription(user.tenant_id, actor=Actor.user(user.user_id))
    return subscription_to_response(subscription)


@router.post("/billing/portal", response_model=PortalResponse)
async def create_portal_session(
    user: ClerkUser = Depends(require_billing_admin),
    service: SubscriptionService = Depends(subscription_service),
):
    return PortalResponse(portal_url=await service.create_portal_session(user.tenant_id))


@router.get("/billing/invoices", response_model=list[InvoiceResponse])
async def list_invoices(
    limit: int = Query(default=50, ge=1, le=200),
    user: ClerkUser = Depends(require_tenant),
    service: ReconciliationService = Depends(reconciliation_service),
):
    return [invoice_to_response(invoice) for invoice in await service.list_invoices(user.tenant_id, limit)]
