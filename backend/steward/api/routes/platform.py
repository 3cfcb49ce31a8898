"""Platform admin routes: plan catalog, tenant plans, overrides and billing jobs."""

import structlog
from fastapi import APIRouter, Depends, Query

from steward.api.deps import (
    backfill_service,
    dunning_service,
    entitlement_service,
    plan_catalog,
    reconciliation_service,
    subscription_service,
)
from steward.core.auth import ClerkUser, require_admin
from steward.core.config import get_settings
from steward.core.exceptions import NotFoundError
from steward.schemas.billing import (
    EntitlementsResponse,
    SubscriptionResponse,
    snapshot_to_response,
    subscription_to_response,
)
from steward.schemas.plans import AdminPlanResponse, PlanUpsert, plan_to_admin_response
from steward.schemas.platform import (
    AssignPlanRequest,
    BackfillRequest,
    BackfillResponse,
    DisputeMonitorRequest,
    DisputeMonitorResponse,
    DunningReportResponse,
    DunningRunRequest,
    FeatureOverrideRequest,
    FeatureOverrideResponse,
    MismatchResponse,
    PayoutSyncRequest,
    PayoutSyncResponse,
    SweepReportResponse,
)
from steward.services.audit_service import Actor
from steward.services.backfill_service import BackfillService
from steward.services.dunning_service import DunningService
from steward.services.entitlement_service import EntitlementService
from steward.services.plan_catalog import PlanCatalog
from steward.services.reconciliation_service import ReconciliationService
from steward.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/platform")


# ── Plan catalog ────────────────────────────────────────────────────


@router.get("/plans", response_model=list[AdminPlanResponse])
async def list_plans(
    include_inactive: bool = Query(default=False),
    admin: ClerkUser = Depends(require_admin),
    catalog: PlanCatalog = Depends(plan_catalog),
):
    plans = await catalog.list_plans(include_inactive=include_inactive)
    return [plan_to_admin_response(plan, count) for plan, count in plans]


@router.put("/plans", response_model=AdminPlanResponse)
async def upsert_plan(
    body: PlanUpsert,
    admin: ClerkUser = Depends(require_admin),
    catalog: PlanCatalog = Depends(plan_catalog),
):
    plan, count = await catalog.upsert_plan(body, Actor.user(admin.user_id))
    return plan_to_admin_response(plan, count)


# ── Tenants ─────────────────────────────────────────────────────────


@router.post("/tenants/{tenant_id}/plan", response_model=SubscriptionResponse)
async def assign_tenant_plan(
    tenant_id: str,
    body: AssignPlanRequest,
    admin: ClerkUser = Depends(require_admin),
    service: SubscriptionService = Depends(subscription_service),
):
    subscription = await service.assign_tenant_plan(
        tenant_id,
        body.plan_code,
        actor=Actor.user(admin.user_id),
        status=body.status,
        provider=body.provider,
        seat_count=body.seat_count,
        reason=body.reason,
        current_period_end=body.current_period_end,
    )
    logger.info("tenant_plan_assigned", tenant_id=tenant_id, plan_code=body.plan_code, admin_id=admin.user_id)
    return subscription_to_response(subscription)


@router.get("/tenants/{tenant_id}/entitlements", response_model=EntitlementsResponse)
async def get_tenant_entitlements(
    tenant_id: str,
    admin: ClerkUser = Depends(require_admin),
    service: EntitlementService = Depends(entitlement_service),
):
    return snapshot_to_response(tenant_id, await service.resolve(tenant_id))


@router.put("/tenants/{tenant_id}/overrides/{key}", response_model=FeatureOverrideResponse)
async def set_feature_override(
    tenant_id: str,
    key: str,
    body: FeatureOverrideRequest,
    admin: ClerkUser = Depends(require_admin),
    service: EntitlementService = Depends(entitlement_service),
):
    override = await service.set_override(
        tenant_id,
        key,
        enabled=body.enabled,
        limit=body.limit,
        reason=body.reason,
        actor=Actor.user(admin.user_id),
    )
    return FeatureOverrideResponse(
        tenant_id=override.tenant_id,
        key=override.key,
        enabled=override.enabled,
        limit=override.limit,
        reason=override.reason,
        created_by=override.created_by,
        updated_at=override.updated_at,
    )


@router.delete("/tenants/{tenant_id}/overrides/{key}")
async def clear_feature_override(
    tenant_id: str,
    key: str,
    admin: ClerkUser = Depends(require_admin),
    service: EntitlementService = Depends(entitlement_service),
):
    if not await service.clear_override(tenant_id, key, Actor.user(admin.user_id)):
        raise NotFoundError(f"No override for '{key}' on tenant {tenant_id}")
    return {"status": "cleared", "tenant_id": tenant_id, "key": key}


# ── Dunning, sweep & disputes ──────────────────────────────────────


@router.get("/dunning/preview", response_model=DunningReportResponse)
async def preview_dunning(
    grace_days: int | None = Query(default=None, ge=0, le=90),
    limit: int | None = Query(default=None, ge=1, le=1000),
    admin: ClerkUser = Depends(require_admin),
    service: DunningService = Depends(dunning_service),
):
    report = await service.preview(grace_days, limit)
    return DunningReportResponse.model_validate(report, from_attributes=True)


@router.post("/dunning/run", response_model=DunningReportResponse)
async def run_dunning(
    body: DunningRunRequest,
    admin: ClerkUser = Depends(require_admin),
    service: DunningService = Depends(dunning_service),
):
    report = await service.run_dunning(
        body.grace_days,
        body.limit,
        body.dry_run,
        actor=Actor.user(admin.user_id),
    )
    return DunningReportResponse.model_validate(report, from_attributes=True)


@router.post("/sweep/run", response_model=SweepReportResponse)
async def run_sweep(
    admin: ClerkUser = Depends(require_admin),
    service: DunningService = Depends(dunning_service),
):
    report = await service.run_sweep()
    return SweepReportResponse.model_validate(report, from_attributes=True)


@router.post("/disputes/alerts/run", response_model=DisputeMonitorResponse)
async def run_dispute_alerts(
    body: DisputeMonitorRequest,
    admin: ClerkUser = Depends(require_admin),
    service: DunningService = Depends(dunning_service),
):
    report = await service.monitor_disputes(body.limit, body.dry_run, actor=Actor.user(admin.user_id))
    return DisputeMonitorResponse.model_validate(report, from_attributes=True)


# ── Provider reconciliation ─────────────────────────────────────────


@router.post("/subscriptions/backfill", response_model=BackfillResponse)
async def backfill_subscriptions(
    body: BackfillRequest,
    admin: ClerkUser = Depends(require_admin),
    service: BackfillService = Depends(backfill_service),
):
    report = await service.run(
        limit=body.limit or get_settings().backfill_limit,
        dry_run=body.dry_run,
        tenant_ids=body.tenant_ids,
        subscription_ids=body.subscription_ids,
        actor=Actor.user(admin.user_id),
    )
    return BackfillResponse.model_validate(report, from_attributes=True)


@router.post("/reconciliation/payouts/sync", response_model=PayoutSyncResponse)
async def sync_payouts(
    body: PayoutSyncRequest,
    admin: ClerkUser = Depends(require_admin),
    service: ReconciliationService = Depends(reconciliation_service),
):
    result = await service.sync_payouts(body.provider, tenant_id=body.tenant_id, since=body.since, limit=body.limit)
    return PayoutSyncResponse(**result)


@router.get("/reconciliation/mismatches", response_model=MismatchResponse)
async def list_mismatches(
    tenant_id: str | None = Query(default=None),
    church_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    admin: ClerkUser = Depends(require_admin),
    service: ReconciliationService = Depends(reconciliation_service),
):
    return await service.mismatches(tenant_id=tenant_id, church_id=church_id, limit=limit)
