"""Platform admin Pydantic schemas: tenant plans, overrides, dunning, reconciliation."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from steward.domain.subscription_status import SubscriptionProvider, SubscriptionStatus
from steward.schemas.plans import PLAN_CODE_PATTERN


class AssignPlanRequest(BaseModel):
    plan_code: str = Field(pattern=PLAN_CODE_PATTERN)
    status: SubscriptionStatus | None = None  # None = derived from the plan's trial
    provider: SubscriptionProvider = SubscriptionProvider.MANUAL
    seat_count: int | None = Field(default=None, ge=1)
    current_period_end: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)


class FeatureOverrideRequest(BaseModel):
    enabled: bool = True
    limit: int | None = Field(default=None, ge=0)
    reason: str | None = Field(default=None, max_length=500)


class FeatureOverrideResponse(BaseModel):
    tenant_id: str
    key: str
    enabled: bool
    limit: int | None
    reason: str | None
    created_by: str | None
    updated_at: datetime


class DunningTarget(BaseModel):
    subscription_id: str
    tenant_id: str
    plan_code: str | None
    provider: str
    past_due_since: datetime | None
    days_past_due: int | None
    last_reminder_sent_at: datetime | None


class DunningReportResponse(BaseModel):
    grace_days: int
    dry_run: bool
    inspected: int
    targets: list[DunningTarget]
    queued: int
    skipped: int
    failed: int


class DunningRunRequest(BaseModel):
    grace_days: int | None = Field(default=None, ge=0, le=90)
    limit: int | None = Field(default=None, ge=1, le=1000)
    dry_run: bool = False


class SweepReportResponse(BaseModel):
    run_id: str
    started_at: datetime
    skipped: bool
    holder: dict | None
    inspected: int
    planned: int
    executed: dict[str, int]
    stale: int
    failed: int
    errors: list[dict]
    dispute_alerts: int


class DisputeAlertItem(BaseModel):
    dispute_id: str
    tenant_id: str
    stage: str  # seven_days, three_days, one_day, overdue
    days_left: int
    evidence_due_by: datetime


class DisputeMonitorRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)
    dry_run: bool = False


class DisputeMonitorResponse(BaseModel):
    dry_run: bool
    scanned: int
    alerted: int
    skipped: int
    failed: int
    alerts: list[DisputeAlertItem]


class BackfillRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=5000)
    dry_run: bool = False
    tenant_ids: list[str] | None = None
    subscription_ids: list[UUID] | None = None


class BackfillResponse(BaseModel):
    dry_run: bool
    scanned: int
    updated: int
    skipped: int
    failed: int
    changed_ids: list[str]
    errors: list[dict]


class PayoutSyncRequest(BaseModel):
    provider: SubscriptionProvider = SubscriptionProvider.STRIPE
    tenant_id: str | None = None
    since: datetime | None = None
    limit: int = Field(default=100, ge=1, le=100)


class PayoutSyncResponse(BaseModel):
    provider: str
    fetched: int
    created: int
    updated: int


class MismatchSummary(BaseModel):
    intents_without_completed_donation: int
    donations_with_unsettled_intent: int
    total: int


class MismatchResponse(BaseModel):
    intents_without_completed_donation: list[dict]
    donations_with_unsettled_intent: list[dict]
    summary: MismatchSummary
