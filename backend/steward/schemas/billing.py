"""Tenant-facing billing Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from steward.domain.entitlements import EntitlementSnapshot
from steward.domain.plan_change import PlanChangeEffective
from steward.domain.subscription_status import SubscriptionProvider
from steward.schemas.plans import PLAN_CODE_PATTERN


class SubscriptionResponse(BaseModel):
    id: UUID
    tenant_id: str
    plan_code: str
    plan_name: str
    status: str
    provider: str
    seat_count: int | None
    starts_at: datetime
    trial_ends_at: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    ended_at: datetime | None
    past_due_since: datetime | None
    pending_plan_code: str | None
    pending_change_effective_at: datetime | None
    version: int


class CurrentSubscriptionResponse(BaseModel):
    subscription: SubscriptionResponse | None


class EntitlementFeatureResponse(BaseModel):
    key: str
    enabled: bool
    limit: int | None  # None = unlimited
    access: str  # enabled, read_only, locked
    overridden: bool


class EntitlementsResponse(BaseModel):
    tenant_id: str
    source: str  # plan, inactive_subscription, no_subscription
    plan_code: str | None
    subscription_id: str | None
    status: str | None
    features: list[EntitlementFeatureResponse]


class CheckoutRequest(BaseModel):
    plan_code: str = Field(pattern=PLAN_CODE_PATTERN)
    provider: SubscriptionProvider = SubscriptionProvider.STRIPE
    email: str | None = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    reference: str


class ChangePlanRequest(BaseModel):
    plan_code: str = Field(pattern=PLAN_CODE_PATTERN)
    effective: PlanChangeEffective = PlanChangeEffective.NEXT_CYCLE


class ChangePlanResponse(BaseModel):
    applied: bool
    scheduled: bool
    message: str
    subscription: SubscriptionResponse


class CancelRequest(BaseModel):
    at_period_end: bool = True


class PortalResponse(BaseModel):
    portal_url: str


class InvoiceResponse(BaseModel):
    id: UUID
    provider: str
    provider_ref: str
    amount_minor: int
    currency: str
    status: str
    period_start: datetime | None
    period_end: datetime | None
    paid_at: datetime | None
    created_at: datetime


def subscription_to_response(subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        tenant_id=subscription.tenant_id,
        plan_code=subscription.plan.code,
        plan_name=subscription.plan.name,
        status=subscription.status,
        provider=subscription.provider,
        seat_count=subscription.seat_count,
        starts_at=subscription.starts_at,
        trial_ends_at=subscription.trial_ends_at,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        canceled_at=subscription.canceled_at,
        ended_at=subscription.ended_at,
        past_due_since=subscription.past_due_since,
        pending_plan_code=subscription.pending_plan_code,
        pending_change_effective_at=subscription.pending_change_effective_at,
        version=subscription.version,
    )


def snapshot_to_response(tenant_id: str, snapshot: EntitlementSnapshot) -> EntitlementsResponse:
    return EntitlementsResponse(
        tenant_id=tenant_id,
        source=snapshot.source.value,
        plan_code=snapshot.plan_code,
        subscription_id=snapshot.subscription_id,
        status=snapshot.status,
        features=[
            EntitlementFeatureResponse(
                key=key,
                enabled=snapshot.is_enabled(key),
                limit=snapshot.limit(key),
                access=snapshot.access(key).value,
                overridden=key in snapshot.overridden,
            )
            for key in snapshot.keys()
        ],
    )


def invoice_to_response(invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        provider=invoice.provider,
        provider_ref=invoice.provider_ref,
        amount_minor=invoice.amount_minor,
        currency=invoice.currency,
        status=invoice.status,
        period_start=invoice.period_start,
        period_end=invoice.period_end,
        paid_at=invoice.paid_at,
        created_at=invoice.created_at,
    )
