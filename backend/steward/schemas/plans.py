"""Plan catalog Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from steward.domain.subscription_status import PlanInterval

PLAN_CODE_PATTERN = r"^[a-z0-9][a-z0-9_-]{1,63}$"
FEATURE_KEY_PATTERN = r"^[a-z][a-z0-9_]{0,63}$"


class FeatureInput(BaseModel):
    key: str = Field(pattern=FEATURE_KEY_PATTERN)
    enabled: bool = True
    limit: int | None = Field(default=None, ge=0)


class PlanUpsert(BaseModel):
    """Create-or-update payload; ``code`` decides which.

    ``id`` is optional: when given it must match the plan currently holding
    ``code`` (or name no plan at all for a create).
    """

    id: UUID | None = None
    code: str = Field(pattern=PLAN_CODE_PATTERN)
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    interval: PlanInterval = PlanInterval.MONTHLY
    amount_minor: int = Field(ge=0)
    is_active: bool = True
    is_default: bool = False
    trial_days: int = Field(default=0, ge=0, le=365)
    stripe_price_id: str | None = None
    paystack_plan_code: str | None = None
    metadata: dict = Field(default_factory=dict)
    features: list[FeatureInput] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def _upper_alpha_currency(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("currency must be a 3-letter ISO 4217 code")
        return value.upper()

    @model_validator(mode="after")
    def _check_consistency(self) -> "PlanUpsert":
        keys = [feature.key for feature in self.features]
        duplicates = sorted({key for key in keys if keys.count(key) > 1})
        if duplicates:
            raise ValueError(f"duplicate feature keys: {', '.join(duplicates)}")
        if self.is_default and not self.is_active:
            raise ValueError("the default plan must be active")
        return self

    def plan_metadata(self) -> dict:
        metadata = dict(self.metadata)
        metadata["trial_days"] = self.trial_days
        for key in ("stripe_price_id", "paystack_plan_code"):
            value = getattr(self, key)
            if value:
                metadata[key] = value
            else:
                metadata.pop(key, None)
        return metadata


class FeatureResponse(BaseModel):
    key: str
    enabled: bool
    limit: int | None


class PlanResponse(BaseModel):
    id: UUID
    code: str
    name: str
    description: str | None
    currency: str
    interval: str
    amount_minor: int
    is_active: bool
    is_default: bool
    trial_days: int
    features: list[FeatureResponse]
    created_at: datetime


class AdminPlanResponse(PlanResponse):
    metadata: dict
    assignment_count: int
    updated_at: datetime


def plan_to_response(plan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        code=plan.code,
        name=plan.name,
        description=plan.description,
        currency=plan.currency,
        interval=plan.interval,
        amount_minor=plan.amount_minor,
        is_active=plan.is_active,
        is_default=plan.is_default,
        trial_days=plan.trial_days,
        features=[FeatureResponse(key=f.key, enabled=f.enabled, limit=f.limit) for f in plan.features],
        created_at=plan.created_at,
    )


def plan_to_admin_response(plan, assignment_count: int) -> AdminPlanResponse:
    base = plan_to_response(plan)
    return AdminPlanResponse(
        **base.model_dump(),
        metadata=plan.plan_metadata or {},
        assignment_count=assignment_count,
        updated_at=plan.updated_at,
    )
