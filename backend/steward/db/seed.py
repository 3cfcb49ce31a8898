"""Idempotent seed data for the baseline plan catalog."""

import structlog
from sqlalchemy import select

from steward.db.base import get_session_factory
from steward.db.models.subscription_plan import SubscriptionPlan, SubscriptionPlanFeature

logger = structlog.get_logger(__name__)

# (key, enabled, limit) per plan; limit None = unlimited
_STARTER_FEATURES = [
    ("max_members", True, 500),
    ("max_campuses", True, 1),
    ("ai_insights", False, None),
    ("membership_enabled", True, None),
    ("events_enabled", True, None),
    ("finance_enabled", True, None),
    ("communications_enabled", True, None),
    ("multi_campus_enabled", True, None),
    ("facility_management_enabled", False, None),
    ("pastoral_care_enabled", False, None),
    ("content_library_enabled", True, None),
    ("streaming_enabled", False, None),
    ("support_center_enabled", True, None),
    ("custom_domain_enabled", False, None),
    ("max_events_monthly", True, 30),
    ("max_expenses_monthly", True, 80),
]

_GROWTH_LIMITS = {"max_members": 5000, "max_campuses": 5, "max_events_monthly": 200, "max_expenses_monthly": 500}

BASELINE_PLANS = [
    {
        "code": "starter",
        "name": "Starter",
        "description": "Core church management for a single congregation.",
        "amount_minor": 4900,
        "is_default": True,
        "plan_metadata": {"trial_days": 14},
        "features": _STARTER_FEATURES,
    },
    {
        "code": "growth",
        "name": "Growth",
        "description": "Every module, multiple campuses and AI insights.",
        "amount_minor": 14900,
        "is_default": False,
        "plan_metadata": {"trial_days": 14},
        "features": [(key, True, _GROWTH_LIMITS.get(key)) for key, _, _ in _STARTER_FEATURES],
    },
    {
        "code": "enterprise",
        "name": "Enterprise",
        "description": "Custom pricing, unlimited usage, invoiced billing.",
        "amount_minor": 0,
        "is_default": False,
        "plan_metadata": {"trial_days": 0},
        "features": [(key, True, None) for key, _, _ in _STARTER_FEATURES],
    },
]


async def seed_baseline_plans() -> int:
    """Insert baseline plans that don't exist yet. Existing plans are left alone.

    Returns the number of plans created.
    """
    factory = get_session_factory()
    created = 0

    async with factory() as session:
        default_exists = (
            await session.execute(select(SubscriptionPlan.id).where(SubscriptionPlan.is_default.is_(True)))
        ).first() is not None

        for plan_data in BASELINE_PLANS:
            result = await session.execute(select(SubscriptionPlan).where(SubscriptionPlan.code == plan_data["code"]))
            if result.scalar_one_or_none() is not None:
                continue

            is_default = plan_data["is_default"] and not default_exists
            session.add(
                SubscriptionPlan(
                    code=plan_data["code"],
                    name=plan_data["name"],
                    description=plan_data["description"],
                    currency="USD",
                    interval="MONTHLY",
                    amount_minor=plan_data["amount_minor"],
                    is_active=True,
                    is_default=is_default,
                    plan_metadata=dict(plan_data["plan_metadata"]),
                    features=[
                        SubscriptionPlanFeature(key=key, enabled=enabled, limit=limit)
                        for key, enabled, limit in plan_data["features"]
                    ],
                )
            )
            default_exists = default_exists or is_default
            created += 1

        await session.commit()

    if created:
        logger.info("baseline_plans_seeded", created=created)
    return created
