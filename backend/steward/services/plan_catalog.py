"""PlanCatalog: create, update and list subscription plans."""

import uuid

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from steward.core.exceptions import ConflictError, NotFoundError, ValidationError
from steward.db.models.subscription_plan import SubscriptionPlan, SubscriptionPlanFeature
from steward.db.models.tenant_subscription import TenantSubscription
from steward.schemas.plans import PlanUpsert
from steward.services.audit_service import Actor, record_audit

logger = structlog.get_logger(__name__)


async def get_plan_by_code(session: AsyncSession, code: str, *, active_only: bool = False) -> SubscriptionPlan | None:
    query = select(SubscriptionPlan).where(SubscriptionPlan.code == code)
    if active_only:
        query = query.where(SubscriptionPlan.is_active.is_(True))
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def get_default_plan(session: AsyncSession) -> SubscriptionPlan | None:
    result = await session.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.is_default.is_(True), SubscriptionPlan.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def find_plan_by_provider_ref(session: AsyncSession, key: str, value: str) -> SubscriptionPlan | None:
    """Find a plan whose metadata maps ``key`` (stripe_price_id / paystack_plan_code) to ``value``."""
    result = await session.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.created_at))
    for plan in result.scalars():
        if (plan.plan_metadata or {}).get(key) == value:
            return plan
    return None


async def catalog_feature_keys(session: AsyncSession) -> set[str]:
    result = await session.execute(select(SubscriptionPlanFeature.key).distinct())
    return set(result.scalars())


async def assignment_count(session: AsyncSession, plan_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count(TenantSubscription.id)).where(TenantSubscription.plan_id == plan_id)
    )
    return result.scalar_one()


class PlanCatalog:
    """Service layer for the plan catalog."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def upsert_plan(self, data: PlanUpsert, actor: Actor) -> tuple[SubscriptionPlan, int]:
        """Create or update a plan by code and replace its feature set.

        Args:
            data: Validated plan payload
            actor: Who is making the change (audited)

        Returns:
            (plan, assignment_count)

        Raises:
            ConflictError: ``data.id`` is given and ``code`` belongs to another plan
            ValidationError: Renaming the code of a plan that subscriptions reference
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubscriptionPlan).where(SubscriptionPlan.code == data.code).with_for_update()
            )
            plan = result.scalar_one_or_none()

            if data.id is not None:
                if plan is not None and plan.id != data.id:
                    raise ConflictError(f"Plan code '{data.code}' already belongs to another plan")
                if plan is None:
                    plan = await session.get(SubscriptionPlan, data.id, with_for_update=True)
                    if plan is not None and await assignment_count(session, plan.id) > 0:
                        raise ValidationError(
                            f"Plan '{plan.code}' is referenced by subscriptions; its code cannot change"
                        )

            if data.is_default:
                # Demote before this plan is flushed as default
                demote = update(SubscriptionPlan).where(SubscriptionPlan.is_default.is_(True))
                if plan is not None:
                    demote = demote.where(SubscriptionPlan.id != plan.id)
                await session.execute(demote.values(is_default=False).execution_options(synchronize_session="fetch"))

            created = plan is None
            if created:
                plan = SubscriptionPlan(id=uuid.uuid4(), code=data.code, features=[])
                session.add(plan)
            else:
                plan.code = data.code

            plan.name = data.name
            plan.description = data.description
            plan.currency = data.currency
            plan.interval = data.interval.value
            plan.amount_minor = data.amount_minor
            plan.is_active = data.is_active
            plan.is_default = data.is_default
            plan.plan_metadata = data.plan_metadata()

            changes = self._replace_features(plan, data)

            record_audit(
                session,
                actor=actor,
                action="platform.plan.upserted",
                target_type="subscription_plan",
                target_id=str(plan.id),
                details={
                    "code": plan.code,
                    "created": created,
                    "is_default": plan.is_default,
                    "is_active": plan.is_active,
                    "feature_changes": changes,
                },
            )
            await session.commit()

            count = 0 if created else await assignment_count(session, plan.id)
            await session.refresh(plan, attribute_names=["features"])

        logger.info("plan_upserted", code=data.code, created=created, is_default=data.is_default, **changes)
        return plan, count

    @staticmethod
    def _replace_features(plan: SubscriptionPlan, data: PlanUpsert) -> dict[str, int]:
        """Make the plan's features equal ``data.features`` with minimal writes."""
        existing = {feature.key: feature for feature in plan.features}
        desired = {feature.key: feature for feature in data.features}
        added = updated = removed = 0

        for key, feature in existing.items():
            if key not in desired:
                plan.features.remove(feature)
                removed += 1

        for key, wanted in desired.items():
            current = existing.get(key)
            if current is None:
                plan.features.append(SubscriptionPlanFeature(key=key, enabled=wanted.enabled, limit=wanted.limit))
                added += 1
            elif current.enabled != wanted.enabled or current.limit != wanted.limit:
                current.enabled = wanted.enabled
                current.limit = wanted.limit
                updated += 1

        return {"features_added": added, "features_updated": updated, "features_removed": removed}

    async def list_plans(self, include_inactive: bool = False) -> list[tuple[SubscriptionPlan, int]]:
        """Plans in creation order with their assignment counts."""
        async with self.session_factory() as session:
            query = select(SubscriptionPlan).order_by(SubscriptionPlan.created_at, SubscriptionPlan.code)
            if not include_inactive:
                query = query.where(SubscriptionPlan.is_active.is_(True))
            plans = list((await session.execute(query)).scalars().all())

            counts_result = await session.execute(
                select(TenantSubscription.plan_id, func.count(TenantSubscription.id)).group_by(
                    TenantSubscription.plan_id
                )
            )
            counts = {plan_id: count for plan_id, count in counts_result.all()}

        return [(plan, counts.get(plan.id, 0)) for plan in plans]

    async def list_public_plans(self) -> list[SubscriptionPlan]:
        """Active plans for the tenant-facing pricing page, cheapest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubscriptionPlan)
                .where(SubscriptionPlan.is_active.is_(True))
                .order_by(SubscriptionPlan.amount_minor, SubscriptionPlan.created_at)
            )
            return list(result.scalars().all())

    async def get_plan(self, code: str, *, active_only: bool = True) -> SubscriptionPlan:
        async with self.session_factory() as session:
            plan = await get_plan_by_code(session, code, active_only=active_only)
        if plan is None:
            raise NotFoundError(f"Plan '{code}' not found")
        return plan
