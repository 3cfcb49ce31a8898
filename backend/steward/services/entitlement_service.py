"""Entitlement resolution and feature gates.

Snapshots are recomputed on every call; nothing is cached between requests,
so a plan change is visible on the very next gated request.
"""

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from steward.core.config import get_settings
from steward.core.exceptions import FeatureLockedError, LimitExceededError, ReadOnlyAccessError
from steward.db.models.feature_override import TenantFeatureOverride
from steward.db.models.tenant_subscription import TenantSubscription
from steward.domain.entitlements import AccessMode, Entitlement, EntitlementSnapshot, resolve_snapshot
from steward.services.audit_service import Actor, record_audit
from steward.services.plan_catalog import catalog_feature_keys
from steward.services.subscription_service import load_live_subscription

logger = structlog.get_logger(__name__)


async def resolve_tenant_entitlements(
    session: AsyncSession,
    tenant_id: str,
    denied_keys: list[str] | None = None,
) -> EntitlementSnapshot:
    """Resolve the entitlement snapshot for a tenant inside an open session."""
    if denied_keys is None:
        denied_keys = get_settings().no_subscription_denied_features

    live = await load_live_subscription(session, tenant_id)

    overrides_result = await session.execute(
        select(TenantFeatureOverride).where(TenantFeatureOverride.tenant_id == tenant_id)
    )
    overrides = {
        row.key: Entitlement(enabled=row.enabled, limit=row.limit) for row in overrides_result.scalars().all()
    }
    known_keys = await catalog_feature_keys(session)

    if live is not None:
        plan_features = {
            feature.key: Entitlement(enabled=feature.enabled, limit=feature.limit) for feature in live.plan.features
        }
        return resolve_snapshot(
            plan_features=plan_features,
            overrides=overrides,
            has_history=True,
            known_keys=known_keys,
            plan_code=live.plan.code,
            subscription_id=str(live.id),
            status=live.status,
        )

    history_count = (
        await session.execute(
            select(func.count(TenantSubscription.id)).where(TenantSubscription.tenant_id == tenant_id)
        )
    ).scalar_one()

    return resolve_snapshot(
        plan_features=None,
        overrides=overrides,
        has_history=history_count > 0,
        known_keys=known_keys,
        denied_keys=denied_keys,
    )


class EntitlementService:
    """Read path for entitlements plus admin-managed tenant overrides."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve(self, tenant_id: str) -> EntitlementSnapshot:
        async with self.session_factory() as session:
            return await resolve_tenant_entitlements(session, tenant_id)

    async def ensure_feature_enabled(self, tenant_id: str, key: str, *, write: bool = False) -> EntitlementSnapshot:
        """Raise unless the tenant may use ``key`` (and write to it when ``write``).

        Raises:
            FeatureLockedError: The plan disables the feature
            ReadOnlyAccessError: A write while the tenant has no live subscription
        """
        snapshot = await self.resolve(tenant_id)
        access = snapshot.access(key)
        if access == AccessMode.LOCKED:
            logger.info("feature_locked", tenant_id=tenant_id, key=key, source=snapshot.source.value)
            raise FeatureLockedError(key)
        if write and access == AccessMode.READ_ONLY:
            logger.info("feature_read_only", tenant_id=tenant_id, key=key)
            raise ReadOnlyAccessError(key)
        return snapshot

    async def ensure_feature_limit(self, tenant_id: str, key: str, current_count: int) -> int | None:
        """Raise LimitExceededError when ``current_count`` has reached the limit.

        Returns the limit (None = unlimited).
        """
        snapshot = await self.ensure_feature_enabled(tenant_id, key, write=True)
        limit = snapshot.limit(key)
        if limit is not None and current_count >= limit:
            logger.info("feature_limit_reached", tenant_id=tenant_id, key=key, limit=limit, current=current_count)
            raise LimitExceededError(key, limit, current_count)
        return limit

    async def set_override(
        self,
        tenant_id: str,
        key: str,
        *,
        enabled: bool,
        limit: int | None,
        reason: str | None,
        actor: Actor,
    ) -> TenantFeatureOverride:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TenantFeatureOverride)
                .where(TenantFeatureOverride.tenant_id == tenant_id, TenantFeatureOverride.key == key)
                .with_for_update()
            )
            override = result.scalar_one_or_none()
            if override is None:
                override = TenantFeatureOverride(tenant_id=tenant_id, key=key)
                session.add(override)
            override.enabled = enabled
            override.limit = limit
            override.reason = reason
            override.created_by = actor.id

            record_audit(
                session,
                actor=actor,
                action="platform.tenant.feature_override_set",
                tenant_id=tenant_id,
                target_type="feature",
                target_id=key,
                details={"enabled": enabled, "limit": limit, "reason": reason},
            )
            await session.commit()
            await session.refresh(override)
        return override

    async def clear_override(self, tenant_id: str, key: str, actor: Actor) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(TenantFeatureOverride).where(
                    TenantFeatureOverride.tenant_id == tenant_id,
                    TenantFeatureOverride.key == key,
                )
            )
            removed = result.rowcount > 0
            if removed:
                record_audit(
                    session,
                    actor=actor,
                    action="platform.tenant.feature_override_cleared",
                    tenant_id=tenant_id,
                    target_type="feature",
                    target_id=key,
                )
            await session.commit()
        return removed
