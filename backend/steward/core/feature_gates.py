"""Entitlement gating for tenant routes.

Usage:
    @router.post("/events", dependencies=[Depends(require_feature("events_enabled", write=True))])
"""

from fastapi import Depends

from steward.core.auth import ClerkUser, require_tenant
from steward.db.base import get_session_factory
from steward.domain.entitlements import EntitlementSnapshot
from steward.services.entitlement_service import EntitlementService


async def get_entitlements(user: ClerkUser = Depends(require_tenant)) -> EntitlementSnapshot:
    """Resolve the caller's tenant entitlements once per request."""
    return await EntitlementService(get_session_factory()).resolve(user.tenant_id)


def require_feature(key: str, write: bool = False):
    """Create a dependency that rejects the request unless ``key`` is usable.

    Reads pass while the tenant is in read-only mode; writes need a live
    subscription. Failures surface as FeatureLockedError (403) or
    ReadOnlyAccessError (403) through the app's error handler.
    """

    async def dependency(user: ClerkUser = Depends(require_tenant)) -> EntitlementSnapshot:
        service = EntitlementService(get_session_factory())
        return await service.ensure_feature_enabled(user.tenant_id, key, write=write)

    return dependency


def require_feature_limit(key: str, count_usage):
    """Create a dependency that enforces a numeric plan limit.

    ``count_usage(tenant_id)`` is an async callable returning current usage.
    """

    async def dependency(user: ClerkUser = Depends(require_tenant)) -> int | None:
        current = await count_usage(user.tenant_id)
        return await EntitlementService(get_session_factory()).ensure_feature_limit(user.tenant_id, key, current)

    return dependency
