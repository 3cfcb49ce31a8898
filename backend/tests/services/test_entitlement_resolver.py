"""Tests for EntitlementService: snapshots, gates, limits and overrides."""

from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from steward.core.exceptions import FeatureLockedError, LimitExceededError, ReadOnlyAccessError
from steward.domain.entitlements import AccessMode, EntitlementSource
from steward.domain.subscription_status import SubscriptionStatus
from steward.services.audit_service import Actor
from steward.services.entitlement_service import EntitlementService, resolve_tenant_entitlements

pytestmark = pytest.mark.integration

ADMIN = Actor.user("user_platform_admin")
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)

STARTER_FEATURES = {
    "ai_insights": (False, None),
    "max_members": (True, 500),
    "events_enabled": (True, None),
}
GROWTH_FEATURES = {
    "ai_insights": (True, None),
    "max_members": (True, 5000),
    "events_enabled": (True, None),
}


@pytest.fixture
def entitlements(session_factory):
    return EntitlementService(session_factory)


@pytest.fixture
async def plans(make_plan):
    starter = await make_plan("starter", 4900, STARTER_FEATURES, is_default=True)
    growth = await make_plan("growth", 14900, GROWTH_FEATURES)
    return starter, growth


async def test_starter_plan_locks_ai_insights(entitlements, plans, make_subscription):
    starter, _ = plans
    subscription = await make_subscription("org_a", starter)

    snapshot = await entitlements.resolve("org_a")

    assert snapshot.source == EntitlementSource.PLAN
    assert snapshot.plan_code == "starter"
    assert snapshot.subscription_id == str(subscription.id)
    assert snapshot.access("ai_insights") == AccessMode.LOCKED
    assert snapshot.limit("max_members") == 500

    with pytest.raises(FeatureLockedError) as exc_info:
        await entitlements.ensure_feature_enabled("org_a", "ai_insights")
    assert exc_info.value.status_code == 403


async def test_plan_change_is_visible_on_the_next_read(entitlements, plans, subscriptions, make_subscription):
    starter, _ = plans
    await make_subscription("org_a", starter)
    assert not (await entitlements.resolve("org_a")).is_enabled("ai_insights")

    await subscriptions.assign_tenant_plan("org_a", "growth", actor=ADMIN, status=SubscriptionStatus.ACTIVE)

    snapshot = await entitlements.resolve("org_a")
    assert snapshot.plan_code == "growth"
    assert snapshot.is_enabled("ai_insights")


async def test_canceled_only_history_is_read_only(entitlements, plans, make_subscription):
    starter, _ = plans
    await make_subscription("org_a", starter, status=SubscriptionStatus.CANCELED)

    snapshot = await entitlements.resolve("org_a")

    assert snapshot.source == EntitlementSource.INACTIVE_SUBSCRIPTION
    assert snapshot.access("events_enabled") == AccessMode.READ_ONLY
    # Reads still pass, writes do not
    await entitlements.ensure_feature_enabled("org_a", "events_enabled")
    with pytest.raises(ReadOnlyAccessError):
        await entitlements.ensure_feature_enabled("org_a", "events_enabled", write=True)


async def test_tenant_without_subscriptions_is_permissive(entitlements, plans):
    snapshot = await entitlements.resolve("org_new")

    assert snapshot.source == EntitlementSource.NO_SUBSCRIPTION
    assert set(snapshot.keys()) == {"ai_insights", "max_members", "events_enabled"}
    assert all(snapshot.is_enabled(key) for key in snapshot.keys())
    assert snapshot.limit("max_members") is None
    await entitlements.ensure_feature_enabled("org_new", "ai_insights", write=True)


async def test_deny_list_applies_to_tenants_without_subscriptions(session_factory, plans):
    async with session_factory() as session:
        snapshot = await resolve_tenant_entitlements(session, "org_new", denied_keys=["ai_insights"])

    assert snapshot.access("ai_insights") == AccessMode.LOCKED
    assert snapshot.is_enabled("events_enabled")


async def test_denied_keys_default_to_settings(session_factory, plans):
    with patch("steward.services.entitlement_service.get_settings") as mock_settings:
        mock_settings.return_value.no_subscription_denied_features = ["events_enabled"]
        async with session_factory() as session:
            snapshot = await resolve_tenant_entitlements(session, "org_new")

    assert not snapshot.is_enabled("events_enabled")


async def test_unknown_feature_keys_fail_open(entitlements, plans, make_subscription):
    starter, _ = plans
    await make_subscription("org_a", starter)

    snapshot = await entitlements.ensure_feature_enabled("org_a", "not_seeded_yet", write=True)

    assert snapshot.is_enabled("not_seeded_yet")
    assert snapshot.limit("not_seeded_yet") is None


async def test_feature_limit(entitlements, plans, make_subscription):
    starter, _ = plans
    await make_subscription("org_a", starter)

    assert await entitlements.ensure_feature_limit("org_a", "max_members", 499) == 500
    with pytest.raises(LimitExceededError) as exc_info:
        await entitlements.ensure_feature_limit("org_a", "max_members", 500)
    assert exc_info.value.limit == 500
    assert exc_info.value.status_code == 402
    assert await entitlements.ensure_feature_limit("org_a", "events_enabled", 10_000) is None


async def test_override_unlocks_a_feature_and_is_audited(entitlements, plans, make_subscription, audit_count):
    starter, _ = plans
    await make_subscription("org_a", starter)

    override = await entitlements.set_override(
        "org_a", "ai_insights", enabled=True, limit=25, reason="pilot programme", actor=ADMIN
    )
    # Updating in place keeps one row
    override = await entitlements.set_override(
        "org_a", "ai_insights", enabled=True, limit=50, reason="pilot extended", actor=ADMIN
    )

    assert override.limit == 50
    assert override.created_by == "user_platform_admin"
    snapshot = await entitlements.resolve("org_a")
    assert snapshot.is_enabled("ai_insights")
    assert snapshot.limit("ai_insights") == 50
    assert "ai_insights" in snapshot.overridden
    assert await audit_count("platform.tenant.feature_override_set", "org_a") == 2

    # Other tenants on the same plan are unaffected
    assert "ai_insights" not in (await entitlements.resolve("org_b")).overridden


async def test_clear_override(entitlements, plans, make_subscription, audit_count):
    starter, _ = plans
    await make_subscription("org_a", starter)
    await entitlements.set_override("org_a", "ai_insights", enabled=True, limit=None, reason=None, actor=ADMIN)

    assert await entitlements.clear_override("org_a", "ai_insights", ADMIN) is True
    assert await entitlements.clear_override("org_a", "ai_insights", ADMIN) is False

    assert not (await entitlements.resolve("org_a")).is_enabled("ai_insights")
    assert await audit_count("platform.tenant.feature_override_cleared", "org_a") == 1
