"""Shared test fixtures for all test groups.

Tests run against a throwaway SQLite file (via aiosqlite) and fakeredis, so no
external services are needed. The fixtures install both into the module-level
globals that the app reads (``get_session_factory`` / ``get_redis``).
"""

import os

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("CLERK_PUBLISHABLE_KEY", "pk_test_Y2xlcmsuZXhhbXBsZS5jb20k")

from datetime import UTC, datetime

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine

import steward.db.base as db_mod
from steward.db.base import Base, build_session_factory
from steward.db.models.audit_log import AuditLog
from steward.db.models.tenant_subscription import TenantSubscription
from steward.db.redis import set_redis
from steward.domain.subscription_status import SubscriptionProvider, SubscriptionStatus, is_live
from steward.providers.base import ManualProvider
from steward.providers.paystack_adapter import PaystackProvider
from steward.providers.stripe_adapter import StripeProvider
from steward.schemas.plans import FeatureInput, PlanUpsert
from steward.services.audit_service import Actor
from steward.services.plan_catalog import PlanCatalog
from steward.services.subscription_service import SubscriptionService

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
ADMIN = Actor.user("user_platform_admin")


@pytest.fixture
async def engine(tmp_path):
    """SQLite test engine with every table created; installed as the app's global."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'steward-test.db'}", echo=False)

    import steward.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = build_session_factory(engine)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db_mod.get_session_factory()


@pytest.fixture
async def redis():
    """Fake Redis installed as the shared client."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    set_redis(fake_redis)
    yield fake_redis
    set_redis(None)
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def adapters():
    """Real adapters with test credentials; tests patch the SDK/HTTP edges."""
    return {
        SubscriptionProvider.MANUAL: ManualProvider(5.0),
        SubscriptionProvider.STRIPE: StripeProvider("sk_test_dummy", 5.0, "whsec_test_dummy"),
        SubscriptionProvider.PAYSTACK: PaystackProvider("sk_paystack_test", "https://api.paystack.test", 5.0),
    }


@pytest.fixture
def subscriptions(session_factory, adapters):
    return SubscriptionService(session_factory, adapters)


@pytest.fixture
def catalog(session_factory):
    return PlanCatalog(session_factory)


@pytest.fixture
def make_plan(catalog):
    """Create-or-update a plan through the catalog service."""

    async def _make(
        code: str,
        amount_minor: int = 4900,
        features: dict[str, tuple[bool, int | None]] | None = None,
        *,
        trial_days: int = 0,
        is_default: bool = False,
        is_active: bool = True,
        stripe_price_id: str | None = None,
        paystack_plan_code: str | None = None,
        currency: str = "USD",
    ):
        plan, _ = await catalog.upsert_plan(
            PlanUpsert(
                code=code,
                name=code.title(),
                amount_minor=amount_minor,
                currency=currency,
                trial_days=trial_days,
                is_default=is_default,
                is_active=is_active,
                stripe_price_id=stripe_price_id,
                paystack_plan_code=paystack_plan_code,
                features=[
                    FeatureInput(key=key, enabled=enabled, limit=limit)
                    for key, (enabled, limit) in (features or {}).items()
                ],
            ),
            ADMIN,
        )
        return plan

    return _make


@pytest.fixture
def make_subscription(session_factory, subscriptions):
    """Insert a subscription row directly, then adjust fields for the scenario."""

    async def _make(
        tenant_id: str,
        plan,
        *,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        provider: SubscriptionProvider = SubscriptionProvider.MANUAL,
        now: datetime = NOW,
        **fields,
    ) -> TenantSubscription:
        async with session_factory() as session:
            subscription, _ = await subscriptions.create_subscription(
                session,
                tenant_id=tenant_id,
                plan=plan,
                provider=provider,
                actor=ADMIN,
                status=status if is_live(status) else SubscriptionStatus.ACTIVE,
                now=now,
                audit=False,
            )
            if not is_live(status):
                subscription.status = status.value
                subscription.ended_at = now
            for key, value in fields.items():
                setattr(subscription, key, value)
            await session.commit()
            return subscription

    return _make


@pytest.fixture
def load_subscription(session_factory):
    async def _load(subscription_id) -> TenantSubscription:
        async with session_factory() as session:
            return await session.get(TenantSubscription, subscription_id)

    return _load


@pytest.fixture
def audit_count(session_factory):
    async def _count(action: str, tenant_id: str | None = None) -> int:
        query = select(func.count(AuditLog.id)).where(AuditLog.action == action)
        if tenant_id is not None:
            query = query.where(AuditLog.tenant_id == tenant_id)
        async with session_factory() as session:
            return (await session.execute(query)).scalar_one()

    return _count
