"""Service construction for route handlers.

Everything hangs off the shared session factory so tests can swap the whole
graph with ``app.dependency_overrides``.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from steward.core.config import get_settings
from steward.core.locking import JobLock
from steward.db.base import get_session_factory
from steward.providers.registry import ProviderAdapters, build_provider_adapters
from steward.services.backfill_service import BackfillService
from steward.services.dunning_service import DunningService
from steward.services.entitlement_service import EntitlementService
from steward.services.plan_catalog import PlanCatalog
from steward.services.reconciliation_service import ReconciliationService
from steward.services.subscription_service import SubscriptionService
from steward.services.webhook_ledger import WebhookLedger
from steward.services.webhook_service import WebhookService


def session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def provider_adapters() -> ProviderAdapters:
    return build_provider_adapters(get_settings())


def plan_catalog(factory=Depends(session_factory)) -> PlanCatalog:
    return PlanCatalog(factory)


def entitlement_service(factory=Depends(session_factory)) -> EntitlementService:
    return EntitlementService(factory)


def subscription_service(
    factory=Depends(session_factory),
    adapters: ProviderAdapters = Depends(provider_adapters),
) -> SubscriptionService:
    return SubscriptionService(factory, adapters, get_settings())


def reconciliation_service(
    factory=Depends(session_factory),
    adapters: ProviderAdapters = Depends(provider_adapters),
) -> ReconciliationService:
    return ReconciliationService(factory, adapters)


def backfill_service(
    factory=Depends(session_factory),
    adapters: ProviderAdapters = Depends(provider_adapters),
) -> BackfillService:
    return BackfillService(factory, adapters)


def dunning_service(
    factory=Depends(session_factory),
    subscriptions: SubscriptionService = Depends(subscription_service),
) -> DunningService:
    return DunningService(factory, subscriptions, JobLock(), get_settings())


def webhook_service(
    factory=Depends(session_factory),
    subscriptions: SubscriptionService = Depends(subscription_service),
) -> WebhookService:
    ledger = WebhookLedger(factory, get_settings().webhook_processing_stale_seconds)
    return WebhookService(factory, subscriptions, ledger)
