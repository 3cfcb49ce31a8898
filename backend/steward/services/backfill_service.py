"""Backfill normalized provider references on legacy subscription rows.

Older rows carry only a raw provider payload in ``provider_metadata``. The
backfill derives the customer, subscription, plan and (Paystack) email-token
references from it and, when the customer is still unknown, asks the
provider. Existing column values always win; only gaps are filled.
"""

import uuid
from dataclasses import dataclass, field

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from steward.core.exceptions import StewardError
from steward.db.models.tenant_subscription import TenantSubscription
from steward.domain.provider_refs import ProviderRefs
from steward.domain.subscription_status import SubscriptionProvider
from steward.providers.registry import ProviderAdapters
from steward.services.audit_service import Actor, record_audit
from steward.services.subscription_service import commit_or_conflict, lock_subscription

logger = structlog.get_logger(__name__)

_PROVIDER_BACKED = [SubscriptionProvider.STRIPE.value, SubscriptionProvider.PAYSTACK.value]


@dataclass
class BackfillReport:
    dry_run: bool
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    changed_ids: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


def current_refs(subscription: TenantSubscription) -> ProviderRefs:
    return ProviderRefs(
        customer_id=subscription.provider_customer_id,
        subscription_id=subscription.provider_subscription_id,
        plan_ref=subscription.provider_plan_ref,
        email_token=subscription.provider_email_token,
    )


class BackfillService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], adapters: ProviderAdapters):
        self.session_factory = session_factory
        self.adapters = adapters

    async def _candidates(
        self,
        limit: int,
        tenant_ids: list[str] | None,
        subscription_ids: list[uuid.UUID] | None,
    ) -> list[TenantSubscription]:
        query = (
            select(TenantSubscription)
            .where(
                TenantSubscription.provider.in_(_PROVIDER_BACKED),
                or_(
                    TenantSubscription.provider_customer_id.is_(None),
                    TenantSubscription.provider_subscription_id.is_(None),
                    TenantSubscription.provider_plan_ref.is_(None),
                    (TenantSubscription.provider == SubscriptionProvider.PAYSTACK.value)
                    & TenantSubscription.provider_email_token.is_(None),
                ),
            )
            .order_by(TenantSubscription.created_at)
            .limit(limit)
        )
        if tenant_ids:
            query = query.where(TenantSubscription.tenant_id.in_(tenant_ids))
        if subscription_ids:
            query = query.where(TenantSubscription.id.in_(subscription_ids))
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def derive_refs(self, subscription: TenantSubscription) -> ProviderRefs:
        """References for a row: columns, then stored payload, then the provider."""
        adapter = self.adapters[SubscriptionProvider(subscription.provider)]
        existing = current_refs(subscription)
        refs = adapter.normalize_refs(subscription.provider_metadata).merged_over(existing)

        if not refs.customer_id and refs.subscription_id and adapter.configured:
            fetched = await adapter.fetch_refs(refs.subscription_id)
            if fetched is not None:
                refs = fetched.merged_over(refs)
        return refs

    async def run(
        self,
        *,
        limit: int = 250,
        dry_run: bool = False,
        tenant_ids: list[str] | None = None,
        subscription_ids: list[uuid.UUID] | None = None,
        actor: Actor | None = None,
    ) -> BackfillReport:
        report = BackfillReport(dry_run=dry_run)
        rows = await self._candidates(limit, tenant_ids, subscription_ids)
        report.scanned = len(rows)

        for row in rows:
            try:
                refs = await self.derive_refs(row)
                if refs == current_refs(row):
                    report.skipped += 1
                    continue

                if not dry_run:
                    await self._write(row.id, refs)
                report.updated += 1
                report.changed_ids.append(str(row.id))
            except (StewardError, IntegrityError) as exc:
                message = getattr(exc, "message", None) or str(exc)
                logger.warning("backfill_row_failed", subscription_id=str(row.id), error=message)
                report.failed += 1
                report.errors.append({"subscription_id": str(row.id), "message": message})

        if not dry_run and report.updated:
            async with self.session_factory() as session:
                record_audit(
                    session,
                    actor=actor or Actor.system("metadata-backfill"),
                    action="platform.subscriptions.backfilled",
                    target_type="tenant_subscription",
                    details={"updated": report.updated, "failed": report.failed, "changed_ids": report.changed_ids},
                )
                await session.commit()

        logger.info(
            "subscription_backfill_finished",
            dry_run=dry_run,
            scanned=report.scanned,
            updated=report.updated,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    async def _write(self, subscription_id: uuid.UUID, refs: ProviderRefs) -> None:
        async with self.session_factory() as session:
            subscription = await lock_subscription(session, subscription_id)
            # Re-read under the lock: a webhook may have filled some columns meanwhile
            merged = refs.merged_over(current_refs(subscription))
            subscription.provider_customer_id = merged.customer_id
            subscription.provider_subscription_id = merged.subscription_id
            subscription.provider_plan_ref = merged.plan_ref
            subscription.provider_email_token = merged.email_token
            await commit_or_conflict(session)
