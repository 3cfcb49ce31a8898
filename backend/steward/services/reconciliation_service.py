"""Provider mirrors (invoices, payouts, refunds, disputes) and reconciliation views."""

from datetime import datetime

import structlog
from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from steward.core.exceptions import ValidationError
from steward.db.models.donation import Donation
from steward.db.models.invoice import Invoice
from steward.db.models.payment_intent import PaymentIntent
from steward.db.models.payout import Payout
from steward.domain.subscription_status import SubscriptionProvider
from steward.providers.registry import ProviderAdapters

logger = structlog.get_logger(__name__)

INTENT_SUCCEEDED = "SUCCEEDED"
DONATION_COMPLETED = "COMPLETED"


async def upsert_mirror(session: AsyncSession, model, *, provider: str, provider_ref: str, values: dict):
    """Insert or refresh a mirror row keyed by ``(provider, provider_ref)``.

    None values never overwrite what is already stored, so a sparse event
    (say ``invoice.voided``) cannot erase amounts learned earlier. A racing
    insert fails the unique constraint at commit and the event is retried.

    Returns:
        (row, created)
    """
    result = await session.execute(
        select(model).where(model.provider == provider, model.provider_ref == provider_ref)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = model(provider=provider, provider_ref=provider_ref, **{k: v for k, v in values.items() if v is not None})
        session.add(row)
        return row, True

    for key, value in values.items():
        if value is not None:
            setattr(row, key, value)
    return row, False


class ReconciliationService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], adapters: ProviderAdapters):
        self.session_factory = session_factory
        self.adapters = adapters

    async def sync_payouts(
        self,
        provider: SubscriptionProvider,
        *,
        tenant_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> dict:
        """Pull payouts (Stripe) or settlements (Paystack) into the payout mirror."""
        if provider == SubscriptionProvider.MANUAL:
            raise ValidationError("Manual billing has no payouts to sync")

        records = await self.adapters[provider].list_payouts(since, limit)
        created = updated = 0
        async with self.session_factory() as session:
            for record in records:
                _, was_created = await upsert_mirror(
                    session,
                    Payout,
                    provider=provider.value,
                    provider_ref=record.provider_ref,
                    values={
                        "tenant_id": tenant_id,
                        "amount_minor": record.amount_minor,
                        "currency": record.currency,
                        "status": record.status,
                        "arrival_date": record.arrival_date,
                        "raw": record.raw,
                    },
                )
                if was_created:
                    created += 1
                else:
                    updated += 1
            await session.commit()

        logger.info("payouts_synced", provider=provider.value, fetched=len(records), created=created, updated=updated)
        return {"provider": provider.value, "fetched": len(records), "created": created, "updated": updated}

    async def list_invoices(self, tenant_id: str, limit: int = 50) -> list[Invoice]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Invoice)
                .where(Invoice.tenant_id == tenant_id)
                .order_by(Invoice.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mismatches(self, *, tenant_id: str | None = None, church_id: str | None = None, limit: int = 50) -> dict:
        """Giving records where the payment and donation disagree.

        - succeeded payment intents with no completed donation
        - completed donations whose payment intent has not succeeded
        """
        completed_donation = exists().where(
            Donation.payment_intent_id == PaymentIntent.id,
            Donation.status == DONATION_COMPLETED,
        )
        intents_query = select(PaymentIntent).where(PaymentIntent.status == INTENT_SUCCEEDED, ~completed_donation)

        donations_query = (
            select(Donation, PaymentIntent)
            .join(PaymentIntent, PaymentIntent.id == Donation.payment_intent_id)
            .where(Donation.status == DONATION_COMPLETED, PaymentIntent.status != INTENT_SUCCEEDED)
        )

        if tenant_id:
            intents_query = intents_query.where(PaymentIntent.tenant_id == tenant_id)
            donations_query = donations_query.where(Donation.tenant_id == tenant_id)
        if church_id:
            intents_query = intents_query.where(PaymentIntent.church_id == church_id)
            donations_query = donations_query.where(Donation.church_id == church_id)

        async with self.session_factory() as session:
            intent_count = (
                await session.execute(select(func.count()).select_from(intents_query.subquery()))
            ).scalar_one()
            donation_count = (
                await session.execute(select(func.count()).select_from(donations_query.subquery()))
            ).scalar_one()

            intents = (
                await session.execute(intents_query.order_by(PaymentIntent.created_at.desc()).limit(limit))
            ).scalars().all()
            donation_rows = (
                await session.execute(donations_query.order_by(Donation.created_at.desc()).limit(limit))
            ).all()

        return {
            "intents_without_completed_donation": [
                {
                    "payment_intent_id": str(intent.id),
                    "tenant_id": intent.tenant_id,
                    "church_id": intent.church_id,
                    "provider": intent.provider,
                    "provider_ref": intent.provider_ref,
                    "amount_minor": intent.amount_minor,
                    "currency": intent.currency,
                    "created_at": intent.created_at,
                }
                for intent in intents
            ],
            "donations_with_unsettled_intent": [
                {
                    "donation_id": str(donation.id),
                    "payment_intent_id": str(intent.id),
                    "tenant_id": donation.tenant_id,
                    "church_id": donation.church_id,
                    "intent_status": intent.status,
                    "amount_minor": donation.amount_minor,
                    "currency": donation.currency,
                    "created_at": donation.created_at,
                }
                for donation, intent in donation_rows
            ],
            "summary": {
                "intents_without_completed_donation": intent_count,
                "donations_with_unsettled_intent": donation_count,
                "total": intent_count + donation_count,
            },
        }
