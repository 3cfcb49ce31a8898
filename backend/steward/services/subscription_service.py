"""SubscriptionService: the tenant subscription state machine.

Every status change, whether it comes from a webhook, an admin, a tenant or
the sweep, goes through ``apply_transition`` on a row locked with
``SELECT ... FOR UPDATE``. The ``version`` column adds optimistic locking on
backends without row locks. Provider calls run before the lock is taken;
the row is re-read afterwards and the version compared, so a concurrent
webhook turns into a ConflictError instead of a half-applied change.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from steward.core.config import Settings, get_settings
from steward.core.exceptions import (
    ConflictError,
    NotFoundError,
    PlanChangeRejectedError,
    ValidationError,
)
from steward.db.models.subscription_plan import SubscriptionPlan
from steward.db.models.tenant_subscription import TenantSubscription
from steward.db.types import utcnow
from steward.domain.plan_change import (
    PlanChangeDirection,
    PlanChangeEffective,
    PlanPrice,
    classify_change,
    rejection_reason,
)
from steward.domain.provider_refs import ProviderRefs
from steward.domain.subscription_status import (
    LIVE_STATUSES,
    SubscriptionProvider,
    SubscriptionStatus,
    ensure_transition,
    initial_status,
    is_live,
    is_terminal,
)
from steward.providers.base import BillingProviderAdapter, CheckoutSession
from steward.providers.registry import ProviderAdapters, build_provider_adapters
from steward.services.audit_service import Actor, record_audit
from steward.services.plan_catalog import get_plan_by_code

logger = structlog.get_logger(__name__)

_LIVE_VALUES = [status.value for status in LIVE_STATUSES]


async def load_live_subscription(
    session: AsyncSession,
    tenant_id: str,
    *,
    for_update: bool = False,
) -> TenantSubscription | None:
    """Most recently started live subscription of a tenant, if any."""
    query = (
        select(TenantSubscription)
        .where(TenantSubscription.tenant_id == tenant_id, TenantSubscription.status.in_(_LIVE_VALUES))
        .order_by(TenantSubscription.starts_at.desc(), TenantSubscription.created_at.desc())
        .limit(1)
    )
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def lock_subscription(session: AsyncSession, subscription_id: uuid.UUID) -> TenantSubscription:
    result = await session.execute(
        select(TenantSubscription)
        .where(TenantSubscription.id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


async def commit_or_conflict(session: AsyncSession) -> None:
    """Commit, translating lost races into ConflictError."""
    try:
        await session.commit()
    except StaleDataError as exc:
        await session.rollback()
        raise ConflictError("Subscription was modified concurrently; refresh and retry") from exc
    except IntegrityError as exc:
        await session.rollback()
        if "uq_tenant_live_subscription" in str(exc.orig) or "tenant_subscriptions.tenant_id" in str(exc.orig):
            raise ConflictError("Tenant already has a live subscription; refresh and retry") from exc
        raise


def _plan_price(plan: SubscriptionPlan) -> PlanPrice:
    return PlanPrice(code=plan.code, amount_minor=plan.amount_minor, currency=plan.currency, interval=plan.interval)


def _provider_plan_ref(plan: SubscriptionPlan, provider: str) -> str | None:
    if provider == SubscriptionProvider.STRIPE.value:
        return plan.stripe_price_id
    if provider == SubscriptionProvider.PAYSTACK.value:
        return plan.paystack_plan_code
    return None


@dataclass(frozen=True)
class PlanChangeResult:
    applied: bool
    scheduled: bool
    message: str
    subscription: TenantSubscription


class SubscriptionService:
    """Service layer for tenant subscription lifecycle operations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapters: ProviderAdapters | None = None,
        settings: Settings | None = None,
    ):
        """Initialize with dependency injection.

        Args:
            session_factory: SQLAlchemy async session factory
            adapters: Provider adapters keyed by provider (built from settings when omitted)
            settings: Application settings
        """
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.adapters = adapters if adapters is not None else build_provider_adapters(self.settings)

    def adapter(self, provider: str | SubscriptionProvider) -> BillingProviderAdapter:
        return self.adapters[SubscriptionProvider(provider)]

    # ── Reads ────────────────────────────────────────────────────────

    async def current_subscription(self, tenant_id: str) -> TenantSubscription | None:
        async with self.session_factory() as session:
            return await load_live_subscription(session, tenant_id)

    async def subscription_history(self, tenant_id: str, limit: int = 50) -> list[TenantSubscription]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TenantSubscription)
                .where(TenantSubscription.tenant_id == tenant_id)
                .order_by(TenantSubscription.starts_at.desc(), TenantSubscription.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── State machine core ───────────────────────────────────────────

    async def apply_transition(
        self,
        session: AsyncSession,
        subscription: TenantSubscription,
        target: SubscriptionStatus,
        *,
        actor: Actor,
        reason: str,
        now: datetime | None = None,
        audit: bool = True,
    ) -> bool:
        """Move a locked subscription to ``target``.

        Returns False for a same-status request (replays are no-ops).

        Raises:
            InvalidTransitionError: The move is not allowed from the current status
        """
        now = now or utcnow()
        ensure_transition(subscription.status, target)
        previous = SubscriptionStatus(subscription.status)
        if previous == target:
            return False

        subscription.status = target.value

        if target == SubscriptionStatus.PAST_DUE:
            subscription.past_due_since = subscription.past_due_since or now
        elif previous == SubscriptionStatus.PAST_DUE:
            subscription.past_due_since = None
            subscription.last_reminder_sent_at = None

        if is_terminal(target):
            subscription.cancel_at_period_end = False
            subscription.pending_plan_code = None
            subscription.pending_change_effective_at = None
            subscription.pending_change_mode = None
            subscription.ended_at = now
            if target == SubscriptionStatus.CANCELED:
                subscription.canceled_at = subscription.canceled_at or now

        if audit:
            record_audit(
                session,
                actor=actor,
                action="billing.subscription.status_changed",
                tenant_id=subscription.tenant_id,
                target_type="tenant_subscription",
                target_id=str(subscription.id),
                details={"from": previous.value, "to": target.value, "reason": reason},
            )

        logger.info(
            "subscription_transitioned",
            subscription_id=str(subscription.id),
            tenant_id=subscription.tenant_id,
            from_status=previous.value,
            to_status=target.value,
            actor_type=actor.type.value,
            reason=reason,
        )
        return True

    async def transition(
        self,
        subscription_id: uuid.UUID,
        target: SubscriptionStatus,
        *,
        actor: Actor,
        reason: str,
        now: datetime | None = None,
        expected_version: int | None = None,
    ) -> TenantSubscription:
        """Transactional read-modify-write of one subscription's status."""
        async with self.session_factory() as session:
            subscription = await lock_subscription(session, subscription_id)
            if expected_version is not None and subscription.version != expected_version:
                raise ConflictError("Subscription was modified concurrently; refresh and retry")
            await self.apply_transition(session, subscription, target, actor=actor, reason=reason, now=now)
            await commit_or_conflict(session)
            return subscription

    async def create_subscription(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        plan: SubscriptionPlan,
        provider: SubscriptionProvider,
        actor: Actor,
        status: SubscriptionStatus | None = None,
        refs: ProviderRefs | None = None,
        current_period_end: datetime | None = None,
        trial_ends_at: datetime | None = None,
        seat_count: int | None = None,
        provider_metadata: dict | None = None,
        now: datetime | None = None,
        audit: bool = True,
    ) -> tuple[TenantSubscription, list[str]]:
        """Insert a new live subscription, canceling any the tenant already has.

        Returns:
            (subscription, ids of the subscriptions it replaced)
        """
        now = now or utcnow()
        status = status or initial_status(plan.trial_days)
        if not is_live(status):
            raise ValidationError(f"A new subscription cannot start as {status.value}")

        replaced: list[str] = []
        result = await session.execute(
            select(TenantSubscription)
            .where(TenantSubscription.tenant_id == tenant_id, TenantSubscription.status.in_(_LIVE_VALUES))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        for previous in result.scalars().all():
            await self.apply_transition(
                session,
                previous,
                SubscriptionStatus.CANCELED,
                actor=actor,
                reason="replaced by a new subscription",
                now=now,
                audit=audit,
            )
            replaced.append(str(previous.id))
        # Free the live slot before the insert
        await session.flush()

        if trial_ends_at is None and status == SubscriptionStatus.TRIALING and plan.trial_days > 0:
            trial_ends_at = now + timedelta(days=plan.trial_days)

        refs = refs or ProviderRefs()
        subscription = TenantSubscription(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            plan_id=plan.id,
            status=status.value,
            provider=provider.value,
            seat_count=seat_count,
            starts_at=now,
            trial_ends_at=trial_ends_at,
            current_period_end=current_period_end,
            cancel_at_period_end=False,
            past_due_since=now if status == SubscriptionStatus.PAST_DUE else None,
            provider_customer_id=refs.customer_id,
            provider_subscription_id=refs.subscription_id,
            provider_plan_ref=refs.plan_ref or _provider_plan_ref(plan, provider.value),
            provider_email_token=refs.email_token,
            provider_metadata=provider_metadata or {},
        )
        subscription.plan = plan
        session.add(subscription)
        await session.flush()

        if audit:
            record_audit(
                session,
                actor=actor,
                action="billing.subscription.created",
                tenant_id=tenant_id,
                target_type="tenant_subscription",
                target_id=str(subscription.id),
                details={
                    "plan_code": plan.code,
                    "status": status.value,
                    "provider": provider.value,
                    "replaced": replaced,
                },
            )

        logger.info(
            "subscription_created",
            subscription_id=str(subscription.id),
            tenant_id=tenant_id,
            plan_code=plan.code,
            status=status.value,
            provider=provider.value,
            replaced=len(replaced),
        )
        return subscription, replaced

    async def apply_pending_change(
        self,
        session: AsyncSession,
        subscription: TenantSubscription,
        *,
        actor: Actor,
        now: datetime | None = None,
    ) -> bool:
        """Swap in the scheduled plan. Returns False when the target vanished."""
        now = now or utcnow()
        target_code = subscription.pending_plan_code
        if not target_code:
            return False

        target = await get_plan_by_code(session, target_code, active_only=True)
        previous_code = subscription.plan.code if subscription.plan else None
        subscription.pending_plan_code = None
        subscription.pending_change_effective_at = None
        subscription.pending_change_mode = None

        if target is None:
            record_audit(
                session,
                actor=actor,
                action="billing.subscription.plan_change_dropped",
                tenant_id=subscription.tenant_id,
                target_type="tenant_subscription",
                target_id=str(subscription.id),
                details={"from": previous_code, "to": target_code, "reason": "target plan missing or inactive"},
            )
            logger.warning("pending_plan_change_dropped", subscription_id=str(subscription.id), plan_code=target_code)
            return False

        self.swap_plan(subscription, target)
        record_audit(
            session,
            actor=actor,
            action="billing.subscription.plan_changed",
            tenant_id=subscription.tenant_id,
            target_type="tenant_subscription",
            target_id=str(subscription.id),
            details={"from": previous_code, "to": target.code, "effective": PlanChangeEffective.NEXT_CYCLE.value},
        )
        return True

    def swap_plan(self, subscription: TenantSubscription, target: SubscriptionPlan) -> None:
        subscription.plan_id = target.id
        subscription.plan = target
        ref = _provider_plan_ref(target, subscription.provider)
        subscription.provider_plan_ref = ref or subscription.provider_plan_ref

    async def record_payment(
        self,
        session: AsyncSession,
        subscription: TenantSubscription,
        *,
        succeeded: bool,
        actor: Actor,
        now: datetime | None = None,
        audit: bool = True,
    ) -> bool:
        """Apply a charge outcome reported by a provider. Returns True if status changed."""
        now = now or utcnow()
        status = SubscriptionStatus(subscription.status)
        if is_terminal(status):
            return False

        if succeeded:
            subscription.last_payment_at = now
            if status in (SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE):
                return await self.apply_transition(
                    session,
                    subscription,
                    SubscriptionStatus.ACTIVE,
                    actor=actor,
                    reason="payment succeeded",
                    now=now,
                    audit=audit,
                )
            return False

        if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            return await self.apply_transition(
                session,
                subscription,
                SubscriptionStatus.PAST_DUE,
                actor=actor,
                reason="payment failed",
                now=now,
                audit=audit,
            )
        return False

    # ── Admin operations ─────────────────────────────────────────────

    async def assign_tenant_plan(
        self,
        tenant_id: str,
        plan_code: str,
        *,
        actor: Actor,
        status: SubscriptionStatus | None = None,
        provider: SubscriptionProvider = SubscriptionProvider.MANUAL,
        seat_count: int | None = None,
        reason: str | None = None,
        current_period_end: datetime | None = None,
        now: datetime | None = None,
    ) -> TenantSubscription:
        """Put a tenant on a plan, replacing whatever live subscription it has."""
        now = now or utcnow()
        async with self.session_factory() as session:
            plan = await get_plan_by_code(session, plan_code, active_only=True)
            if plan is None:
                raise NotFoundError(f"Plan '{plan_code}' not found or inactive")

            subscription, replaced = await self.create_subscription(
                session,
                tenant_id=tenant_id,
                plan=plan,
                provider=provider,
                actor=actor,
                status=status,
                current_period_end=current_period_end,
                seat_count=seat_count,
                now=now,
                audit=False,
            )
            record_audit(
                session,
                actor=actor,
                action="platform.tenant.plan_assigned",
                tenant_id=tenant_id,
                target_type="tenant_subscription",
                target_id=str(subscription.id),
                details={
                    "plan_code": plan.code,
                    "status": subscription.status,
                    "provider": provider.value,
                    "seat_count": seat_count,
                    "reason": reason,
                    "replaced": replaced,
                },
            )
            await commit_or_conflict(session)
            return subscription

    # ── Tenant operations ────────────────────────────────────────────

    async def _require_live(self, session: AsyncSession, tenant_id: str) -> TenantSubscription:
        live = await load_live_subscription(session, tenant_id)
        if live is None:
            raise NotFoundError("No active subscription. Choose a plan to subscribe.")
        return live

    async def _relock(self, session: AsyncSession, snapshot: TenantSubscription) -> TenantSubscription:
        subscription = await lock_subscription(session, snapshot.id)
        if subscription.version != snapshot.version or not is_live(subscription.status):
            raise ConflictError("Subscription changed while the request was in flight; refresh and retry")
        return subscription

    async def change_plan(
        self,
        tenant_id: str,
        plan_code: str,
        effective: PlanChangeEffective,
        *,
        actor: Actor,
        now: datetime | None = None,
    ) -> PlanChangeResult:
        """Change the tenant's plan now (upgrades on capable providers) or at period end.

        Raises:
            NotFoundError: No live subscription, or unknown target plan
            PlanChangeRejectedError: The request cannot be honoured as asked
            ProviderError: The provider call failed; nothing changed locally
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            live = await self._require_live(session, tenant_id)
            target = await get_plan_by_code(session, plan_code, active_only=True)
            if target is None:
                raise NotFoundError(f"Plan '{plan_code}' not found or inactive")

        direction = classify_change(_plan_price(live.plan), _plan_price(target))
        if direction == PlanChangeDirection.SAME:
            return PlanChangeResult(applied=False, scheduled=False, message="Already on this plan.", subscription=live)

        if live.status in (SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.PAUSED.value):
            raise PlanChangeRejectedError("Resolve the outstanding balance before changing plans.")

        adapter = self.adapter(live.provider)
        rejection = rejection_reason(
            direction,
            effective,
            provider=live.provider,
            supports_immediate=adapter.capabilities.immediate_plan_change,
            has_period_end=live.current_period_end is not None,
        )
        if rejection:
            logger.info(
                "plan_change_rejected",
                tenant_id=tenant_id,
                from_plan=live.plan.code,
                to_plan=target.code,
                effective=effective.value,
                direction=direction.value,
            )
            raise PlanChangeRejectedError(rejection)

        if effective == PlanChangeEffective.IMMEDIATE:
            await adapter.change_plan_now(live, target)
            schedule_meta = None
        else:
            schedule_meta = await adapter.schedule_plan_change(live, target, live.current_period_end)

        async with self.session_factory() as session:
            subscription = await self._relock(session, live)
            previous_code = subscription.plan.code

            if effective == PlanChangeEffective.IMMEDIATE:
                target = await session.get(SubscriptionPlan, target.id)
                self.swap_plan(subscription, target)
                subscription.pending_plan_code = None
                subscription.pending_change_effective_at = None
                subscription.pending_change_mode = None
                action, message = "billing.subscription.plan_changed", f"Switched to {target.name}."
            else:
                subscription.pending_plan_code = target.code
                subscription.pending_change_effective_at = subscription.current_period_end
                subscription.pending_change_mode = PlanChangeEffective.NEXT_CYCLE.value
                if schedule_meta:
                    subscription.provider_metadata = {**(subscription.provider_metadata or {}), **schedule_meta}
                action = "billing.subscription.plan_change_scheduled"
                message = f"{target.name} starts on {subscription.current_period_end.date().isoformat()}."

            record_audit(
                session,
                actor=actor,
                action=action,
                tenant_id=tenant_id,
                target_type="tenant_subscription",
                target_id=str(subscription.id),
                details={"from": previous_code, "to": target.code, "effective": effective.value},
            )
            await commit_or_conflict(session)

        logger.info(
            "plan_change_accepted",
            tenant_id=tenant_id,
            from_plan=previous_code,
            to_plan=target.code,
            effective=effective.value,
        )
        immediate = effective == PlanChangeEffective.IMMEDIATE
        return PlanChangeResult(applied=immediate, scheduled=not immediate, message=message, subscription=subscription)

    async def cancel_subscription(
        self,
        tenant_id: str,
        *,
        at_period_end: bool,
        actor: Actor,
        now: datetime | None = None,
    ) -> TenantSubscription:
        now = now or utcnow()
        async with self.session_factory() as session:
            live = await self._require_live(session, tenant_id)

        if at_period_end:
            if live.current_period_end is None:
                raise ValidationError("This subscription has no billing period end; cancel immediately instead.")
            if live.cancel_at_period_end:
                return live

        await self.adapter(live.provider).cancel(live, at_period_end)

        async with self.session_factory() as session:
            subscription = await self._relock(session, live)
            if at_period_end:
                subscription.cancel_at_period_end = True
                record_audit(
                    session,
                    actor=actor,
                    action="billing.subscription.cancel_scheduled",
                    tenant_id=tenant_id,
                    target_type="tenant_subscription",
                    target_id=str(subscription.id),
                    details={"current_period_end": subscription.current_period_end.isoformat()},
                )
            else:
                await self.apply_transition(
                    session,
                    subscription,
                    SubscriptionStatus.CANCELED,
                    actor=actor,
                    reason="canceled by tenant",
                    now=now,
                )
            await commit_or_conflict(session)
            return subscription

    async def resume_subscription(
        self, tenant_id: str, *, actor: Actor, now: datetime | None = None
    ) -> TenantSubscription:
        """Undo a scheduled period-end cancellation. Status is unchanged."""
        now = now or utcnow()
        async with self.session_factory() as session:
            live = await self._require_live(session, tenant_id)

        if not live.cancel_at_period_end:
            raise ValidationError("Subscription is not scheduled to cancel.")
        if live.current_period_end is not None and live.current_period_end <= now:
            raise ValidationError("The billing period has already ended; start a new subscription instead.")

        adapter = self.adapter(live.provider)
        if not adapter.capabilities.resume:
            raise adapter.unsupported("Resuming")
        await adapter.resume(live)

        async with self.session_factory() as session:
            subscription = await self._relock(session, live)
            subscription.cancel_at_period_end = False
            record_audit(
                session,
                actor=actor,
                action="billing.subscription.resumed",
                tenant_id=tenant_id,
                target_type="tenant_subscription",
                target_id=str(subscription.id),
            )
            await commit_or_conflict(session)
            return subscription

    async def _customer_id_for(
        self, session: AsyncSession, tenant_id: str, provider: SubscriptionProvider
    ) -> str | None:
        result = await session.execute(
            select(TenantSubscription.provider_customer_id)
            .where(
                TenantSubscription.tenant_id == tenant_id,
                TenantSubscription.provider == provider.value,
                TenantSubscription.provider_customer_id.is_not(None),
            )
            .order_by(TenantSubscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def start_checkout(
        self,
        tenant_id: str,
        plan_code: str,
        provider: SubscriptionProvider,
        *,
        customer_email: str | None,
        actor: Actor,
    ) -> CheckoutSession:
        """Open a hosted checkout; the subscription row arrives by webhook."""
        adapter = self.adapter(provider)
        if not adapter.capabilities.hosted_checkout:
            raise adapter.unsupported("Checkout")

        async with self.session_factory() as session:
            plan = await get_plan_by_code(session, plan_code, active_only=True)
            if plan is None:
                raise NotFoundError(f"Plan '{plan_code}' not found or inactive")
            live = await load_live_subscription(session, tenant_id)
            if (
                live is not None
                and live.plan_id == plan.id
                and live.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)
            ):
                raise ValidationError("Already subscribed to this plan.")
            customer_id = await self._customer_id_for(session, tenant_id, provider)

        frontend = self.settings.frontend_url.rstrip("/")
        checkout = await adapter.create_checkout(
            tenant_id=tenant_id,
            plan=plan,
            customer_id=customer_id,
            customer_email=customer_email,
            success_url=f"{frontend}{self.settings.checkout_success_path}",
            cancel_url=f"{frontend}{self.settings.checkout_cancel_path}",
        )
        logger.info(
            "checkout_started",
            tenant_id=tenant_id,
            plan_code=plan.code,
            provider=provider.value,
            reference=checkout.reference,
            actor_id=actor.id,
        )
        return checkout

    async def create_portal_session(self, tenant_id: str) -> str:
        async with self.session_factory() as session:
            live = await load_live_subscription(session, tenant_id)
            if live is None:
                customer_id = await self._customer_id_for(session, tenant_id, SubscriptionProvider.STRIPE)
                if customer_id is None:
                    raise NotFoundError("No billing account found. Please subscribe first.")
                live = TenantSubscription(
                    tenant_id=tenant_id,
                    provider=SubscriptionProvider.STRIPE.value,
                    provider_customer_id=customer_id,
                )

        adapter = self.adapter(live.provider)
        if not adapter.capabilities.billing_portal:
            raise adapter.unsupported("The billing portal")

        frontend = self.settings.frontend_url.rstrip("/")
        return await adapter.create_portal_session(live, f"{frontend}{self.settings.portal_return_path}")
