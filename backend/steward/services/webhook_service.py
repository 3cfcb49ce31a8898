"""Provider webhook processing.

Events arrive already authenticated by the adapter. The flow for each is:

1. claim ``(provider, event_id)`` in the ledger (duplicates stop here)
2. dispatch on the event type inside one transaction
3. write exactly one ``WEBHOOK`` audit record and mark the ledger PROCESSED
   in that same transaction

A handler exception rolls the transaction back, flags the ledger row FAILED
and propagates so the route answers 500 and the provider retries.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from steward.core.exceptions import InvalidTransitionError
from steward.db.models.dispute import Dispute
from steward.db.models.invoice import Invoice
from steward.db.models.payout import Payout
from steward.db.models.refund import Refund
from steward.db.models.subscription_plan import SubscriptionPlan
from steward.db.models.tenant_subscription import TenantSubscription
from steward.db.types import utcnow
from steward.domain.provider_refs import (
    ProviderRefs,
    normalize_paystack_refs,
    normalize_stripe_refs,
    read_path,
    read_string,
)
from steward.domain.subscription_status import (
    LIVE_STATUSES,
    SubscriptionProvider,
    SubscriptionStatus,
    is_live,
    is_terminal,
)
from steward.providers.paystack_adapter import map_paystack_status, parse_paystack_datetime, paystack_event_id
from steward.providers.stripe_adapter import from_timestamp, map_stripe_status
from steward.services.audit_service import Actor, record_audit
from steward.services.plan_catalog import find_plan_by_provider_ref, get_default_plan, get_plan_by_code
from steward.services.reconciliation_service import upsert_mirror
from steward.services.subscription_service import SubscriptionService
from steward.services.webhook_ledger import WebhookLedger, payload_hash

logger = structlog.get_logger(__name__)

STRIPE = SubscriptionProvider.STRIPE
PAYSTACK = SubscriptionProvider.PAYSTACK

_LIVE_VALUES = [status.value for status in LIVE_STATUSES]


@dataclass
class WebhookOutcome:
    status: str  # processed, ignored, skipped, duplicate
    event_type: str
    event_id: str
    tenant_id: str | None = None
    subscription_id: str | None = None
    details: dict = field(default_factory=dict)


@dataclass
class _Context:
    provider: SubscriptionProvider
    event_type: str
    event_id: str
    actor: Actor
    now: datetime

    def outcome(self, result: str, *, tenant_id=None, subscription=None, **details) -> WebhookOutcome:
        if subscription is not None:
            tenant_id = tenant_id or subscription.tenant_id
        return WebhookOutcome(
            status=result,
            event_type=self.event_type,
            event_id=self.event_id,
            tenant_id=tenant_id,
            subscription_id=str(subscription.id) if subscription is not None else None,
            details=details,
        )

    def skipped(self, reason: str, **kwargs) -> WebhookOutcome:
        return self.outcome("skipped", reason=reason, **kwargs)


Handler = Callable[[AsyncSession, dict, _Context], Awaitable[WebhookOutcome]]


def _minor(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _currency(value) -> str | None:
    return str(value).upper() if value else None


class WebhookService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        subscriptions: SubscriptionService,
        ledger: WebhookLedger,
    ):
        self.session_factory = session_factory
        self.subscriptions = subscriptions
        self.ledger = ledger

    # ── Entry points ─────────────────────────────────────────────────

    async def handle_stripe(self, event: dict, body: bytes) -> WebhookOutcome:
        event_type = str(event.get("type") or "unknown")
        obj = read_path(event, "data.object") or {}
        return await self._process(STRIPE, str(event["id"]), event_type, obj, body, self._stripe_handler(event_type))

    async def handle_paystack(self, payload: dict, body: bytes) -> WebhookOutcome:
        event_type = str(payload.get("event") or "unknown")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        event_id = paystack_event_id(payload, body)
        return await self._process(PAYSTACK, event_id, event_type, data, body, self._paystack_handler(event_type))

    async def _process(
        self,
        provider: SubscriptionProvider,
        event_id: str,
        event_type: str,
        obj: dict,
        body: bytes,
        handler: Handler | None,
    ) -> WebhookOutcome:
        if not await self.ledger.claim(provider.value, event_id, event_type, payload_hash(body)):
            logger.info("webhook_duplicate_ignored", provider=provider.value, event_id=event_id, event_type=event_type)
            return WebhookOutcome(status="duplicate", event_type=event_type, event_id=event_id)

        ctx = _Context(provider, event_type, event_id, Actor.webhook(event_id), utcnow())
        try:
            async with self.session_factory() as session:
                if handler is None:
                    outcome = ctx.outcome("ignored")
                else:
                    try:
                        outcome = await handler(session, obj, ctx)
                    except InvalidTransitionError as exc:
                        # Out-of-order delivery against a terminal row; nothing to retry
                        await session.rollback()
                        outcome = ctx.skipped("invalid_transition", current=exc.current, target=exc.target)

                record_audit(
                    session,
                    actor=ctx.actor,
                    action=f"billing.webhook.{provider.value.lower()}",
                    tenant_id=outcome.tenant_id,
                    target_type="tenant_subscription" if outcome.subscription_id else "webhook_event",
                    target_id=outcome.subscription_id or event_id,
                    details={"event_type": event_type, "outcome": outcome.status, **outcome.details},
                )
                await WebhookLedger.mark_processed(session, provider.value, event_id, ctx.now)
                await session.commit()
        except Exception as exc:
            logger.exception(
                "webhook_processing_failed",
                provider=provider.value,
                event_id=event_id,
                event_type=event_type,
                error_type=type(exc).__name__,
            )
            await self.ledger.mark_failed(provider.value, event_id, f"{type(exc).__name__}: {exc}")
            raise

        logger.info(
            "webhook_processed",
            provider=provider.value,
            event_id=event_id,
            event_type=event_type,
            outcome=outcome.status,
            tenant_id=outcome.tenant_id,
            subscription_id=outcome.subscription_id,
        )
        return outcome

    # ── Shared helpers ───────────────────────────────────────────────

    @staticmethod
    async def _subscription_by_ref(
        session: AsyncSession, provider: SubscriptionProvider, ref: str | None
    ) -> TenantSubscription | None:
        if not ref:
            return None
        result = await session.execute(
            select(TenantSubscription)
            .where(TenantSubscription.provider == provider.value, TenantSubscription.provider_subscription_id == ref)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _live_for_tenant(
        session: AsyncSession, provider: SubscriptionProvider, tenant_id: str | None
    ) -> TenantSubscription | None:
        if not tenant_id:
            return None
        result = await session.execute(
            select(TenantSubscription)
            .where(
                TenantSubscription.tenant_id == tenant_id,
                TenantSubscription.provider == provider.value,
                TenantSubscription.status.in_(_LIVE_VALUES),
            )
            .order_by(TenantSubscription.starts_at.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _tenant_for_customer(
        session: AsyncSession, provider: SubscriptionProvider, customer_id: str | None
    ) -> str | None:
        if not customer_id:
            return None
        result = await session.execute(
            select(TenantSubscription.tenant_id)
            .where(
                TenantSubscription.provider == provider.value,
                TenantSubscription.provider_customer_id == customer_id,
            )
            .order_by(TenantSubscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _resolve_plan(
        session: AsyncSession,
        *,
        plan_code: str | None,
        provider_key: str,
        provider_plan_ref: str | None,
        fallback_default: bool = True,
    ) -> SubscriptionPlan | None:
        """Plan by explicit code, then by provider price/plan ref, then (optionally) the default plan."""
        plan = None
        if plan_code:
            plan = await get_plan_by_code(session, plan_code)
        if plan is None and provider_plan_ref:
            plan = await find_plan_by_provider_ref(session, provider_key, provider_plan_ref)
        if plan is None and fallback_default:
            plan = await get_default_plan(session)
        return plan

    @staticmethod
    def _apply_refs(subscription: TenantSubscription, refs: ProviderRefs) -> None:
        current = ProviderRefs(
            customer_id=subscription.provider_customer_id,
            subscription_id=subscription.provider_subscription_id,
            plan_ref=subscription.provider_plan_ref,
            email_token=subscription.provider_email_token,
        )
        merged = current.merged_over(refs)
        subscription.provider_customer_id = merged.customer_id
        subscription.provider_subscription_id = merged.subscription_id
        subscription.provider_plan_ref = merged.plan_ref
        subscription.provider_email_token = merged.email_token

    async def _move_to(
        self,
        session: AsyncSession,
        subscription: TenantSubscription,
        status: SubscriptionStatus | None,
        ctx: _Context,
    ) -> bool:
        if status is None or subscription.status == status.value:
            return False
        return await self.subscriptions.apply_transition(
            session,
            subscription,
            status,
            actor=ctx.actor,
            reason=f"{ctx.provider.value.lower()} {ctx.event_type}",
            now=ctx.now,
            audit=False,
        )

    def _adopt_plan(self, subscription: TenantSubscription, plan: SubscriptionPlan | None) -> None:
        if plan is None or plan.id == subscription.plan_id:
            return
        self.subscriptions.swap_plan(subscription, plan)
        if subscription.pending_plan_code == plan.code:
            subscription.pending_plan_code = None
            subscription.pending_change_effective_at = None
            subscription.pending_change_mode = None

    # ── Stripe ───────────────────────────────────────────────────────

    def _stripe_handler(self, event_type: str) -> Handler | None:
        if event_type in (
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
            "customer.subscription.paused",
            "customer.subscription.resumed",
        ):
            return self._stripe_subscription
        if event_type == "checkout.session.completed":
            return self._stripe_checkout_completed
        if event_type in (
            "invoice.paid",
            "invoice.payment_succeeded",
            "invoice.payment_failed",
            "invoice.finalized",
            "invoice.voided",
        ):
            return self._stripe_invoice
        if event_type.startswith("payout."):
            return self._stripe_payout
        if event_type == "charge.refunded":
            return self._stripe_charge_refunded
        if event_type in ("refund.created", "refund.updated"):
            return self._stripe_refund
        if event_type.startswith("charge.dispute."):
            return self._stripe_dispute
        return None

    async def _stripe_subscription(self, session: AsyncSession, obj: dict, ctx: _Context) -> WebhookOutcome:
        refs = normalize_stripe_refs(obj)
        tenant_id = read_string(obj, ("metadata.tenant_id", "metadata.tenantId"))
        plan_code = read_string(obj, ("metadata.plan_code", "metadata.planCode"))

        if ctx.event_type == "customer.subscription.deleted":
            status = SubscriptionStatus.CANCELED
        else:
            status = map_stripe_status(obj.get("status"))

        period_end = from_timestamp(obj.get("current_period_end"))
        if period_end is None:
            items = read_path(obj, "items.data")
            if isinstance(items, list) and items:
                period_end = from_timestamp(items[0].get("current_period_end"))
        trial_end = from_timestamp(obj.get("trial_end"))

        subscription = await self._subscription_by_ref(session, STRIPE, refs.subscription_id)
        plan = await self._resolve_plan(
            session,
            plan_code=plan_code,
            provider_key="stripe_price_id",
            provider_plan_ref=refs.plan_ref,
            fallback_default=subscription is None,
        )

        if subscription is None:
            if not tenant_id:
                tenant_id = await self._tenant_for_customer(session, STRIPE, refs.customer_id)
            if not tenant_id:
                return ctx.skipped("tenant_not_found")
            if plan is None:
                return ctx.skipped("plan_not_found", tenant_id=tenant_id)
            if status is not None and not is_live(status):
                return ctx.skipped("subscription_not_found", tenant_id=tenant_id)
            subscription, replaced = await self.subscriptions.create_subscription(
                session,
                tenant_id=tenant_id,
                plan=plan,
                provider=STRIPE,
                actor=ctx.actor,
                status=status or SubscriptionStatus.ACTIVE,
                refs=refs,
                current_period_end=period_end,
                trial_ends_at=trial_end,
                provider_metadata={"stripe_status": obj.get("status")},
                now=ctx.now,
                audit=False,
            )
            subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
            return ctx.outcome("processed", subscription=subscription, action="created", replaced=replaced)

        previous = subscription.status
        await self._move_to(session, subscription, status, ctx)
        if is_terminal(subscription.status):
            self._apply_refs(subscription, refs)
            return ctx.outcome("processed", subscription=subscription, action="synced", previous=previous)

        self._apply_refs(subscription, refs)
        self._adopt_plan(subscription, plan)
        subscription.current_period_end = period_end or subscription.current_period_end
        subscription.trial_ends_at = trial_end or subscription.trial_ends_at
        subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
        subscription.provider_metadata = {**(subscription.provider_metadata or {}), "stripe_status": obj.get("status")}
        return ctx.outcome(
            "processed", subscription=subscription, action="synced", previous=previous, status=subscription.status
        )

    async def _stripe_checkout_completed(self, session: AsyncSession, obj: dict, ctx: _Context) -> WebhookOutcome:
        if obj.get("mode") not in (None, "subscription"):
            return ctx.skipped("not_a_subscription_checkout")

        refs = normalize_stripe_refs(obj)
        tenant_id = read_string(obj, ("metadata.tenant_id", "client_reference_id"))
        plan_code = read_string(obj, ("metadata.plan_code",))
        if not tenant_id or not refs.subscription_id:
            logger.warning("checkout_completed_missing_metadata", event_id=ctx.event_id)
            return ctx.skipped("missing_metadata", tenant_id=tenant_id)

        subscription = await self._subscription_by_ref(session, STRIPE, refs.subscription_id)
        if subscription is not None:
            self._apply_refs(subscription, refs)
            return ctx.outcome("processed", subscription=subscription, action="linked")

        plan = await self._resolve_plan(
            session, plan_code=plan_code, provider_key="stripe_price_id", provider_plan_ref=None
        )
        if plan is None:
            return ctx.skipped("plan_not_found", tenant_id=tenant_id)

        subscription, replaced = await self.subscriptions.create_subscription(
            session,
            tenant_id=tenant_id,
            plan=plan,
            provider=STRIPE,
            actor=ctx.actor,
            refs=refs,
            now=ctx.now,
            audit=False,
        )
        return ctx.outcome("processed", subscription=subscription, action="created", replaced=replaced)

    async def _stripe_invoice(self, session: AsyncSession, obj: dict, ctx: _Context) -> WebhookOutcome:
        invoice_id = obj.get("id")
        if not invoice_id:
            return ctx.skipped("missing_invoice_id")

        subscription_ref = read_string(
            obj,
            ("subscription", "subscription.id", "parent.subscription_details.subscription"),
            lambda v: v.startswith("sub_"),
        )
        subscription = await self._subscription_by_ref(session, STRIPE, subscription_ref)
        tenant_id = subscription.tenant_id if subscription else read_string(
            obj,
            (
                "metadata.tenant_id",
                "subscription_details.metadata.tenant_id",
                "parent.subscription_details.metadata.tenant_id",
            ),
        )

        status = {
            "invoice.paid": "paid",
            "invoice.payment_succeeded": "paid",
            "invoice.payment_failed": "failed",
            "invoice.voided": "void",
        }.get(ctx.event_type) or obj.get("status") or "open"
        paid = status == "paid"

        await upsert_mirror(
            session,
            Invoice,
            provider=STRIPE.value,
            provider_ref=invoice_id,
            values={
                "tenant_id": tenant_id,
                "subscription_id": subscription.id if subscription else None,
                "amount_minor": _minor(obj.get("amount_paid") if paid else obj.get("amount_due") or obj.get("total")),
                "currency": _currency(obj.get("currency")) or "USD",
                "status": status,
                "period_start": from_timestamp(obj.get("period_start")),
                "period_end": from_timestamp(obj.get("period_end")),
                "paid_at": from_timestamp(read_path(obj, "status_transitions.paid_at")) if paid else None,
                "raw": {
                    "id": invoice_id,
                    "number": obj.get("number"),
                    "hosted_invoice_url": obj.get("hosted_invoice_url"),
                },
            },
        )

        if subscription is None:
            return ctx.outcome("processed", tenant_id=tenant_id, action="invoice_mirrored", invoice=invoice_id)

        changed = False
        if paid:
            changed = await self.subscriptions.record_payment(
                session, subscription, succeeded=True, actor=ctx.actor, now=ctx.now, audit=False
            )
        elif ctx.event_type == "invoice.payment_failed":
            changed = await self.subscriptions.record_payment(
                session, subscription, succeeded=False, actor=ctx.actor, now=ctx.now, audit=False
            )
        return ctx.outcome(
            "processed",
            subscription=subscription,
            action="invoice_mirrored",
            invoice=invoice_id,
            status_changed=changed,
            status=subscription.status,
        )

    async def _stripe_payout(self, session: AsyncSession, obj: dict, ctx: _Context) -> WebhookOutcome:
        payout_id = obj.get("id")
        if not payout_id:
            return ctx.skipped("missing_payout_id")
        tenant_id = read_string(obj, ("metadata.tenant_id",))
        await upsert_mirror(
            session,
            Payout,
            provider=STRIPE.value,
            provider_ref=payout_id,
            values={
                "tenant_id": tenant_id,
                "amount_minor": _minor(obj.get("amount")),
                "currency": _currency(obj.get("currency")) or "USD",
                "status": obj.get("status") or ctx.event_type.removeprefix("payout."),
                "arrival_date": from_timestamp(obj.get("arrival_date")),
                "raw": {"id": payout_id, "method": obj.get("method"), "type": obj.get("type")},
            },
        )
        return ctx.outcome("processed", tenant_id=tenant_id, action="payout_mirrored", payout=payout_id)

    async def _mirror_stripe_refund(self, session: AsyncSession, refund: dict, charge: dict | None) -> str:
        charge = charge or {}
        payment_ref = refund.get("charge") if isinstance(refund.get("charge"), str) else charge.get("id")
        await upsert_mirror(
            session,
            Refund,
            provider=STRIPE.value,
            provider_ref=refund["id"],
            values={
                "tenant_id": (
                    read_string(refund, ("metadata.tenant_id",)) or read_string(charge, ("metadata.tenant_id",))
                ),
                "payment_ref": payment_ref,
                "amount_minor": _minor(refund.get("amount")),
                "currency": _currency(refund.get("currency") or charge.get("currency")) or "USD",
                "status": refund.get("status") or "pending",
                "reason": refund.get("reason"),
                "raw": {"id": refund["id"], "payment_intent": refund.get("payment_intent")},
            },
        )
        return refund["id"]

    async def _stripe_charge_refunded(self, session: AsyncSession, obj: dict, ctx: _Context) -> WebhookOutcome:
        refunds = read_path(obj, "refunds.data") or []
        mirrored = [await self._mirror_stripe_refund(session, refund, obj) for refund in refunds if refund.get("id")]
        if not mirrored and obj.get("id"):
            # Older API versions omit the refunds list; record the charge-level total
            mirrored.append(
                await self._mirror_stripe_refund(
                    session,
                    {"id": f"{obj['id']}:refund", "amount": obj.get("amount_refunded"), "status": "succeeded"},
                    obj,
                )
            )
        tenant_id = read_string(obj, ("metadata.tenant_id",))
        return ctx.outcome("processed", tenant_id=tenant_id, action="refunds_mirrored", refunds=mirrored)

    async def _stripe_refund(self, session: AsyncSession, obj: dict, ctx: _Context) -> WebhookOutcome:
        if not obj.get("id"):
            return ctx.skipped("missing_refund_id")
        refund_id = await self._mirror_stripe_refund(session, obj, None)
        tenant_id = read_string(obj, ("metadata.tenant_id",))
        return ctx.outcome("processed", tenant_id=tenant_id, action="refund_mirrored", refund=refund_id)

    async def _stripe_dispute(self, session: AsyncSession, obj: dict, ctx: _Context) -> WebhookOutcome:
        dispute_id = obj.get("id")
        if not dispute_id:
            return ctx.skipped("missing_dispute_id")
        tenant_id = read_string(obj, ("metadata.tenant_id",))
        await upsert_mirror(
            session,
            Dispute,
            provider=STRIPE.value,
            provider_ref=dispute_id,
            values={
                "tenant_id": tenant_id,
                "payment_ref": read_string(obj, ("charge", "charge.id")),
                "amount_minor": _minor(obj.get("amount")),
                "currency": _currency(obj.get("currency")) or "USD",
                "status": obj.get("status") or "needs_response",
                "reason": obj.get("reason"),
                "evidence_due_by": from_timestamp(read_path(obj, "evidence_details.due_by")),
                "raw": {"id": dispute_id, "is_charge_refundable": obj.get("is_charge_refundable")},
            },
        )
        return ctx.outcome("processed", tenant_id=tenant_id, action="dispute_mirrored", dispute=dispute_id)

    # ── Paystack ─────────────────────────────────────────────────────

    def _paystack_handler(self, event_type: str) -> Handler | None:
        if event_type in ("subscription.create", "subscription.disable", "subscription.not_renew"):
            return self._paystack_subscription
        if event_type == "charge.success":
            return self._paystack_charge_success
        if event_type in ("invoice.create", "invoice.update", "invoice.payment_failed"):
            return self._paystack_invoice
        if event_type.startswith("refund."):
            return self._paystack_refund
        if event_type.startswith("charge.dispute."):
            return self._paystack_dispute
        return None

    async def _paystack_locate(
        self, session: AsyncSession, data: dict, refs: ProviderRefs
    ) -> tuple[TenantSubscription | None, str | None]:
        """Find the row an event is about, adopting a checkout-created row without a code."""
        subscription = await self._subscription_by_ref(session, PAYSTACK, refs.subscription_id)
        if subscription is not None:
            return subscription, subscription.tenant_id

        tenant_id = read_string(data, ("metadata.tenant_id", "metadata.tenantId"))
        if not tenant_id:
            tenant_id = await self._tenant_for_customer(session, PAYSTACK, refs.customer_id)
        live = await self._live_for_tenant(session, PAYSTACK, tenant_id)
        if live is not None and (not live.provider_subscription_id or not refs.subscription_id):
            return live, tenant_id
        return None, tenant_id

    async def _paystack_subscription(self, session: AsyncSession, data: dict, ctx: _Context) -> WebhookOutcome:
        refs = normalize_paystack_refs(data)
        if not refs.subscription_id and not refs.plan_ref:
            return ctx.skipped("missing_subscription_refs")

        subscription, tenant_id = await self._paystack_locate(session, data, refs)
        remote_status = str(data.get("status") or "active").lower()
        period_end = parse_paystack_datetime(data.get("next_payment_date"))

        if ctx.event_type == "subscription.disable":
            status = SubscriptionStatus.CANCELED
        else:
            status = map_paystack_status(remote_status)
        non_renewing = ctx.event_type == "subscription.not_renew" or remote_status == "non-renewing"

        if subscription is None:
            if not tenant_id:
                return ctx.skipped("tenant_not_found")
            if status is not None and not is_live(status):
                return ctx.skipped("subscription_not_found", tenant_id=tenant_id)
            plan = await self._resolve_plan(
                session,
                plan_code=read_string(data, ("metadata.plan_code",)),
                provider_key="paystack_plan_code",
                provider_plan_ref=refs.plan_ref,
            )
            if plan is None:
                return ctx.skipped("plan_not_found", tenant_id=tenant_id)
            subscription, replaced = await self.subscriptions.create_subscription(
                session,
                tenant_id=tenant_id,
                plan=plan,
                provider=PAYSTACK,
                actor=ctx.actor,
                status=status or SubscriptionStatus.ACTIVE,
                refs=refs,
                current_period_end=period_end,
                provider_metadata={"paystack_status": remote_status},
                now=ctx.now,
                audit=False,
            )
            subscription.cancel_at_period_end = non_renewing and period_end is not None
            return ctx.outcome("processed", subscription=subscription, action="created", replaced=replaced)

        previous = subscription.status
        self._apply_refs(subscription, refs)
        subscription.current_period_end = period_end or subscription.current_period_end
        subscription.provider_metadata = {**(subscription.provider_metadata or {}), "paystack_status": remote_status}

        if (
            status == SubscriptionStatus.CANCELED
            and subscription.cancel_at_period_end
            and subscription.current_period_end is not None
            and subscription.current_period_end > ctx.now
        ):
            # Disabled for a period-end cancellation; the sweep ends it on time
            return ctx.outcome("processed", subscription=subscription, action="cancel_deferred")

        await self._move_to(session, subscription, status, ctx)
        if is_live(subscription.status) and non_renewing and subscription.current_period_end is not None:
            subscription.cancel_at_period_end = True
        return ctx.outcome(
            "processed", subscription=subscription, action="synced", previous=previous, status=subscription.status
        )

    async def _paystack_charge_success(self, session: AsyncSession, data: dict, ctx: _Context) -> WebhookOutcome:
        refs = normalize_paystack_refs(data)
        plan_code = read_string(data, ("metadata.plan_code",))
        if not refs.plan_ref and not plan_code:
            return ctx.skipped("not_a_subscription_charge")

        subscription, tenant_id = await self._paystack_locate(session, data, refs)
        paid_at = parse_paystack_datetime(data.get("paid_at") or data.get("paidAt")) or ctx.now

        if subscription is None:
            if not tenant_id:
                return ctx.skipped("tenant_not_found")
            plan = await self._resolve_plan(
                session, plan_code=plan_code, provider_key="paystack_plan_code", provider_plan_ref=refs.plan_ref
            )
            if plan is None:
                return ctx.skipped("plan_not_found", tenant_id=tenant_id)
            # Checkout paid; subscription.create fills in the subscription code
            subscription, replaced = await self.subscriptions.create_subscription(
                session,
                tenant_id=tenant_id,
                plan=plan,
                provider=PAYSTACK,
                actor=ctx.actor,
                status=SubscriptionStatus.ACTIVE,
                refs=refs,
                now=ctx.now,
                audit=False,
            )
            subscription.last_payment_at = paid_at
            return ctx.outcome("processed", subscription=subscription, action="created", replaced=replaced)

        self._apply_refs(subscription, refs)
        changed = await self.subscriptions.record_payment(
            session, subscription, succeeded=True, actor=ctx.actor, now=paid_at, audit=False
        )
        return ctx.outcome("processed", subscription=subscription, action="payment_recorded", status_changed=changed)

    async def _paystack_invoice(self, session: AsyncSession, data: dict, ctx: _Context) -> WebhookOutcome:
        invoice_code = read_string(data, ("invoice_code", "id"))
        if invoice_code is None and data.get("id") is not None:
            invoice_code = str(data["id"])
        if not invoice_code:
            return ctx.skipped("missing_invoice_code")

        refs = normalize_paystack_refs(data)
        subscription = await self._subscription_by_ref(session, PAYSTACK, refs.subscription_id)
        tenant_id = subscription.tenant_id if subscription else read_string(data, ("metadata.tenant_id",))

        failed = ctx.event_type == "invoice.payment_failed" or str(data.get("status")).lower() == "failed"
        paid = not failed and (data.get("paid") is True or str(data.get("status")).lower() == "success")
        status = "failed" if failed else "paid" if paid else "open"

        await upsert_mirror(
            session,
            Invoice,
            provider=PAYSTACK.value,
            provider_ref=invoice_code,
            values={
                "tenant_id": tenant_id,
                "subscription_id": subscription.id if subscription else None,
                "amount_minor": _minor(data.get("amount")),
                "currency": _currency(data.get("currency") or read_path(data, "transaction.currency")) or "NGN",
                "status": status,
                "period_start": parse_paystack_datetime(data.get("period_start")),
                "period_end": parse_paystack_datetime(data.get("period_end")),
                "paid_at": parse_paystack_datetime(data.get("paid_at")) if paid else None,
                "raw": {"invoice_code": invoice_code, "description": data.get("description")},
            },
        )

        if subscription is None:
            return ctx.outcome("processed", tenant_id=tenant_id, action="invoice_mirrored", invoice=invoice_code)

        self._apply_refs(subscription, refs)
        changed = False
        if paid or failed:
            changed = await self.subscriptions.record_payment(
                session, subscription, succeeded=paid, actor=ctx.actor, now=ctx.now, audit=False
            )
        return ctx.outcome(
            "processed",
            subscription=subscription,
            action="invoice_mirrored",
            invoice=invoice_code,
            status_changed=changed,
            status=subscription.status,
        )

    async def _paystack_refund(self, session: AsyncSession, data: dict, ctx: _Context) -> WebhookOutcome:
        refund_ref = read_string(data, ("refund_reference", "reference"))
        if refund_ref is None and data.get("id") is not None:
            refund_ref = str(data["id"])
        if not refund_ref:
            return ctx.skipped("missing_refund_reference")
        tenant_id = read_string(data, ("metadata.tenant_id",))
        await upsert_mirror(
            session,
            Refund,
            provider=PAYSTACK.value,
            provider_ref=refund_ref,
            values={
                "tenant_id": tenant_id,
                "payment_ref": read_string(data, ("transaction_reference", "transaction.reference")),
                "amount_minor": _minor(data.get("amount")),
                "currency": _currency(data.get("currency")) or "NGN",
                "status": data.get("status") or ctx.event_type.removeprefix("refund."),
                "reason": data.get("customer_note") or data.get("merchant_note"),
                "raw": {"refund_reference": refund_ref, "status": data.get("status")},
            },
        )
        return ctx.outcome("processed", tenant_id=tenant_id, action="refund_mirrored", refund=refund_ref)

    async def _paystack_dispute(self, session: AsyncSession, data: dict, ctx: _Context) -> WebhookOutcome:
        dispute_id = data.get("id")
        if dispute_id is None:
            return ctx.skipped("missing_dispute_id")
        dispute_ref = str(dispute_id)
        tenant_id = read_string(data, ("metadata.tenant_id", "transaction.metadata.tenant_id"))
        await upsert_mirror(
            session,
            Dispute,
            provider=PAYSTACK.value,
            provider_ref=dispute_ref,
            values={
                "tenant_id": tenant_id,
                "payment_ref": read_string(data, ("transaction.reference",)),
                "amount_minor": _minor(data.get("refund_amount") or read_path(data, "transaction.amount")),
                "currency": _currency(data.get("currency") or read_path(data, "transaction.currency")) or "NGN",
                "status": data.get("status") or "awaiting-merchant-feedback",
                "reason": data.get("category"),
                "evidence_due_by": parse_paystack_datetime(data.get("dueAt") or data.get("due_at")),
                "raw": {"id": dispute_ref, "domain": data.get("domain")},
            },
        )
        return ctx.outcome("processed", tenant_id=tenant_id, action="dispute_mirrored", dispute=dispute_ref)
