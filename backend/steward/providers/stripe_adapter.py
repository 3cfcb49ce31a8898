"""Stripe adapter built on the official SDK's async methods."""

import json
from datetime import UTC, datetime

import stripe
import structlog

from steward.core.exceptions import ProviderError, ValidationError
from steward.domain.provider_refs import ProviderRefs, normalize_stripe_refs
from steward.domain.subscription_status import SubscriptionProvider, SubscriptionStatus
from steward.providers.base import (
    BillingProviderAdapter,
    CheckoutSession,
    PayoutRecord,
    ProviderCapabilities,
)

logger = structlog.get_logger(__name__)

STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def map_stripe_status(status: str | None) -> SubscriptionStatus | None:
    if not status:
        return None
    return STRIPE_STATUS_MAP.get(status.lower())


def from_timestamp(value) -> datetime | None:
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class StripeProvider(BillingProviderAdapter):
    provider = SubscriptionProvider.STRIPE
    capabilities = ProviderCapabilities(
        hosted_checkout=True,
        immediate_plan_change=True,
        billing_portal=True,
        resume=True,
    )

    def __init__(self, secret_key: str, timeout: float, webhook_secret: str = ""):
        super().__init__(timeout)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def webhook_configured(self) -> bool:
        return bool(self.webhook_secret)

    def verify_webhook(self, body: bytes, signature: str | None) -> dict:
        if not signature:
            raise ValidationError("Missing stripe-signature header")
        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except ValueError as exc:
            raise ValidationError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise ValidationError("Invalid signature") from exc
        # Work on plain JSON rather than StripeObject instances
        return json.loads(body)

    def _configure(self) -> None:
        if not self.secret_key:
            raise ProviderError(self.name, "Stripe is not configured")
        stripe.api_key = self.secret_key

    async def _stripe(self, operation: str, awaitable):
        try:
            return await self._call(operation, awaitable)
        except stripe.StripeError as exc:
            logger.warning("stripe_call_failed", operation=operation, error=str(exc), error_type=type(exc).__name__)
            raise ProviderError(self.name, exc.user_message or str(exc)) from exc

    async def _subscription(self, subscription_id: str):
        return await self._stripe("subscription.retrieve", stripe.Subscription.retrieve_async(subscription_id))

    async def create_checkout(
        self,
        *,
        tenant_id: str,
        plan,
        customer_id: str | None,
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if not plan.stripe_price_id:
            raise ValidationError(f"Plan '{plan.code}' is not available through Stripe")
        self._configure()

        if not customer_id:
            customer = await self._stripe(
                "customer.create",
                stripe.Customer.create_async(email=customer_email, metadata={"tenant_id": tenant_id}),
            )
            customer_id = customer.id

        metadata = {"tenant_id": tenant_id, "plan_code": plan.code}
        subscription_data: dict = {"metadata": metadata}
        if plan.trial_days > 0:
            subscription_data["trial_period_days"] = plan.trial_days

        session = await self._stripe(
            "checkout.session.create",
            stripe.checkout.Session.create_async(
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": plan.stripe_price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=tenant_id,
                metadata=metadata,
                subscription_data=subscription_data,
            ),
        )
        return CheckoutSession(url=session.url, reference=session.id)

    async def change_plan_now(self, subscription, target_plan) -> None:
        if not target_plan.stripe_price_id:
            raise ValidationError(f"Plan '{target_plan.code}' is not available through Stripe")
        if not subscription.provider_subscription_id:
            raise ValidationError("Subscription has no Stripe reference; run the metadata backfill first")
        self._configure()

        remote = await self._subscription(subscription.provider_subscription_id)
        item_id = remote["items"]["data"][0]["id"]
        await self._stripe(
            "subscription.modify",
            stripe.Subscription.modify_async(
                subscription.provider_subscription_id,
                items=[{"id": item_id, "price": target_plan.stripe_price_id}],
                proration_behavior="create_prorations",
                metadata={"tenant_id": subscription.tenant_id, "plan_code": target_plan.code},
            ),
        )

    async def schedule_plan_change(self, subscription, target_plan, effective_at: datetime) -> dict | None:
        if not target_plan.stripe_price_id:
            raise ValidationError(f"Plan '{target_plan.code}' is not available through Stripe")
        if not subscription.provider_subscription_id:
            raise ValidationError("Subscription has no Stripe reference; run the metadata backfill first")
        self._configure()

        remote = await self._subscription(subscription.provider_subscription_id)
        current_price = remote["items"]["data"][0]["price"]["id"]
        schedule_id = remote.get("schedule")
        if not schedule_id:
            schedule = await self._stripe(
                "subscription_schedule.create",
                stripe.SubscriptionSchedule.create_async(from_subscription=subscription.provider_subscription_id),
            )
            schedule_id = schedule.id
            phase_start = schedule["phases"][0]["start_date"]
        else:
            schedule = await self._stripe(
                "subscription_schedule.retrieve", stripe.SubscriptionSchedule.retrieve_async(schedule_id)
            )
            phase_start = schedule["current_phase"]["start_date"]

        await self._stripe(
            "subscription_schedule.modify",
            stripe.SubscriptionSchedule.modify_async(
                schedule_id,
                end_behavior="release",
                phases=[
                    {
                        "items": [{"price": current_price, "quantity": 1}],
                        "start_date": phase_start,
                        "end_date": int(effective_at.timestamp()),
                    },
                    {
                        "items": [{"price": target_plan.stripe_price_id, "quantity": 1}],
                        "metadata": {"tenant_id": subscription.tenant_id, "plan_code": target_plan.code},
                    },
                ],
            ),
        )
        return {"stripe_schedule_id": schedule_id}

    async def cancel(self, subscription, at_period_end: bool) -> None:
        if not subscription.provider_subscription_id:
            raise ValidationError("Subscription has no Stripe reference; run the metadata backfill first")
        self._configure()
        if at_period_end:
            await self._stripe(
                "subscription.modify",
                stripe.Subscription.modify_async(subscription.provider_subscription_id, cancel_at_period_end=True),
            )
        else:
            await self._stripe(
                "subscription.cancel", stripe.Subscription.cancel_async(subscription.provider_subscription_id)
            )

    async def resume(self, subscription) -> None:
        if not subscription.provider_subscription_id:
            raise ValidationError("Subscription has no Stripe reference; run the metadata backfill first")
        self._configure()
        await self._stripe(
            "subscription.modify",
            stripe.Subscription.modify_async(subscription.provider_subscription_id, cancel_at_period_end=False),
        )

    async def create_portal_session(self, subscription, return_url: str) -> str:
        if not subscription.provider_customer_id:
            raise ValidationError("No billing account found. Please subscribe first.")
        self._configure()
        session = await self._stripe(
            "billing_portal.session.create",
            stripe.billing_portal.Session.create_async(
                customer=subscription.provider_customer_id,
                return_url=return_url,
            ),
        )
        return session.url

    def normalize_refs(self, payload: dict | None) -> ProviderRefs:
        return normalize_stripe_refs(payload)

    async def fetch_refs(self, subscription_ref: str) -> ProviderRefs | None:
        self._configure()
        remote = await self._subscription(subscription_ref)
        customer = remote.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return ProviderRefs(
            customer_id=customer,
            subscription_id=remote.get("id"),
            plan_ref=remote["items"]["data"][0]["price"]["id"] if remote["items"]["data"] else None,
        )

    async def list_payouts(self, since: datetime | None, limit: int) -> list[PayoutRecord]:
        self._configure()
        params: dict = {"limit": min(limit, 100)}
        if since is not None:
            params["created"] = {"gte": int(since.timestamp())}
        page = await self._stripe("payout.list", stripe.Payout.list_async(**params))
        return [
            PayoutRecord(
                provider_ref=payout["id"],
                amount_minor=int(payout["amount"]),
                currency=str(payout["currency"]).upper(),
                status=payout["status"],
                arrival_date=from_timestamp(payout.get("arrival_date")),
                raw={"id": payout["id"], "method": payout.get("method"), "type": payout.get("type")},
            )
            for payout in page["data"]
        ]
