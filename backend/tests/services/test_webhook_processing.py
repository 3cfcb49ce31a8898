"""Tests for WebhookService: Stripe and Paystack event handling end to end."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from steward.db.models.invoice import Invoice
from steward.db.models.payout import Payout
from steward.db.models.refund import Refund
from steward.db.models.tenant_subscription import TenantSubscription
from steward.db.models.webhook_event import WebhookEvent
from steward.domain.subscription_status import SubscriptionProvider, SubscriptionStatus
from steward.services.webhook_ledger import WebhookLedger
from steward.services.webhook_service import WebhookService

pytestmark = pytest.mark.integration


def ts(value: datetime) -> int:
    return int(value.timestamp())


def stripe_event(event_id: str, event_type: str, obj: dict) -> tuple[dict, bytes]:
    event = {"id": event_id, "type": event_type, "data": {"object": obj}}
    return event, json.dumps(event).encode()


def paystack_event(event_type: str, data: dict) -> tuple[dict, bytes]:
    payload = {"event": event_type, "data": data}
    return payload, json.dumps(payload).encode()


def stripe_subscription(status: str = "active", **fields) -> dict:
    period_end = datetime.now(UTC) + timedelta(days=30)
    obj = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "current_period_end": ts(period_end),
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_growth"}}]},
        "metadata": {"tenant_id": "org_a", "plan_code": "growth"},
    }
    obj.update(fields)
    return obj


@pytest.fixture
def webhooks(session_factory, subscriptions):
    return WebhookService(session_factory, subscriptions, WebhookLedger(session_factory))


@pytest.fixture
async def plans(make_plan):
    starter = await make_plan(
        "starter", 4900, is_default=True, stripe_price_id="price_starter", paystack_plan_code="PLN_starter"
    )
    growth = await make_plan("growth", 14900, stripe_price_id="price_growth", paystack_plan_code="PLN_growth")
    return starter, growth


async def tenant_rows(session_factory, tenant_id: str) -> list[TenantSubscription]:
    async with session_factory() as session:
        result = await session.execute(
            select(TenantSubscription)
            .where(TenantSubscription.tenant_id == tenant_id)
            .order_by(TenantSubscription.created_at)
        )
        return list(result.scalars().all())


async def all_rows(session_factory, model) -> list:
    async with session_factory() as session:
        return list((await session.execute(select(model))).scalars().all())


# ── Stripe ───────────────────────────────────────────────────────────


async def test_subscription_created_opens_a_live_row(webhooks, plans, session_factory, audit_count):
    trial_end = datetime.now(UTC) + timedelta(days=14)
    event, body = stripe_event(
        "evt_1", "customer.subscription.created", stripe_subscription("trialing", trial_end=ts(trial_end))
    )

    outcome = await webhooks.handle_stripe(event, body)

    assert outcome.status == "processed"
    assert outcome.details["action"] == "created"
    [row] = await tenant_rows(session_factory, "org_a")
    assert row.status == SubscriptionStatus.TRIALING.value
    assert row.provider == SubscriptionProvider.STRIPE.value
    assert row.plan.code == "growth"
    assert row.provider_customer_id == "cus_123"
    assert row.provider_subscription_id == "sub_123"
    assert row.provider_plan_ref == "price_growth"
    assert row.trial_ends_at == trial_end.replace(microsecond=0)
    assert await audit_count("billing.webhook.stripe", "org_a") == 1


async def test_replayed_event_is_a_noop(webhooks, plans, session_factory, audit_count):
    event, body = stripe_event("evt_1", "customer.subscription.created", stripe_subscription())

    first = await webhooks.handle_stripe(event, body)
    second = await webhooks.handle_stripe(event, body)

    assert first.status == "processed"
    assert second.status == "duplicate"
    assert len(await tenant_rows(session_factory, "org_a")) == 1
    assert await audit_count("billing.webhook.stripe") == 1


async def test_subscription_updates_move_the_state_machine(webhooks, plans, session_factory, audit_count):
    await webhooks.handle_stripe(*stripe_event("evt_1", "customer.subscription.created", stripe_subscription()))
    await webhooks.handle_stripe(
        *stripe_event("evt_2", "customer.subscription.updated", stripe_subscription("past_due"))
    )

    [row] = await tenant_rows(session_factory, "org_a")
    assert row.status == SubscriptionStatus.PAST_DUE.value
    assert row.past_due_since is not None

    await webhooks.handle_stripe(
        *stripe_event(
            "evt_3",
            "customer.subscription.updated",
            stripe_subscription(
                "active", cancel_at_period_end=True, items={"data": [{"price": {"id": "price_starter"}}]}
            ),
        )
    )

    [row] = await tenant_rows(session_factory, "org_a")
    assert row.status == SubscriptionStatus.ACTIVE.value
    assert row.past_due_since is None
    assert row.cancel_at_period_end is True
    # metadata.plan_code still names growth and wins over the price
    assert row.plan.code == "growth"
    assert await audit_count("billing.webhook.stripe", "org_a") == 3
    # Webhook transitions are covered by the single per-event record
    assert await audit_count("billing.subscription.status_changed", "org_a") == 0


async def test_price_change_without_plan_metadata_adopts_the_plan(webhooks, plans, session_factory):
    await webhooks.handle_stripe(*stripe_event("evt_1", "customer.subscription.created", stripe_subscription()))
    obj = stripe_subscription(items={"data": [{"price": {"id": "price_starter"}}]}, metadata={"tenant_id": "org_a"})

    await webhooks.handle_stripe(*stripe_event("evt_2", "customer.subscription.updated", obj))

    [row] = await tenant_rows(session_factory, "org_a")
    assert row.plan.code == "starter"
    assert row.provider_plan_ref == "price_starter"


async def test_out_of_order_event_against_terminal_row_is_skipped(webhooks, plans, session_factory, audit_count):
    await webhooks.handle_stripe(*stripe_event("evt_1", "customer.subscription.created", stripe_subscription()))
    await webhooks.handle_stripe(
        *stripe_event("evt_2", "customer.subscription.deleted", stripe_subscription("canceled"))
    )
    late = await webhooks.handle_stripe(
        *stripe_event("evt_0", "customer.subscription.updated", stripe_subscription("past_due"))
    )

    assert late.status == "skipped"
    assert late.details == {"reason": "invalid_transition", "current": "CANCELED", "target": "PAST_DUE"}
    [row] = await tenant_rows(session_factory, "org_a")
    assert row.status == SubscriptionStatus.CANCELED.value
    assert row.ended_at is not None
    assert await audit_count("billing.webhook.stripe") == 3


async def test_unknown_tenant_is_skipped(webhooks, plans, session_factory):
    obj = stripe_subscription(metadata={}, customer="cus_unknown")

    outcome = await webhooks.handle_stripe(*stripe_event("evt_1", "customer.subscription.created", obj))

    assert outcome.status == "skipped"
    assert outcome.details["reason"] == "tenant_not_found"
    assert await all_rows(session_factory, TenantSubscription) == []


async def test_unhandled_event_type_is_ignored_but_recorded(webhooks, session_factory, audit_count):
    outcome = await webhooks.handle_stripe(*stripe_event("evt_1", "customer.created", {"id": "cus_1"}))

    assert outcome.status == "ignored"
    assert await audit_count("billing.webhook.stripe") == 1
    [event] = await all_rows(session_factory, WebhookEvent)
    assert event.status == "PROCESSED"


async def test_invoice_events_mirror_and_drive_dunning(webhooks, plans, session_factory):
    await webhooks.handle_stripe(*stripe_event("evt_1", "customer.subscription.created", stripe_subscription()))
    invoice = {
        "id": "in_1",
        "subscription": "sub_123",
        "amount_due": 14900,
        "amount_paid": 0,
        "currency": "usd",
        "status": "open",
    }

    failed = await webhooks.handle_stripe(*stripe_event("evt_2", "invoice.payment_failed", invoice))
    assert failed.details["status"] == SubscriptionStatus.PAST_DUE.value

    paid_at = datetime.now(UTC)
    paid = await webhooks.handle_stripe(
        *stripe_event(
            "evt_3",
            "invoice.paid",
            {**invoice, "amount_paid": 14900, "status": "paid", "status_transitions": {"paid_at": ts(paid_at)}},
        )
    )
    assert paid.details["status"] == SubscriptionStatus.ACTIVE.value

    [row] = await tenant_rows(session_factory, "org_a")
    assert row.status == SubscriptionStatus.ACTIVE.value
    assert row.last_payment_at is not None

    [mirror] = await all_rows(session_factory, Invoice)
    assert mirror.provider_ref == "in_1"
    assert mirror.tenant_id == "org_a"
    assert mirror.subscription_id == row.id
    assert mirror.status == "paid"
    assert mirror.amount_minor == 14900
    assert mirror.currency == "USD"
    assert mirror.paid_at == paid_at.replace(microsecond=0)


async def test_failed_renewal_on_an_existing_row_is_persisted(
    webhooks, plans, make_subscription, load_subscription, session_factory
):
    _, growth = plans
    subscription = await make_subscription(
        "org_a", growth, provider=SubscriptionProvider.STRIPE, provider_subscription_id="sub_123"
    )
    invoice = {"id": "in_9", "subscription": "sub_123", "amount_due": 14900, "currency": "usd", "status": "open"}

    outcome = await webhooks.handle_stripe(*stripe_event("evt_9", "invoice.payment_failed", invoice))

    assert outcome.status == "processed"
    assert outcome.details["status_changed"] is True
    row = await load_subscription(subscription.id)
    assert row.status == SubscriptionStatus.PAST_DUE.value
    assert row.past_due_since is not None
    [ledger_row] = await all_rows(session_factory, WebhookEvent)
    assert ledger_row.status == "PROCESSED"


async def test_payout_and_refund_mirrors(webhooks, session_factory):
    await webhooks.handle_stripe(
        *stripe_event("evt_1", "payout.paid", {"id": "po_1", "amount": 50000, "currency": "usd", "status": "paid"})
    )
    await webhooks.handle_stripe(
        *stripe_event(
            "evt_2",
            "charge.refunded",
            {
                "id": "ch_1",
                "currency": "usd",
                "metadata": {"tenant_id": "org_a"},
                "refunds": {"data": [{"id": "re_1", "amount": 500, "status": "succeeded"}]},
            },
        )
    )

    [payout] = await all_rows(session_factory, Payout)
    assert (payout.provider_ref, payout.amount_minor, payout.status) == ("po_1", 50000, "paid")
    [refund] = await all_rows(session_factory, Refund)
    assert (refund.provider_ref, refund.payment_ref, refund.tenant_id) == ("re_1", "ch_1", "org_a")


async def test_handler_failure_marks_the_event_failed_and_allows_retry(
    webhooks, plans, session_factory, audit_count
):
    event, body = stripe_event("evt_1", "customer.subscription.created", stripe_subscription())

    with patch.object(webhooks, "_stripe_subscription", new_callable=AsyncMock, side_effect=RuntimeError("db down")):
        with pytest.raises(RuntimeError):
            await webhooks.handle_stripe(event, body)

    [ledger_row] = await all_rows(session_factory, WebhookEvent)
    assert ledger_row.status == "FAILED"
    assert ledger_row.last_error == "RuntimeError: db down"
    assert await audit_count("billing.webhook.stripe") == 0

    outcome = await webhooks.handle_stripe(event, body)

    assert outcome.status == "processed"
    [ledger_row] = await all_rows(session_factory, WebhookEvent)
    assert ledger_row.status == "PROCESSED"
    assert ledger_row.attempts == 2
    assert len(await tenant_rows(session_factory, "org_a")) == 1


# ── Paystack ─────────────────────────────────────────────────────────


def paystack_subscription_data(status: str = "active", **fields) -> dict:
    data = {
        "subscription_code": "SUB_abc",
        "email_token": "tok_abc",
        "status": status,
        "next_payment_date": (datetime.now(UTC) + timedelta(days=30)).isoformat(),
        "customer": {"customer_code": "CUS_abc", "email": "pastor@church.test"},
        "plan": {"plan_code": "PLN_growth"},
    }
    data.update(fields)
    return data


async def test_paystack_checkout_then_subscription_create(webhooks, plans, session_factory, audit_count):
    charge = {
        "id": 1001,
        "reference": "ref_1",
        "amount": 14900,
        "paid_at": datetime.now(UTC).isoformat(),
        "customer": {"customer_code": "CUS_abc"},
        "plan": {"plan_code": "PLN_growth"},
        "metadata": {"tenant_id": "org_a", "plan_code": "growth"},
    }
    created = await webhooks.handle_paystack(*paystack_event("charge.success", charge))
    assert created.details["action"] == "created"

    linked = await webhooks.handle_paystack(
        *paystack_event("subscription.create", paystack_subscription_data())
    )

    assert linked.details["action"] == "synced"
    [row] = await tenant_rows(session_factory, "org_a")
    assert row.status == SubscriptionStatus.ACTIVE.value
    assert row.provider_subscription_id == "SUB_abc"
    assert row.provider_email_token == "tok_abc"
    assert row.current_period_end is not None
    assert row.last_payment_at is not None
    assert await audit_count("billing.webhook.paystack", "org_a") == 2


async def test_paystack_replay_is_a_noop(webhooks, plans, make_subscription, session_factory, audit_count):
    _, growth = plans
    await make_subscription(
        "org_a", growth, provider=SubscriptionProvider.PAYSTACK, provider_subscription_id="SUB_abc"
    )
    payload, body = paystack_event("subscription.not_renew", paystack_subscription_data("non-renewing"))

    assert (await webhooks.handle_paystack(payload, body)).status == "processed"
    assert (await webhooks.handle_paystack(payload, body)).status == "duplicate"
    assert await audit_count("billing.webhook.paystack") == 1


async def test_paystack_not_renew_schedules_a_period_end_cancel(webhooks, plans, make_subscription, load_subscription):
    _, growth = plans
    subscription = await make_subscription(
        "org_a", growth, provider=SubscriptionProvider.PAYSTACK, provider_subscription_id="SUB_abc"
    )

    await webhooks.handle_paystack(
        *paystack_event("subscription.not_renew", paystack_subscription_data("non-renewing"))
    )

    row = await load_subscription(subscription.id)
    assert row.status == SubscriptionStatus.ACTIVE.value
    assert row.cancel_at_period_end is True


async def test_paystack_disable_for_a_period_end_cancel_is_deferred(
    webhooks, plans, make_subscription, load_subscription
):
    _, growth = plans
    period_end = datetime.now(UTC) + timedelta(days=10)
    subscription = await make_subscription(
        "org_a",
        growth,
        provider=SubscriptionProvider.PAYSTACK,
        provider_subscription_id="SUB_abc",
        cancel_at_period_end=True,
        current_period_end=period_end,
    )

    outcome = await webhooks.handle_paystack(
        *paystack_event(
            "subscription.disable",
            paystack_subscription_data("complete", next_payment_date=None),
        )
    )

    assert outcome.status == "processed"
    assert outcome.details["action"] == "cancel_deferred"
    row = await load_subscription(subscription.id)
    assert row.status == SubscriptionStatus.ACTIVE.value
    assert row.cancel_at_period_end is True
    assert row.current_period_end == period_end


async def test_paystack_disable_without_a_scheduled_cancel_ends_it(
    webhooks, plans, make_subscription, load_subscription
):
    _, growth = plans
    subscription = await make_subscription(
        "org_a", growth, provider=SubscriptionProvider.PAYSTACK, provider_subscription_id="SUB_abc"
    )

    await webhooks.handle_paystack(*paystack_event("subscription.disable", paystack_subscription_data("complete")))

    row = await load_subscription(subscription.id)
    assert row.status == SubscriptionStatus.CANCELED.value
    assert row.ended_at is not None


async def test_paystack_failed_invoice_marks_past_due(
    webhooks, plans, make_subscription, load_subscription, session_factory
):
    _, growth = plans
    subscription = await make_subscription(
        "org_a", growth, provider=SubscriptionProvider.PAYSTACK, provider_subscription_id="SUB_abc"
    )

    await webhooks.handle_paystack(
        *paystack_event(
            "invoice.payment_failed",
            {
                "invoice_code": "INV_1",
                "amount": 14900,
                "status": "failed",
                "subscription": {"subscription_code": "SUB_abc"},
            },
        )
    )

    row = await load_subscription(subscription.id)
    assert row.status == SubscriptionStatus.PAST_DUE.value
    [mirror] = await all_rows(session_factory, Invoice)
    assert (mirror.provider, mirror.status, mirror.currency) == ("PAYSTACK", "failed", "NGN")
