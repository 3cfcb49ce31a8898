"""Tests for DunningService: past-due reminders and the periodic sweep."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from steward.core.config import get_settings
from steward.core.locking import JobLock
from steward.db.models.audit_log import AuditLog
from steward.db.models.billing_reminder import BillingReminder
from steward.db.models.dispute import Dispute
from steward.domain.subscription_status import SubscriptionProvider, SubscriptionStatus
from steward.services.dunning_service import REMINDER_DISPUTE_DEADLINE, SWEEP_LOCK_NAME, DunningService

pytestmark = pytest.mark.integration

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def dunning(session_factory, subscriptions, redis):
    return DunningService(session_factory, subscriptions, JobLock(), get_settings())


@pytest.fixture
async def plans(make_plan):
    starter = await make_plan("starter", 4900, trial_days=14, is_default=True)
    growth = await make_plan("growth", 14900)
    return starter, growth


async def reminders(session_factory, kind: str | None = None) -> list[BillingReminder]:
    query = select(BillingReminder)
    if kind:
        query = query.where(BillingReminder.kind == kind)
    async with session_factory() as session:
        return list((await session.execute(query)).scalars().all())


# ── Dunning ──────────────────────────────────────────────────────────


async def test_preview_lists_subscriptions_past_the_grace_window(dunning, plans, make_subscription):
    starter, _ = plans
    overdue = await make_subscription(
        "org_overdue", starter, status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=5)
    )
    await make_subscription(
        "org_recent", starter, status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=1)
    )
    await make_subscription("org_fine", starter)

    report = await dunning.preview(now=NOW)

    assert report.grace_days == 3
    assert report.dry_run is True
    assert report.inspected == 2
    [target] = report.targets
    assert target["subscription_id"] == str(overdue.id)
    assert target["tenant_id"] == "org_overdue"
    assert target["plan_code"] == "starter"
    assert target["days_past_due"] == 5


async def test_preview_with_custom_grace(dunning, plans, make_subscription):
    starter, _ = plans
    await make_subscription(
        "org_recent", starter, status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=1)
    )

    assert len((await dunning.preview(grace_days=0, now=NOW)).targets) == 1


async def test_run_dunning_queues_one_reminder_per_window(
    dunning, plans, make_subscription, load_subscription, session_factory, audit_count
):
    starter, _ = plans
    subscription = await make_subscription(
        "org_overdue", starter, status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=5)
    )

    first = await dunning.run_dunning(now=NOW)
    second = await dunning.run_dunning(now=NOW + timedelta(hours=1))

    assert first.queued == 1
    assert second.targets == []
    assert second.queued == 0
    assert await audit_count("billing.dunning_queued", "org_overdue") == 1

    [reminder] = await reminders(session_factory, "PAST_DUE")
    assert reminder.subscription_id == subscription.id
    assert reminder.status == "QUEUED"
    assert reminder.payload["plan_code"] == "starter"
    assert (await load_subscription(subscription.id)).last_reminder_sent_at == NOW

    # A full grace window later the tenant is reminded again
    third = await dunning.run_dunning(now=NOW + timedelta(days=3, minutes=1))
    assert third.queued == 1


async def test_dry_run_dunning_writes_nothing(dunning, plans, make_subscription, session_factory, audit_count):
    starter, _ = plans
    await make_subscription(
        "org_overdue", starter, status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=5)
    )

    report = await dunning.run_dunning(dry_run=True, now=NOW)

    assert len(report.targets) == 1
    assert report.queued == 0
    assert await reminders(session_factory) == []
    assert await audit_count("billing.dunning_queued") == 0


# ── Sweep ────────────────────────────────────────────────────────────


async def test_sweep_cancels_at_period_end(dunning, plans, make_subscription, load_subscription, session_factory):
    starter, _ = plans
    subscription = await make_subscription(
        "org_a", starter, cancel_at_period_end=True, current_period_end=NOW - timedelta(hours=1)
    )

    report = await dunning.run_sweep(now=NOW, run_id="run-1")

    assert report.executed == {"cancel_at_period_end": 1}
    assert report.failed == 0
    row = await load_subscription(subscription.id)
    assert row.status == SubscriptionStatus.CANCELED.value
    assert row.cancel_at_period_end is False
    assert row.canceled_at == NOW
    assert row.ended_at == NOW

    async with session_factory() as session:
        entry = (
            await session.execute(select(AuditLog).where(AuditLog.action == "billing.subscription.status_changed"))
        ).scalar_one()
    assert entry.actor_type == "SYSTEM"
    assert entry.actor_id == "billing-sweep"
    assert entry.details == {"from": "ACTIVE", "to": "CANCELED", "reason": "canceled at period end"}


async def test_sweep_leaves_future_period_ends_alone(dunning, plans, make_subscription, load_subscription):
    starter, _ = plans
    subscription = await make_subscription(
        "org_a", starter, cancel_at_period_end=True, current_period_end=NOW + timedelta(days=2)
    )

    report = await dunning.run_sweep(now=NOW)

    assert report.inspected == 1
    assert report.executed == {}
    assert (await load_subscription(subscription.id)).status == SubscriptionStatus.ACTIVE.value


async def test_sweep_skips_while_another_run_holds_the_lock(dunning, plans, make_subscription, load_subscription):
    starter, _ = plans
    subscription = await make_subscription(
        "org_a", starter, cancel_at_period_end=True, current_period_end=NOW - timedelta(hours=1)
    )
    await JobLock().acquire(SWEEP_LOCK_NAME, "run-other", ttl=60)

    report = await dunning.run_sweep(now=NOW, run_id="run-mine")

    assert report.skipped is True
    assert report.holder["owner"] == "run-other"
    assert report.inspected == 0
    assert (await load_subscription(subscription.id)).status == SubscriptionStatus.ACTIVE.value


async def test_sweep_releases_the_lock(dunning, plans, redis):
    await dunning.run_sweep(now=NOW, run_id="run-1")

    assert await JobLock().holder(SWEEP_LOCK_NAME) is None


async def test_trial_reminder_is_queued_once(dunning, plans, make_subscription, session_factory, audit_count):
    starter, _ = plans
    await make_subscription(
        "org_a", starter, status=SubscriptionStatus.TRIALING, trial_ends_at=NOW + timedelta(days=2)
    )

    first = await dunning.run_sweep(now=NOW)
    second = await dunning.run_sweep(now=NOW + timedelta(hours=6))

    assert first.executed == {"remind_trial_ending": 1}
    assert second.executed == {}
    assert len(await reminders(session_factory, "TRIAL_ENDING")) == 1
    assert await audit_count("billing.trial_reminder_queued", "org_a") == 1


async def test_manual_trial_expires(dunning, plans, make_subscription, load_subscription):
    starter, _ = plans
    subscription = await make_subscription(
        "org_a", starter, status=SubscriptionStatus.TRIALING, trial_ends_at=NOW - timedelta(minutes=1)
    )

    report = await dunning.run_sweep(now=NOW)

    assert report.executed == {"expire_trial": 1}
    assert (await load_subscription(subscription.id)).status == SubscriptionStatus.EXPIRED.value


async def test_provider_trial_waits_for_the_first_charge(dunning, plans, make_subscription, load_subscription):
    starter, _ = plans
    subscription = await make_subscription(
        "org_a",
        starter,
        status=SubscriptionStatus.TRIALING,
        provider=SubscriptionProvider.STRIPE,
        trial_ends_at=NOW - timedelta(hours=2),
    )

    await dunning.run_sweep(now=NOW)
    assert (await load_subscription(subscription.id)).status == SubscriptionStatus.TRIALING.value

    await dunning.run_sweep(now=NOW + timedelta(days=1))
    assert (await load_subscription(subscription.id)).status == SubscriptionStatus.EXPIRED.value


async def test_sweep_applies_due_plan_changes(dunning, plans, make_subscription, load_subscription, audit_count):
    _, growth = plans
    subscription = await make_subscription(
        "org_a",
        growth,
        current_period_end=NOW - timedelta(minutes=5),
        pending_plan_code="starter",
        pending_change_effective_at=NOW - timedelta(minutes=5),
        pending_change_mode="NEXT_CYCLE",
    )

    report = await dunning.run_sweep(now=NOW)

    assert report.executed == {"apply_pending_change": 1}
    row = await load_subscription(subscription.id)
    assert row.plan.code == "starter"
    assert row.pending_plan_code is None
    assert row.status == SubscriptionStatus.ACTIVE.value
    assert await audit_count("billing.subscription.plan_changed", "org_a") == 1


async def test_pending_change_to_a_retired_plan_is_dropped(
    dunning, plans, make_plan, make_subscription, load_subscription, audit_count
):
    _, growth = plans
    await make_plan("legacy", 100)
    subscription = await make_subscription(
        "org_a", growth, pending_plan_code="legacy", pending_change_effective_at=NOW - timedelta(minutes=5)
    )
    await make_plan("legacy", 100, is_active=False)

    await dunning.run_sweep(now=NOW)

    row = await load_subscription(subscription.id)
    assert row.plan.code == "growth"
    assert row.pending_plan_code is None
    assert await audit_count("billing.subscription.plan_change_dropped", "org_a") == 1


async def test_past_due_ends_after_the_dunning_window(dunning, plans, make_subscription, load_subscription):
    starter, _ = plans
    never_paid = await make_subscription(
        "org_a", starter, status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=15)
    )
    paid_before = await make_subscription(
        "org_b",
        starter,
        status=SubscriptionStatus.PAST_DUE,
        past_due_since=NOW - timedelta(days=15),
        last_payment_at=NOW - timedelta(days=45),
    )

    report = await dunning.run_sweep(now=NOW)

    assert report.executed == {"end_past_due": 2}
    assert (await load_subscription(never_paid.id)).status == SubscriptionStatus.EXPIRED.value
    assert (await load_subscription(paid_before.id)).status == SubscriptionStatus.CANCELED.value


async def test_sweep_queues_past_due_reminders(dunning, plans, make_subscription, audit_count):
    starter, _ = plans
    await make_subscription(
        "org_a", starter, status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=4)
    )

    report = await dunning.run_sweep(now=NOW)

    assert report.executed == {"remind_past_due": 1}
    assert await audit_count("billing.dunning_queued", "org_a") == 1


async def test_sweep_is_idempotent(dunning, plans, make_subscription):
    starter, _ = plans
    await make_subscription("org_a", starter, cancel_at_period_end=True, current_period_end=NOW - timedelta(hours=1))
    await make_subscription(
        "org_b", starter, status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=4)
    )

    first = await dunning.run_sweep(now=NOW)
    second = await dunning.run_sweep(now=NOW)

    assert sum(first.executed.values()) == 2
    assert second.executed == {}
    assert second.planned == 0


# ── Dispute deadlines ────────────────────────────────────────────────


@pytest.fixture
def make_dispute(session_factory):
    async def _make(ref: str, due_in: timedelta | None, *, status: str = "needs_response", tenant_id="org_a"):
        async with session_factory() as session:
            dispute = Dispute(
                provider="STRIPE",
                provider_ref=ref,
                tenant_id=tenant_id,
                amount_minor=2500,
                currency="USD",
                status=status,
                evidence_due_by=NOW + due_in if due_in is not None else None,
            )
            session.add(dispute)
            await session.commit()
            return dispute

    return _make


async def test_dispute_alert_is_queued_once_per_stage(dunning, make_dispute, session_factory, audit_count):
    dispute = await make_dispute("dp_1", timedelta(days=5))

    first = await dunning.monitor_disputes(now=NOW)
    again = await dunning.monitor_disputes(now=NOW + timedelta(hours=6))

    assert (first.scanned, first.alerted, first.skipped) == (1, 1, 0)
    assert (again.alerted, again.skipped) == (0, 1)
    [reminder] = await reminders(session_factory, REMINDER_DISPUTE_DEADLINE)
    assert reminder.tenant_id == "org_a"
    assert reminder.subscription_id is None
    assert reminder.payload["dispute_id"] == str(dispute.id)
    assert reminder.payload["stage"] == "seven_days"
    assert reminder.payload["provider_ref"] == "dp_1"
    assert await audit_count("dispute.alert.seven_days", "org_a") == 1

    # Crossing into the next stage alerts again
    later = await dunning.monitor_disputes(now=NOW + timedelta(days=3))
    assert later.alerted == 1
    assert later.alerts[0]["stage"] == "three_days"
    assert await audit_count("dispute.alert.three_days", "org_a") == 1
    assert len(await reminders(session_factory, REMINDER_DISPUTE_DEADLINE)) == 2


async def test_closed_and_far_off_disputes_are_not_alerted(dunning, make_dispute, session_factory):
    await make_dispute("dp_won", timedelta(days=1), status="won")
    await make_dispute("dp_later", timedelta(days=30))
    await make_dispute("dp_orphan", timedelta(days=1), tenant_id=None)
    await make_dispute("dp_no_deadline", None)

    report = await dunning.monitor_disputes(now=NOW)

    # Disputes without a deadline are never loaded
    assert (report.scanned, report.alerted, report.skipped) == (3, 0, 3)
    assert await reminders(session_factory, REMINDER_DISPUTE_DEADLINE) == []


async def test_dry_run_dispute_monitor_writes_nothing(dunning, make_dispute, session_factory, audit_count):
    await make_dispute("dp_1", timedelta(hours=-2))

    report = await dunning.monitor_disputes(dry_run=True, now=NOW)

    assert report.dry_run is True
    assert report.alerted == 0
    [alert] = report.alerts
    assert (alert["stage"], alert["days_left"]) == ("overdue", 0)
    assert await reminders(session_factory, REMINDER_DISPUTE_DEADLINE) == []
    assert await audit_count("dispute.alert.overdue") == 0


async def test_sweep_runs_the_dispute_monitor(dunning, make_dispute, audit_count):
    await make_dispute("dp_1", timedelta(hours=12))

    report = await dunning.run_sweep(now=NOW)
    second = await dunning.run_sweep(now=NOW)

    assert report.dispute_alerts == 1
    assert second.dispute_alerts == 0
    assert await audit_count("dispute.alert.one_day", "org_a") == 1
