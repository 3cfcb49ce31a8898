"""Tests for sweep planning: which actions a subscription owes at a given time."""

from datetime import UTC, datetime, timedelta

import pytest

from steward.domain.subscription_status import SubscriptionProvider, SubscriptionStatus
from steward.domain.sweep import (
    SubscriptionState,
    SweepActionKind,
    SweepPolicy,
    is_dunning_target,
    plan_for_subscription,
    plan_sweep,
)

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
POLICY = SweepPolicy(grace_days=3, expire_after_days=14, trial_reminder_days=3, trial_expiry_grace_hours=24)


def state(**fields) -> SubscriptionState:
    fields.setdefault("id", "sub-1")
    fields.setdefault("tenant_id", "org_1")
    fields.setdefault("status", SubscriptionStatus.ACTIVE)
    fields.setdefault("provider", SubscriptionProvider.MANUAL)
    return SubscriptionState(**fields)


def kinds(subscription: SubscriptionState) -> list[SweepActionKind]:
    return [action.kind for action in plan_for_subscription(subscription, NOW, POLICY)]


def test_nothing_owed_for_a_healthy_subscription():
    assert kinds(state(current_period_end=NOW + timedelta(days=10))) == []


def test_terminal_rows_are_ignored():
    assert kinds(state(status=SubscriptionStatus.CANCELED, cancel_at_period_end=True, current_period_end=NOW)) == []


def test_cancel_at_period_end_once_period_has_passed():
    actions = plan_for_subscription(
        state(cancel_at_period_end=True, current_period_end=NOW - timedelta(minutes=1)), NOW, POLICY
    )
    assert [a.kind for a in actions] == [SweepActionKind.CANCEL_AT_PERIOD_END]
    assert actions[0].target_status == SubscriptionStatus.CANCELED

    assert kinds(state(cancel_at_period_end=True, current_period_end=NOW + timedelta(days=1))) == []


def test_manual_trial_expires_at_trial_end():
    trial = state(status=SubscriptionStatus.TRIALING, trial_ends_at=NOW - timedelta(hours=1))
    assert kinds(trial) == [SweepActionKind.EXPIRE_TRIAL]


def test_provider_trial_gets_a_grace_period_for_the_first_charge():
    trial = state(
        status=SubscriptionStatus.TRIALING,
        provider=SubscriptionProvider.STRIPE,
        trial_ends_at=NOW - timedelta(hours=1),
    )
    assert kinds(trial) == []

    late = state(
        status=SubscriptionStatus.TRIALING,
        provider=SubscriptionProvider.STRIPE,
        trial_ends_at=NOW - timedelta(hours=25),
    )
    assert kinds(late) == [SweepActionKind.EXPIRE_TRIAL]


def test_paid_trial_does_not_expire():
    trial = state(
        status=SubscriptionStatus.TRIALING,
        trial_ends_at=NOW - timedelta(days=1),
        last_payment_at=NOW - timedelta(days=2),
    )
    assert SweepActionKind.EXPIRE_TRIAL not in kinds(trial)


def test_trial_ending_reminder_is_sent_once():
    trial = state(status=SubscriptionStatus.TRIALING, trial_ends_at=NOW + timedelta(days=2))
    assert kinds(trial) == [SweepActionKind.REMIND_TRIAL_ENDING]

    reminded = state(
        status=SubscriptionStatus.TRIALING,
        trial_ends_at=NOW + timedelta(days=2),
        trial_reminder_sent_at=NOW - timedelta(hours=1),
    )
    assert kinds(reminded) == []


def test_past_due_reminder_after_grace():
    assert kinds(state(status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=5))) == [
        SweepActionKind.REMIND_PAST_DUE
    ]
    assert kinds(state(status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=1))) == []


def test_past_due_is_reminded_again_only_after_a_full_grace_window():
    base = {"status": SubscriptionStatus.PAST_DUE, "past_due_since": NOW - timedelta(days=10)}
    assert not is_dunning_target(state(**base, last_reminder_sent_at=NOW - timedelta(days=1)), NOW, 3)
    assert is_dunning_target(state(**base, last_reminder_sent_at=NOW - timedelta(days=4)), NOW, 3)


def test_past_due_falls_back_to_period_end():
    subscription = state(status=SubscriptionStatus.PAST_DUE, current_period_end=NOW - timedelta(days=4))
    assert is_dunning_target(subscription, NOW, 3)


def test_end_of_dunning_depends_on_payment_history():
    never_paid = state(status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=15))
    [action] = plan_for_subscription(never_paid, NOW, POLICY)
    assert action.kind == SweepActionKind.END_PAST_DUE
    assert action.target_status == SubscriptionStatus.EXPIRED

    paid_once = state(
        status=SubscriptionStatus.PAST_DUE,
        past_due_since=NOW - timedelta(days=15),
        last_payment_at=NOW - timedelta(days=45),
    )
    [action] = plan_for_subscription(paid_once, NOW, POLICY)
    assert action.target_status == SubscriptionStatus.CANCELED


def test_pending_change_applies_when_due():
    due = state(pending_plan_code="starter", pending_change_effective_at=NOW - timedelta(seconds=1))
    assert kinds(due) == [SweepActionKind.APPLY_PENDING_CHANGE]

    not_yet = state(pending_plan_code="starter", pending_change_effective_at=NOW + timedelta(days=3))
    assert kinds(not_yet) == []


def test_period_end_cancel_wins_over_pending_change():
    subscription = state(
        cancel_at_period_end=True,
        current_period_end=NOW - timedelta(hours=1),
        pending_plan_code="starter",
        pending_change_effective_at=NOW - timedelta(hours=1),
    )
    assert kinds(subscription) == [SweepActionKind.CANCEL_AT_PERIOD_END]


def test_plan_sweep_flattens_every_subscription():
    actions = plan_sweep(
        [
            state(id="a", cancel_at_period_end=True, current_period_end=NOW - timedelta(days=1)),
            state(id="b"),
            state(id="c", status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=4)),
        ],
        NOW,
        POLICY,
    )
    assert [(a.subscription_id, a.kind) for a in actions] == [
        ("a", SweepActionKind.CANCEL_AT_PERIOD_END),
        ("c", SweepActionKind.REMIND_PAST_DUE),
    ]
