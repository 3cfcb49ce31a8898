"""Sweep planning: a pure function from (now, subscriptions) to actions.

The dunning service loads rows, calls ``plan_sweep`` and executes each action
through the subscription state machine. Nothing here touches the database, so
"run now" and the cron job share exactly the same decisions.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from steward.domain.subscription_status import SubscriptionProvider, SubscriptionStatus, is_live


class SweepActionKind(str, Enum):
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    APPLY_PENDING_CHANGE = "apply_pending_change"
    EXPIRE_TRIAL = "expire_trial"
    END_PAST_DUE = "end_past_due"
    REMIND_PAST_DUE = "remind_past_due"
    REMIND_TRIAL_ENDING = "remind_trial_ending"


@dataclass(frozen=True)
class SweepPolicy:
    grace_days: int = 3
    expire_after_days: int = 14
    trial_reminder_days: int = 3
    trial_expiry_grace_hours: int = 24


@dataclass(frozen=True)
class SubscriptionState:
    """The fields of a subscription row the sweep looks at."""

    id: str
    tenant_id: str
    status: SubscriptionStatus
    provider: SubscriptionProvider
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    pending_plan_code: str | None = None
    pending_change_effective_at: datetime | None = None
    past_due_since: datetime | None = None
    last_payment_at: datetime | None = None
    last_reminder_sent_at: datetime | None = None
    trial_reminder_sent_at: datetime | None = None


@dataclass(frozen=True)
class SweepAction:
    kind: SweepActionKind
    subscription_id: str
    tenant_id: str
    target_status: SubscriptionStatus | None = None


def past_due_anchor(state: SubscriptionState) -> datetime | None:
    return state.past_due_since or state.current_period_end


def is_dunning_target(state: SubscriptionState, now: datetime, grace_days: int) -> bool:
    """True when a past-due reminder is owed right now.

    Past-due age is measured from ``past_due_since`` (falling back to the
    period end); a row with neither counts as overdue. A reminder is owed
    again only once a full grace window has passed since the previous one.
    """
    if state.status != SubscriptionStatus.PAST_DUE:
        return False
    cutoff = now - timedelta(days=grace_days)
    anchor = past_due_anchor(state)
    if anchor is not None and anchor > cutoff:
        return False
    if state.last_reminder_sent_at is not None and state.last_reminder_sent_at > cutoff:
        return False
    return True


def _end_of_dunning(state: SubscriptionState, now: datetime, policy: SweepPolicy) -> SweepAction | None:
    anchor = past_due_anchor(state)
    if anchor is None or anchor > now - timedelta(days=policy.expire_after_days):
        return None
    # Never paid: the subscription lapses. Paid before: it is canceled.
    target = SubscriptionStatus.EXPIRED if state.last_payment_at is None else SubscriptionStatus.CANCELED
    return SweepAction(SweepActionKind.END_PAST_DUE, state.id, state.tenant_id, target)


def _trial_expired(state: SubscriptionState, now: datetime, policy: SweepPolicy) -> bool:
    if state.status != SubscriptionStatus.TRIALING or state.trial_ends_at is None:
        return False
    if state.last_payment_at is not None:
        return False
    deadline = state.trial_ends_at
    if state.provider != SubscriptionProvider.MANUAL:
        # Give the provider's first-charge webhook time to arrive
        deadline += timedelta(hours=policy.trial_expiry_grace_hours)
    return deadline <= now


def plan_for_subscription(state: SubscriptionState, now: datetime, policy: SweepPolicy) -> list[SweepAction]:
    """Actions owed by one subscription at ``now``, in execution order.

    At most one status-changing action is returned; reminders are only planned
    when the status is left alone.
    """
    if not is_live(state.status):
        return []

    if state.cancel_at_period_end and state.current_period_end is not None and state.current_period_end <= now:
        return [
            SweepAction(
                SweepActionKind.CANCEL_AT_PERIOD_END, state.id, state.tenant_id, SubscriptionStatus.CANCELED
            )
        ]

    if _trial_expired(state, now, policy):
        return [SweepAction(SweepActionKind.EXPIRE_TRIAL, state.id, state.tenant_id, SubscriptionStatus.EXPIRED)]

    if state.status == SubscriptionStatus.PAST_DUE:
        ending = _end_of_dunning(state, now, policy)
        if ending is not None:
            return [ending]

    actions: list[SweepAction] = []

    if (
        state.pending_plan_code
        and state.pending_change_effective_at is not None
        and state.pending_change_effective_at <= now
        and state.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
    ):
        actions.append(SweepAction(SweepActionKind.APPLY_PENDING_CHANGE, state.id, state.tenant_id))

    if is_dunning_target(state, now, policy.grace_days):
        actions.append(SweepAction(SweepActionKind.REMIND_PAST_DUE, state.id, state.tenant_id))

    if (
        state.status == SubscriptionStatus.TRIALING
        and state.trial_ends_at is not None
        and state.trial_reminder_sent_at is None
        and now < state.trial_ends_at <= now + timedelta(days=policy.trial_reminder_days)
    ):
        actions.append(SweepAction(SweepActionKind.REMIND_TRIAL_ENDING, state.id, state.tenant_id))

    return actions


def plan_sweep(states: Iterable[SubscriptionState], now: datetime, policy: SweepPolicy) -> list[SweepAction]:
    actions: list[SweepAction] = []
    for state in states:
        actions.extend(plan_for_subscription(state, now, policy))
    return actions
