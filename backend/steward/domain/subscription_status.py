"""Subscription lifecycle: statuses, providers and the transition table.

Pure domain logic, no I/O. The service layer calls ``ensure_transition``
before every status write so webhooks, admin actions and the sweep share one
definition of what is legal.
"""

from enum import Enum

from steward.core.exceptions import InvalidTransitionError


class SubscriptionStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


class SubscriptionProvider(str, Enum):
    MANUAL = "MANUAL"
    STRIPE = "STRIPE"
    PAYSTACK = "PAYSTACK"


class PlanInterval(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    CUSTOM = "CUSTOM"


LIVE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.PAUSED,
    }
)

TERMINAL_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
)

TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.TRIALING: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.PAUSED: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.CANCELED: frozenset(),
    SubscriptionStatus.EXPIRED: frozenset(),
}


def is_live(status: SubscriptionStatus | str) -> bool:
    return SubscriptionStatus(status) in LIVE_STATUSES


def is_terminal(status: SubscriptionStatus | str) -> bool:
    return SubscriptionStatus(status) in TERMINAL_STATUSES


def can_transition(current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> bool:
    """Return True if ``current -> target`` is allowed.

    A same-status request counts as allowed for live statuses (replays are
    no-ops) but never for terminal ones.
    """
    current = SubscriptionStatus(current)
    target = SubscriptionStatus(target)
    if current == target:
        return current in LIVE_STATUSES
    return target in TRANSITIONS[current]


def ensure_transition(current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(SubscriptionStatus(current).value, SubscriptionStatus(target).value)


def initial_status(trial_days: int) -> SubscriptionStatus:
    """Status of a newly created subscription for a plan's trial length."""
    return SubscriptionStatus.TRIALING if trial_days > 0 else SubscriptionStatus.ACTIVE
