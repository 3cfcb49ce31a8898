"""Plan change rules: which changes may apply now and which wait a cycle."""

from dataclasses import dataclass
from enum import Enum


class PlanChangeEffective(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    NEXT_CYCLE = "NEXT_CYCLE"


class PlanChangeDirection(str, Enum):
    SAME = "SAME"
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"
    LATERAL = "LATERAL"  # different currency/interval, or equal price


@dataclass(frozen=True)
class PlanPrice:
    code: str
    amount_minor: int
    currency: str
    interval: str


def classify_change(current: PlanPrice, target: PlanPrice) -> PlanChangeDirection:
    if current.code == target.code:
        return PlanChangeDirection.SAME
    if current.currency != target.currency or current.interval != target.interval:
        return PlanChangeDirection.LATERAL
    if target.amount_minor > current.amount_minor:
        return PlanChangeDirection.UPGRADE
    if target.amount_minor < current.amount_minor:
        return PlanChangeDirection.DOWNGRADE
    return PlanChangeDirection.LATERAL


def rejection_reason(
    direction: PlanChangeDirection,
    effective: PlanChangeEffective,
    *,
    provider: str,
    supports_immediate: bool,
    has_period_end: bool,
) -> str | None:
    """Return a human-readable reason the change cannot proceed, or None."""
    if effective == PlanChangeEffective.IMMEDIATE:
        if direction != PlanChangeDirection.UPGRADE:
            return (
                "Only upgrades to a higher-priced plan can take effect immediately; "
                "schedule this change for the next billing cycle."
            )
        if not supports_immediate:
            return (
                f"{provider.title()} subscriptions cannot be prorated; "
                "schedule this change for the next billing cycle."
            )
        return None

    if not has_period_end:
        return "This subscription has no billing period end, so a next-cycle change cannot be scheduled."
    return None
