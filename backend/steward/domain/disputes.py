"""Dispute evidence deadlines: which disputes owe an alert, and at which stage.

Stages tighten as the deadline approaches (seven days, three days, one day,
then overdue). Each stage alerts at most once per dispute; the caller passes
the stages already alerted so the planner stays free of I/O.
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class DisputeAlertStage(str, Enum):
    OVERDUE = "overdue"
    ONE_DAY = "one_day"
    THREE_DAYS = "three_days"
    SEVEN_DAYS = "seven_days"


# Tightest first; the first rule whose window covers the days left wins
ALERT_RULES: list[tuple[DisputeAlertStage, int]] = [
    (DisputeAlertStage.OVERDUE, 0),
    (DisputeAlertStage.ONE_DAY, 1),
    (DisputeAlertStage.THREE_DAYS, 3),
    (DisputeAlertStage.SEVEN_DAYS, 7),
]

CLOSED_STATUS_FRAGMENTS = ("won", "lost", "closed", "resolved", "charge_refunded", "refunded")

ALERT_ACTION_PREFIX = "dispute.alert."


def alert_action(stage: DisputeAlertStage) -> str:
    return f"{ALERT_ACTION_PREFIX}{stage.value}"


def is_closed_status(status: str | None) -> bool:
    normalized = (status or "").lower()
    return any(fragment in normalized for fragment in CLOSED_STATUS_FRAGMENTS)


def days_until(due_by: datetime, now: datetime) -> int:
    """Whole days left before ``due_by``, rounded up; zero or less once due."""
    return math.ceil((due_by - now) / timedelta(days=1))


def alert_stage(days_left: int) -> DisputeAlertStage | None:
    for stage, max_days in ALERT_RULES:
        if days_left <= max_days:
            return stage
    return None


@dataclass(frozen=True)
class DisputeState:
    id: str
    tenant_id: str | None
    provider: str
    status: str
    evidence_due_by: datetime | None
    alerted_stages: frozenset[DisputeAlertStage] = field(default_factory=frozenset)


@dataclass(frozen=True)
class DisputeAlert:
    dispute_id: str
    tenant_id: str
    stage: DisputeAlertStage
    days_left: int
    evidence_due_by: datetime


def plan_dispute_alert(state: DisputeState, now: datetime) -> DisputeAlert | None:
    if state.evidence_due_by is None or not state.tenant_id:
        return None
    if is_closed_status(state.status):
        return None
    days_left = days_until(state.evidence_due_by, now)
    stage = alert_stage(days_left)
    if stage is None or stage in state.alerted_stages:
        return None
    return DisputeAlert(state.id, state.tenant_id, stage, max(days_left, 0), state.evidence_due_by)


def plan_dispute_alerts(states: Iterable[DisputeState], now: datetime) -> list[DisputeAlert]:
    alerts = []
    for state in states:
        alert = plan_dispute_alert(state, now)
        if alert is not None:
            alerts.append(alert)
    return alerts
