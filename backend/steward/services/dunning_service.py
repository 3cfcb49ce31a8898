"""Dunning reminders, dispute deadline alerts and the periodic subscription sweep.

Decisions come from ``steward.domain.sweep`` and ``steward.domain.disputes``;
this module loads rows, re-checks each decision under a row lock, and executes
it through the subscription state machine, one transaction per action.
"""

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from steward.core.config import Settings, get_settings
from steward.core.locking import JobLock
from steward.db.models.audit_log import AuditLog
from steward.db.models.billing_reminder import BillingReminder
from steward.db.models.dispute import Dispute
from steward.db.models.tenant_subscription import TenantSubscription
from steward.db.types import utcnow
from steward.domain.disputes import (
    ALERT_ACTION_PREFIX,
    DisputeAlert,
    DisputeAlertStage,
    DisputeState,
    alert_action,
    plan_dispute_alert,
    plan_dispute_alerts,
)
from steward.domain.subscription_status import (
    LIVE_STATUSES,
    SubscriptionProvider,
    SubscriptionStatus,
)
from steward.domain.sweep import (
    SubscriptionState,
    SweepAction,
    SweepActionKind,
    SweepPolicy,
    is_dunning_target,
    past_due_anchor,
    plan_for_subscription,
    plan_sweep,
)
from steward.services.audit_service import Actor, record_audit
from steward.services.subscription_service import SubscriptionService, commit_or_conflict, lock_subscription

logger = structlog.get_logger(__name__)

SWEEP_LOCK_NAME = "billing-sweep"

REMINDER_PAST_DUE = "PAST_DUE"
REMINDER_TRIAL_ENDING = "TRIAL_ENDING"
REMINDER_DISPUTE_DEADLINE = "DISPUTE_DEADLINE"

DISPUTE_TARGET = "billing_dispute"

_LIVE_VALUES = [status.value for status in LIVE_STATUSES]

_TRANSITION_REASONS = {
    SweepActionKind.CANCEL_AT_PERIOD_END: "canceled at period end",
    SweepActionKind.EXPIRE_TRIAL: "trial ended without payment",
    SweepActionKind.END_PAST_DUE: "past due beyond the dunning window",
}


def to_state(subscription: TenantSubscription) -> SubscriptionState:
    return SubscriptionState(
        id=str(subscription.id),
        tenant_id=subscription.tenant_id,
        status=SubscriptionStatus(subscription.status),
        provider=SubscriptionProvider(subscription.provider),
        trial_ends_at=subscription.trial_ends_at,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        pending_plan_code=subscription.pending_plan_code,
        pending_change_effective_at=subscription.pending_change_effective_at,
        past_due_since=subscription.past_due_since,
        last_payment_at=subscription.last_payment_at,
        last_reminder_sent_at=subscription.last_reminder_sent_at,
        trial_reminder_sent_at=subscription.trial_reminder_sent_at,
    )


def to_dispute_state(dispute: Dispute, alerted: frozenset[DisputeAlertStage] = frozenset()) -> DisputeState:
    return DisputeState(
        id=str(dispute.id),
        tenant_id=dispute.tenant_id,
        provider=dispute.provider,
        status=dispute.status,
        evidence_due_by=dispute.evidence_due_by,
        alerted_stages=alerted,
    )


@dataclass
class DisputeAlertReport:
    dry_run: bool
    scanned: int = 0
    alerted: int = 0
    skipped: int = 0
    failed: int = 0
    alerts: list[dict] = field(default_factory=list)


@dataclass
class DunningReport:
    grace_days: int
    dry_run: bool
    inspected: int = 0
    targets: list[dict] = field(default_factory=list)
    queued: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class SweepReport:
    run_id: str
    started_at: datetime
    skipped: bool = False
    holder: dict | None = None
    inspected: int = 0
    planned: int = 0
    executed: dict[str, int] = field(default_factory=dict)
    stale: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)
    dispute_alerts: int = 0


class DunningService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        subscriptions: SubscriptionService,
        job_lock: JobLock | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.subscriptions = subscriptions
        self.job_lock = job_lock or JobLock()
        self.settings = settings or get_settings()

    def policy(self, grace_days: int | None = None) -> SweepPolicy:
        return SweepPolicy(
            grace_days=self.settings.dunning_grace_days if grace_days is None else grace_days,
            expire_after_days=self.settings.dunning_expire_after_days,
            trial_reminder_days=self.settings.trial_reminder_days,
            trial_expiry_grace_hours=self.settings.trial_expiry_grace_hours,
        )

    # ── Dunning ──────────────────────────────────────────────────────

    async def preview(
        self,
        grace_days: int | None = None,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> DunningReport:
        """PAST_DUE subscriptions owed a reminder right now. Writes nothing."""
        now = now or utcnow()
        grace_days = self.settings.dunning_grace_days if grace_days is None else grace_days
        limit = limit or self.settings.dunning_limit
        report = DunningReport(grace_days=grace_days, dry_run=True)

        async with self.session_factory() as session:
            result = await session.execute(
                select(TenantSubscription)
                .where(TenantSubscription.status == SubscriptionStatus.PAST_DUE.value)
                .order_by(TenantSubscription.past_due_since, TenantSubscription.created_at)
            )
            rows = list(result.scalars().all())

        report.inspected = len(rows)
        for row in rows:
            state = to_state(row)
            if not is_dunning_target(state, now, grace_days):
                continue
            anchor = past_due_anchor(state)
            report.targets.append(
                {
                    "subscription_id": str(row.id),
                    "tenant_id": row.tenant_id,
                    "plan_code": row.plan.code if row.plan else None,
                    "provider": row.provider,
                    "past_due_since": anchor,
                    "days_past_due": (now - anchor).days if anchor else None,
                    "last_reminder_sent_at": row.last_reminder_sent_at,
                }
            )
            if len(report.targets) >= limit:
                break
        return report

    async def run_dunning(
        self,
        grace_days: int | None = None,
        limit: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
        actor: Actor | None = None,
    ) -> DunningReport:
        now = now or utcnow()
        report = await self.preview(grace_days, limit, now)
        if dry_run:
            return report

        report.dry_run = False
        actor = actor or Actor.system("billing-dunning")
        for target in report.targets:
            try:
                async with self.session_factory() as session:
                    subscription = await lock_subscription(session, uuid.UUID(target["subscription_id"]))
                    # Another run may have reminded or recovered it meanwhile
                    if not is_dunning_target(to_state(subscription), now, report.grace_days):
                        report.skipped += 1
                        continue
                    self._queue_reminder(session, subscription, REMINDER_PAST_DUE, actor=actor, now=now)
                    await commit_or_conflict(session)
                report.queued += 1
            except Exception:
                logger.exception("dunning_reminder_failed", subscription_id=target["subscription_id"])
                report.failed += 1

        logger.info(
            "dunning_run_finished",
            inspected=report.inspected,
            targets=len(report.targets),
            queued=report.queued,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    def _queue_reminder(
        self,
        session: AsyncSession,
        subscription: TenantSubscription,
        kind: str,
        *,
        actor: Actor,
        now: datetime,
    ) -> BillingReminder:
        payload = {
            "plan_code": subscription.plan.code if subscription.plan else None,
            "status": subscription.status,
            "provider": subscription.provider,
        }
        if kind == REMINDER_PAST_DUE:
            anchor = subscription.past_due_since or subscription.current_period_end
            payload["past_due_since"] = anchor.isoformat() if anchor else None
            subscription.last_reminder_sent_at = now
            action = "billing.dunning_queued"
        else:
            payload["trial_ends_at"] = subscription.trial_ends_at.isoformat() if subscription.trial_ends_at else None
            subscription.trial_reminder_sent_at = now
            action = "billing.trial_reminder_queued"

        reminder = BillingReminder(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            kind=kind,
            status="QUEUED",
            payload=payload,
            created_at=now,
        )
        session.add(reminder)
        record_audit(
            session,
            actor=actor,
            action=action,
            tenant_id=subscription.tenant_id,
            target_type="tenant_subscription",
            target_id=str(subscription.id),
            details={"kind": kind, **payload},
        )
        logger.info("billing_reminder_queued", kind=kind, subscription_id=str(subscription.id))
        return reminder

    # ── Dispute deadlines ────────────────────────────────────────────

    @staticmethod
    async def _alerted_stages(session: AsyncSession, dispute_ids: list[str]) -> dict[str, set[DisputeAlertStage]]:
        if not dispute_ids:
            return {}
        result = await session.execute(
            select(AuditLog.target_id, AuditLog.action).where(
                AuditLog.target_type == DISPUTE_TARGET,
                AuditLog.target_id.in_(dispute_ids),
                AuditLog.action.startswith(ALERT_ACTION_PREFIX),
            )
        )
        alerted: dict[str, set[DisputeAlertStage]] = {}
        for target_id, action in result.all():
            alerted.setdefault(target_id, set()).add(DisputeAlertStage(action.removeprefix(ALERT_ACTION_PREFIX)))
        return alerted

    async def monitor_disputes(
        self,
        limit: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
        actor: Actor | None = None,
    ) -> DisputeAlertReport:
        """Queue evidence-deadline alerts for open disputes, once per stage.

        Disputes are scanned soonest deadline first. Each alert is a
        ``DISPUTE_DEADLINE`` reminder for the tenant plus a
        ``dispute.alert.<stage>`` audit entry, which is also what marks the
        stage as sent.
        """
        now = now or utcnow()
        limit = limit or self.settings.dispute_monitor_limit
        report = DisputeAlertReport(dry_run=dry_run)

        async with self.session_factory() as session:
            result = await session.execute(
                select(Dispute)
                .where(Dispute.evidence_due_by.is_not(None))
                .order_by(Dispute.evidence_due_by, Dispute.id)
                .limit(limit)
            )
            rows = list(result.scalars().all())
            alerted = await self._alerted_stages(session, [str(row.id) for row in rows])

        alerts = plan_dispute_alerts(
            (to_dispute_state(row, frozenset(alerted.get(str(row.id), ()))) for row in rows), now
        )
        report.scanned = len(rows)
        report.skipped = len(rows) - len(alerts)
        report.alerts = [
            {
                "dispute_id": alert.dispute_id,
                "tenant_id": alert.tenant_id,
                "stage": alert.stage.value,
                "days_left": alert.days_left,
                "evidence_due_by": alert.evidence_due_by,
            }
            for alert in alerts
        ]
        if dry_run:
            return report

        actor = actor or Actor.system("billing-dispute-monitor")
        for alert in alerts:
            try:
                async with self.session_factory() as session:
                    dispute = await session.get(Dispute, uuid.UUID(alert.dispute_id), with_for_update=True)
                    if dispute is None:
                        report.skipped += 1
                        continue
                    sent = await self._alerted_stages(session, [alert.dispute_id])
                    # Closed, rescheduled or alerted by another run meanwhile
                    current = to_dispute_state(dispute, frozenset(sent.get(alert.dispute_id, ())))
                    if plan_dispute_alert(current, now) != alert:
                        report.skipped += 1
                        continue
                    self._queue_dispute_alert(session, dispute, alert, actor=actor, now=now)
                    await session.commit()
                report.alerted += 1
            except Exception:
                logger.exception("dispute_alert_failed", dispute_id=alert.dispute_id, stage=alert.stage.value)
                report.failed += 1

        logger.info(
            "dispute_monitor_finished",
            scanned=report.scanned,
            alerted=report.alerted,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    def _queue_dispute_alert(
        self,
        session: AsyncSession,
        dispute: Dispute,
        alert: DisputeAlert,
        *,
        actor: Actor,
        now: datetime,
    ) -> BillingReminder:
        payload = {
            "dispute_id": alert.dispute_id,
            "provider": dispute.provider,
            "provider_ref": dispute.provider_ref,
            "status": dispute.status,
            "stage": alert.stage.value,
            "days_left": alert.days_left,
            "evidence_due_by": alert.evidence_due_by.isoformat(),
            "amount_minor": dispute.amount_minor,
            "currency": dispute.currency,
        }
        reminder = BillingReminder(
            tenant_id=alert.tenant_id,
            subscription_id=None,
            kind=REMINDER_DISPUTE_DEADLINE,
            status="QUEUED",
            payload=payload,
            created_at=now,
        )
        session.add(reminder)
        record_audit(
            session,
            actor=actor,
            action=alert_action(alert.stage),
            tenant_id=alert.tenant_id,
            target_type=DISPUTE_TARGET,
            target_id=alert.dispute_id,
            details={
                "stage": alert.stage.value,
                "due_by": alert.evidence_due_by.isoformat(),
                "days_left": alert.days_left,
            },
        )
        logger.info("dispute_alert_queued", dispute_id=alert.dispute_id, stage=alert.stage.value)
        return reminder

    # ── Sweep ────────────────────────────────────────────────────────

    async def _sweep_batches(self):
        """Yield live rows that may owe an action, keyset-paginated by id."""
        last_id = None
        batch_size = self.settings.sweep_batch_size
        while True:
            query = (
                select(TenantSubscription)
                .where(
                    TenantSubscription.status.in_(_LIVE_VALUES),
                    or_(
                        TenantSubscription.cancel_at_period_end.is_(True),
                        TenantSubscription.pending_plan_code.is_not(None),
                        TenantSubscription.status.in_(
                            [SubscriptionStatus.TRIALING.value, SubscriptionStatus.PAST_DUE.value]
                        ),
                    ),
                )
                .order_by(TenantSubscription.id)
                .limit(batch_size)
            )
            if last_id is not None:
                query = query.where(TenantSubscription.id > last_id)
            async with self.session_factory() as session:
                rows = list((await session.execute(query)).scalars().all())
            if not rows:
                return
            yield rows
            if len(rows) < batch_size:
                return
            last_id = rows[-1].id

    async def run_sweep(self, now: datetime | None = None, run_id: str | None = None) -> SweepReport:
        """Apply every time-driven transition and reminder owed at ``now``,
        then queue any dispute evidence-deadline alerts.

        Overlapping runs are kept apart by a Redis lock; the loser returns a
        report with ``skipped=True``.
        """
        now = now or utcnow()
        run_id = run_id or uuid.uuid4().hex
        report = SweepReport(run_id=run_id, started_at=now)
        policy = self.policy()
        actor = Actor.system("billing-sweep")
        executed: Counter[str] = Counter()

        async with self.job_lock.lock(SWEEP_LOCK_NAME, run_id, self.settings.sweep_lock_ttl_seconds) as acquired:
            if not acquired:
                report.skipped = True
                report.holder = await self.job_lock.holder(SWEEP_LOCK_NAME)
                return report

            async for rows in self._sweep_batches():
                report.inspected += len(rows)
                actions = plan_sweep((to_state(row) for row in rows), now, policy)
                report.planned += len(actions)
                for action in actions:
                    try:
                        if await self._execute(action, now, policy, actor):
                            executed[action.kind.value] += 1
                        else:
                            report.stale += 1
                    except Exception as exc:
                        logger.exception(
                            "sweep_action_failed",
                            kind=action.kind.value,
                            subscription_id=action.subscription_id,
                            tenant_id=action.tenant_id,
                        )
                        report.failed += 1
                        report.errors.append(
                            {
                                "subscription_id": action.subscription_id,
                                "kind": action.kind.value,
                                "message": getattr(exc, "message", None) or str(exc),
                            }
                        )

            disputes = await self.monitor_disputes(now=now, actor=actor)
            report.dispute_alerts = disputes.alerted
            report.failed += disputes.failed

        report.executed = dict(executed)
        logger.info(
            "billing_sweep_finished",
            run_id=run_id,
            inspected=report.inspected,
            planned=report.planned,
            executed=report.executed,
            stale=report.stale,
            failed=report.failed,
            dispute_alerts=report.dispute_alerts,
        )
        return report

    async def _execute(self, action: SweepAction, now: datetime, policy: SweepPolicy, actor: Actor) -> bool:
        """Run one action in its own transaction. False when it no longer applies."""
        async with self.session_factory() as session:
            subscription = await lock_subscription(session, uuid.UUID(action.subscription_id))
            still_owed = {planned.kind for planned in plan_for_subscription(to_state(subscription), now, policy)}
            if action.kind not in still_owed:
                return False

            if action.kind in _TRANSITION_REASONS:
                await self.subscriptions.apply_transition(
                    session,
                    subscription,
                    action.target_status,
                    actor=actor,
                    reason=_TRANSITION_REASONS[action.kind],
                    now=now,
                )
            elif action.kind == SweepActionKind.APPLY_PENDING_CHANGE:
                await self.subscriptions.apply_pending_change(session, subscription, actor=actor, now=now)
            elif action.kind == SweepActionKind.REMIND_PAST_DUE:
                self._queue_reminder(session, subscription, REMINDER_PAST_DUE, actor=actor, now=now)
            elif action.kind == SweepActionKind.REMIND_TRIAL_ENDING:
                self._queue_reminder(session, subscription, REMINDER_TRIAL_ENDING, actor=actor, now=now)

            await commit_or_conflict(session)
        return True
