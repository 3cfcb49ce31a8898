"""TenantSubscription model: one row per subscription lifetime of a tenant."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid, text
from sqlalchemy.orm import relationship

from steward.db.base import Base
from steward.db.types import JSONType, UTCDateTime, utcnow

_LIVE_PREDICATE = text("status IN ('TRIALING', 'ACTIVE', 'PAST_DUE', 'PAUSED')")


class TenantSubscription(Base):
    __tablename__ = "tenant_subscriptions"
    __table_args__ = (
        # At most one live subscription per tenant
        Index(
            "uq_tenant_live_subscription",
            "tenant_id",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
        UniqueConstraint("provider", "provider_subscription_id", name="uq_subscription_provider_ref"),
        Index("ix_tenant_subscriptions_status_period_end", "status", "current_period_end"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("subscription_plans.id"), nullable=False, index=True)

    status = Column(String(16), nullable=False)  # TRIALING, ACTIVE, PAST_DUE, PAUSED, CANCELED, EXPIRED
    provider = Column(String(16), nullable=False, default="MANUAL")  # MANUAL, STRIPE, PAYSTACK
    seat_count = Column(Integer, nullable=True)

    starts_at = Column(UTCDateTime, nullable=False, default=utcnow)
    trial_ends_at = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(UTCDateTime, nullable=True)
    ended_at = Column(UTCDateTime, nullable=True)

    # Dunning bookkeeping
    past_due_since = Column(UTCDateTime, nullable=True)
    last_payment_at = Column(UTCDateTime, nullable=True)
    last_reminder_sent_at = Column(UTCDateTime, nullable=True)
    trial_reminder_sent_at = Column(UTCDateTime, nullable=True)

    # Normalized provider references
    provider_customer_id = Column(String(255), nullable=True, index=True)
    provider_subscription_id = Column(String(255), nullable=True)
    provider_plan_ref = Column(String(255), nullable=True)  # Stripe price id / Paystack plan code
    provider_email_token = Column(String(255), nullable=True)  # Paystack only
    provider_metadata = Column(JSONType, nullable=False, default=dict)  # raw / legacy payload

    # Scheduled plan change
    pending_plan_code = Column(String(64), nullable=True)
    pending_change_effective_at = Column(UTCDateTime, nullable=True)
    pending_change_mode = Column(String(16), nullable=True)  # NEXT_CYCLE

    version = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    plan = relationship("SubscriptionPlan", lazy="selectin")

    __mapper_args__ = {"version_id_col": version}
