"""SubscriptionPlan and SubscriptionPlanFeature models: the plan catalog."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import relationship

from steward.db.base import Base
from steward.db.types import JSONType, UTCDateTime, utcnow


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (
        # At most one default plan
        Index(
            "uq_single_default_plan",
            "is_default",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)

    currency = Column(String(3), nullable=False, default="USD")
    interval = Column(String(16), nullable=False, default="MONTHLY")  # MONTHLY, YEARLY, CUSTOM
    amount_minor = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)

    # trial_days, stripe_price_id, paystack_plan_code
    plan_metadata = Column("metadata", JSONType, nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    features = relationship(
        "SubscriptionPlanFeature",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="SubscriptionPlanFeature.key",
        lazy="selectin",
    )

    @property
    def trial_days(self) -> int:
        value = (self.plan_metadata or {}).get("trial_days", 0)
        try:
            return max(int(value), 0)
        except (TypeError, ValueError):
            return 0

    @property
    def stripe_price_id(self) -> str | None:
        return (self.plan_metadata or {}).get("stripe_price_id") or None

    @property
    def paystack_plan_code(self) -> str | None:
        return (self.plan_metadata or {}).get("paystack_plan_code") or None


class SubscriptionPlanFeature(Base):
    __tablename__ = "subscription_plan_features"
    __table_args__ = (UniqueConstraint("plan_id", "key", name="uq_plan_feature_key"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_id = Column(Uuid, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    key = Column(String(64), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    limit = Column(Integer, nullable=True)  # NULL = unlimited

    plan = relationship("SubscriptionPlan", back_populates="features")
