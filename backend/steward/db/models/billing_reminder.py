"""BillingReminder model: outbox rows picked up by the messaging module."""

import uuid

from sqlalchemy import Column, ForeignKey, String, Uuid

from steward.db.base import Base
from steward.db.types import JSONType, UTCDateTime, utcnow


class BillingReminder(Base):
    __tablename__ = "billing_reminders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    subscription_id = Column(Uuid, ForeignKey("tenant_subscriptions.id"), nullable=True, index=True)

    kind = Column(String(32), nullable=False)  # PAST_DUE, TRIAL_ENDING, DISPUTE_DEADLINE
    status = Column(String(16), nullable=False, default="QUEUED")  # QUEUED, SENT, FAILED
    payload = Column(JSONType, nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    sent_at = Column(UTCDateTime, nullable=True)
