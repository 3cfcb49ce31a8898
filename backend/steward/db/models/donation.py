"""Donation model: giving records, read by reconciliation."""

import uuid

from sqlalchemy import Column, ForeignKey, Integer, String, Uuid

from steward.db.base import Base
from steward.db.types import UTCDateTime, utcnow


class Donation(Base):
    __tablename__ = "donations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    church_id = Column(String(255), nullable=True)
    payment_intent_id = Column(Uuid, ForeignKey("payment_intents.id"), nullable=True, index=True)

    status = Column(String(32), nullable=False)  # PENDING, COMPLETED, FAILED, REFUNDED
    amount_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
