"""Payout model: Stripe payouts and Paystack settlements."""

import uuid

from sqlalchemy import Column, Integer, String, UniqueConstraint, Uuid

from steward.db.base import Base
from steward.db.types import JSONType, UTCDateTime, utcnow


class Payout(Base):
    __tablename__ = "billing_payouts"
    __table_args__ = (UniqueConstraint("provider", "provider_ref", name="uq_payout_provider_ref"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider = Column(String(16), nullable=False)
    provider_ref = Column(String(255), nullable=False)

    tenant_id = Column(String(255), nullable=True, index=True)
    church_id = Column(String(255), nullable=True)

    amount_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    status = Column(String(32), nullable=False)  # pending, in_transit, paid, failed, canceled
    arrival_date = Column(UTCDateTime, nullable=True)
    raw = Column(JSONType, nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
