"""PaymentIntent model: giving-side payment attempts, read by reconciliation."""

import uuid

from sqlalchemy import Column, Integer, String, UniqueConstraint, Uuid

from steward.db.base import Base
from steward.db.types import UTCDateTime, utcnow


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (UniqueConstraint("provider", "provider_ref", name="uq_payment_intent_provider_ref"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    church_id = Column(String(255), nullable=True)

    provider = Column(String(16), nullable=False)
    provider_ref = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False)  # PENDING, SUCCEEDED, FAILED, CANCELED
    amount_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
