"""WebhookEvent model: ledger of provider events for idempotent processing."""

import uuid

from sqlalchemy import Column, Integer, String, Text, UniqueConstraint, Uuid

from steward.db.base import Base
from steward.db.types import UTCDateTime, utcnow


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "external_event_id", name="uq_webhook_event_provider_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider = Column(String(16), nullable=False)
    external_event_id = Column(String(255), nullable=False)
    event_type = Column(String(120), nullable=False)
    payload_hash = Column(String(64), nullable=True)

    status = Column(String(16), nullable=False, default="PROCESSING")  # PROCESSING, PROCESSED, FAILED
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text, nullable=True)

    received_at = Column(UTCDateTime, nullable=False, default=utcnow)
    claimed_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processed_at = Column(UTCDateTime, nullable=True)
