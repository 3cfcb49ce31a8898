"""AuditLog model: who changed billing state, and how."""

import uuid

from sqlalchemy import Column, String, Uuid

from steward.db.base import Base
from steward.db.types import JSONType, UTCDateTime, utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_type = Column(String(16), nullable=False)  # USER, SYSTEM, WEBHOOK
    actor_id = Column(String(255), nullable=True)
    tenant_id = Column(String(255), nullable=True, index=True)

    action = Column(String(120), nullable=False, index=True)
    target_type = Column(String(64), nullable=True)
    target_id = Column(String(255), nullable=True)
    details = Column("metadata", JSONType, nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
