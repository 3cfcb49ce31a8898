"""TenantFeatureOverride model: per-tenant adjustments layered over plan features."""

import uuid

from sqlalchemy import Boolean, Column, Integer, String, Text, UniqueConstraint, Uuid

from steward.db.base import Base
from steward.db.types import UTCDateTime, utcnow


class TenantFeatureOverride(Base):
    __tablename__ = "tenant_feature_overrides"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_tenant_feature_override"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    key = Column(String(64), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    limit = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
