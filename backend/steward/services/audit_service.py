"""Audit records for billing state changes.

Records are added to the caller's session so they commit (or roll back)
together with the change they describe.
"""

from dataclasses import dataclass
from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from steward.db.models.audit_log import AuditLog

logger = structlog.get_logger(__name__)


class ActorType(str, Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"
    WEBHOOK = "WEBHOOK"


@dataclass(frozen=True)
class Actor:
    type: ActorType
    id: str | None = None

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(ActorType.USER, user_id)

    @classmethod
    def system(cls, name: str = "billing-sweep") -> "Actor":
        return cls(ActorType.SYSTEM, name)

    @classmethod
    def webhook(cls, event_id: str) -> "Actor":
        return cls(ActorType.WEBHOOK, event_id)


def record_audit(
    session: AsyncSession,
    *,
    actor: Actor,
    action: str,
    tenant_id: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    details: dict | None = None,
) -> AuditLog:
    entry = AuditLog(
        actor_type=actor.type.value,
        actor_id=actor.id,
        tenant_id=tenant_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
    )
    session.add(entry)
    logger.debug("audit_recorded", action=action, tenant_id=tenant_id, actor_type=actor.type.value)
    return entry
