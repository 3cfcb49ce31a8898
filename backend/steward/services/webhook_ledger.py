"""Webhook event ledger: at-most-once processing of provider events.

A claim inserts ``(provider, external_event_id)`` and commits before any
handler runs. A duplicate delivery hits the unique constraint and is skipped.
FAILED events, and PROCESSING events whose worker died (older than
``webhook_processing_stale_seconds``), can be claimed again.
"""

import hashlib
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from steward.db.models.webhook_event import WebhookEvent
from steward.db.types import utcnow

logger = structlog.get_logger(__name__)

PROCESSING = "PROCESSING"
PROCESSED = "PROCESSED"
FAILED = "FAILED"


def payload_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


class WebhookLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], stale_after_seconds: int = 600):
        self.session_factory = session_factory
        self.stale_after = timedelta(seconds=stale_after_seconds)

    async def claim(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        body_hash: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Return True when this worker owns the event and should process it."""
        now = now or utcnow()
        async with self.session_factory() as session:
            session.add(
                WebhookEvent(
                    provider=provider,
                    external_event_id=event_id,
                    event_type=event_type,
                    payload_hash=body_hash,
                    status=PROCESSING,
                    attempts=1,
                    received_at=now,
                    claimed_at=now,
                )
            )
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()

        async with self.session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.provider == provider,
                    WebhookEvent.external_event_id == event_id,
                    or_(
                        WebhookEvent.status == FAILED,
                        and_(WebhookEvent.status == PROCESSING, WebhookEvent.claimed_at <= now - self.stale_after),
                    ),
                )
                .values(
                    status=PROCESSING,
                    attempts=WebhookEvent.attempts + 1,
                    claimed_at=now,
                    last_error=None,
                )
            )
            await session.commit()

        reclaimed = result.rowcount == 1
        if reclaimed:
            logger.info("webhook_event_reclaimed", provider=provider, event_id=event_id, event_type=event_type)
        return reclaimed

    @staticmethod
    async def mark_processed(session: AsyncSession, provider: str, event_id: str, now: datetime | None = None) -> None:
        """Flag the event PROCESSED inside the handler's own transaction."""
        await session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.provider == provider, WebhookEvent.external_event_id == event_id)
            .values(status=PROCESSED, processed_at=now or utcnow(), last_error=None)
        )

    async def mark_failed(self, provider: str, event_id: str, error: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.provider == provider, WebhookEvent.external_event_id == event_id)
                .values(status=FAILED, last_error=error[:2000])
            )
            await session.commit()
