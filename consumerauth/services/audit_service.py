"""Consumer action log with SHA-256 hash chain."""

import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consumerauth.core.actor import Actor
from consumerauth.core.hashing import compute_audit_hash
from consumerauth.models.audit_log import ConsumerLogEntry
from consumerauth.models.consumer import Consumer

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    async def record_action(self, consumer: Consumer, action: str, performer: Actor, comment: str) -> None: ...


async def log_action(
    db: AsyncSession,
    consumer: Consumer,
    action: str,
    performer: Actor,
    comment: str = "",
) -> ConsumerLogEntry:
    latest = await db.execute(
        select(ConsumerLogEntry.entry_hash).order_by(ConsumerLogEntry.created_at.desc()).limit(1)
    )
    prev_hash = latest.scalar_one_or_none()

    created_at = datetime.now(timezone.utc)
    entry_hash = compute_audit_hash(
        prev_hash, action, consumer.consumer_key, performer.id, comment or "", created_at.isoformat(),
    )

    entry = ConsumerLogEntry(
        consumer_key=consumer.consumer_key,
        action=action,
        performer_id=performer.id,
        performer_name=performer.name,
        target_user_id=consumer.user_id,
        comment=comment or "",
        prev_hash=prev_hash,
        entry_hash=entry_hash,
        created_at=created_at,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_entries(db: AsyncSession, consumer_key: str) -> list[ConsumerLogEntry]:
    result = await db.execute(
        select(ConsumerLogEntry)
        .where(ConsumerLogEntry.consumer_key == consumer_key)
        .order_by(ConsumerLogEntry.created_at.asc())
    )
    return list(result.scalars().all())


class DatabaseAuditSink:
    """Writes lifecycle actions to ``consumer_log``.

    Runs in its own transaction after the lifecycle change has committed; a
    failure is logged and rolled back, never raised to the caller.
    """

    def __init__(self, db: AsyncSession):
        self._db = db

    async def record_action(self, consumer: Consumer, action: str, performer: Actor, comment: str) -> None:
        consumer_key = consumer.consumer_key
        try:
            await log_action(self._db, consumer, action, performer, comment)
            await self._db.commit()
        except Exception:
            logger.exception("Failed to record action %s on consumer %s", action, consumer_key)
            # The consumer change is already committed; keep it readable after rollback
            if consumer in self._db:
                self._db.expunge(consumer)
            await self._db.rollback()
            return
        logger.info(
            "%s performed action %s on consumer %s",
            performer.name or performer.id, action, consumer.consumer_key,
        )
