"""Consumer registry: creation, lookup and change-detecting mutation of consumers."""

import logging

from packaging.version import InvalidVersion, Version
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from consumerauth.core.exceptions import ChangeConflictError, ConsumerExistsError
from consumerauth.core.hashing import compute_change_token, tokens_match
from consumerauth.models.consumer import Consumer

logger = logging.getLogger(__name__)


def _version_at_least(candidate: str, floor: str) -> bool:
    """True when ``candidate`` >= ``floor``; unparseable versions only match exactly."""
    try:
        return Version(candidate) >= Version(floor)
    except InvalidVersion:
        return candidate == floor


def _version_sort_key(value: str):
    try:
        return (1, Version(value))
    except InvalidVersion:
        return (0, value)


async def create_consumer(db: AsyncSession, **fields) -> Consumer:
    """Insert a consumer. A concurrent duplicate (name, owner, version) raises ConsumerExistsError."""
    consumer = Consumer(**fields)
    db.add(consumer)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        logger.info(
            "Duplicate proposal rejected by unique constraint: %s %s (owner=%s)",
            fields.get("name"), fields.get("version"), fields.get("user_id"),
        )
        raise ConsumerExistsError() from exc
    return consumer


async def lookup_by_key(db: AsyncSession, consumer_key: str, *, lock: bool = False) -> Consumer | None:
    stmt = select(Consumer).where(Consumer.consumer_key == consumer_key)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_latest_by_name_version(
    db: AsyncSession,
    name: str,
    version: str,
    owner_id: int,
    *,
    lock: bool = True,
) -> Consumer | None:
    """Return the highest-versioned consumer for (name, owner) at or above ``version``.

    The rows are read ``FOR UPDATE`` so two proposals for the same application
    serialize on the duplicate check; the unique constraint on
    (name, user_id, version) backs this up on stores without row locks.
    """
    stmt = select(Consumer).where(Consumer.name == name, Consumer.user_id == owner_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    existing = list(result.scalars().all())
    if not existing:
        return None
    latest = max(existing, key=lambda c: _version_sort_key(c.version))
    if _version_at_least(latest.version, version):
        return latest
    # An identical version string always counts as a duplicate
    return next((c for c in existing if c.version == version), None)


async def mutate(db: AsyncSession, consumer: Consumer, delta: dict) -> bool:
    """Apply the fields in ``delta`` that differ from the stored state.

    Returns False, writing nothing, when every value already matches. The
    UPDATE is guarded by the ``revision`` column; losing that race surfaces
    as ChangeConflictError.
    """
    changed = {
        field: value
        for field, value in delta.items()
        if getattr(consumer, field) != value
    }
    if not changed:
        return False

    consumer_key = consumer.consumer_key
    for field, value in changed.items():
        setattr(consumer, field, value)
    try:
        await db.flush()
    except StaleDataError as exc:
        await db.rollback()
        logger.info("Concurrent update lost on consumer %s", consumer_key)
        raise ChangeConflictError() from exc
    return True


def change_token_for(consumer: Consumer) -> str:
    return compute_change_token(consumer.concurrency_fields())


def check_change_token(consumer: Consumer, token: str | None) -> bool:
    return tokens_match(change_token_for(consumer), token)
