"""Acceptance registry: a user's grant of authority to a consumer."""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consumerauth.core.tokens import TokenCredentials, new_token
from consumerauth.models.consumer import Consumer, ConsumerAcceptance, dump_grants

logger = logging.getLogger(__name__)


async def get_current_authorization(
    db: AsyncSession, user_id: int, consumer_id: int, wiki: str,
) -> ConsumerAcceptance | None:
    result = await db.execute(
        select(ConsumerAcceptance).where(
            ConsumerAcceptance.user_id == user_id,
            ConsumerAcceptance.consumer_id == consumer_id,
            ConsumerAcceptance.wiki == wiki,
        )
    )
    return result.scalar_one_or_none()


async def lookup_by_access_token(db: AsyncSession, access_token: str) -> ConsumerAcceptance | None:
    result = await db.execute(
        select(ConsumerAcceptance).where(ConsumerAcceptance.access_token == access_token)
    )
    return result.scalar_one_or_none()


async def list_for_consumer(db: AsyncSession, consumer_id: int) -> list[ConsumerAcceptance]:
    result = await db.execute(
        select(ConsumerAcceptance)
        .where(ConsumerAcceptance.consumer_id == consumer_id)
        .order_by(ConsumerAcceptance.accepted.desc())
    )
    return list(result.scalars().all())


async def grant_acceptance(
    db: AsyncSession,
    *,
    consumer: Consumer,
    user_id: int,
    access_token: TokenCredentials,
    grants: list[str] | None = None,
) -> ConsumerAcceptance:
    """Bind ``user_id`` to ``consumer`` with the given access credential.

    An existing acceptance for (user, consumer, wiki) is updated in place:
    the credential, grants and accepted timestamp are replaced. Nothing is
    committed here; the caller owns the transaction.
    """
    granted = consumer.get_grants() if grants is None else list(grants)
    acceptance = await get_current_authorization(db, user_id, consumer.id, consumer.wiki)
    now = datetime.now(timezone.utc)

    if acceptance is None:
        acceptance = _new_acceptance(consumer, user_id, access_token, granted, now)
        db.add(acceptance)
    else:
        acceptance.access_token = access_token.key
        acceptance.access_secret = access_token.secret
        acceptance.grants = dump_grants(granted)
        acceptance.accepted = now

    await db.flush()
    logger.debug("Acceptance for user %s on consumer %s stored", user_id, consumer.consumer_key)
    return acceptance


async def accept_consumer(db: AsyncSession, consumer: Consumer, user_id: int) -> ConsumerAcceptance:
    """Record that ``user_id`` authorized ``consumer`` with its full grants.

    A user holds one credential per consumer and wiki. Authorizing again
    refreshes the grants and accepted time but keeps the access token, so
    request tokens authorized earlier and credentials already handed out
    stay valid. A first authorization that loses an insert race to another
    one surfaces as IntegrityError from the flush.
    """
    now = datetime.now(timezone.utc)
    acceptance = await get_current_authorization(db, user_id, consumer.id, consumer.wiki)
    if acceptance is None:
        acceptance = _new_acceptance(consumer, user_id, new_token(), consumer.get_grants(), now)
        db.add(acceptance)
    else:
        acceptance.grants = dump_grants(consumer.get_grants())
        acceptance.accepted = now
    await db.flush()
    return acceptance


def _new_acceptance(
    consumer: Consumer, user_id: int, credentials: TokenCredentials, grants: list[str], now: datetime,
) -> ConsumerAcceptance:
    return ConsumerAcceptance(
        wiki=consumer.wiki,
        user_id=user_id,
        consumer_id=consumer.id,
        access_token=credentials.key,
        access_secret=credentials.secret,
        grants=dump_grants(grants),
        accepted=now,
        oauth_version=consumer.oauth_version,
    )


async def rotate_owner_acceptance(db: AsyncSession, consumer: Consumer, user_id: int) -> TokenCredentials:
    """Reissue the owner's credential for an owner-only consumer.

    The access key survives when an acceptance already exists so clients only
    need to pick up the new secret.
    """
    credentials = new_token()
    existing = await get_current_authorization(db, user_id, consumer.id, consumer.wiki)
    if existing is not None:
        credentials = TokenCredentials(key=existing.access_token, secret=credentials.secret)
    await grant_acceptance(db, consumer=consumer, user_id=user_id, access_token=credentials)
    return credentials
