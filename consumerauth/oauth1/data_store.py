"""Storage for the OAuth 1.0a handshake: request tokens and nonces.

Request tokens move issued -> authorized -> exchanged through conditional
UPDATEs on ``status``; a transition that matches no row was lost to a
concurrent request.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consumerauth.config import settings
from consumerauth.core.exceptions import NonceUsedError
from consumerauth.core.tokens import new_token
from consumerauth.models.consumer import Consumer
from consumerauth.oauth1.models import (
    TOKEN_AUTHORIZED,
    TOKEN_EXCHANGED,
    TOKEN_ISSUED,
    OAuthNonce,
    OAuthToken,
)

logger = logging.getLogger(__name__)

REQUEST_TOKEN = "request"


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they are stored in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(token: OAuthToken, now: datetime) -> bool:
    return as_utc(token.expires_at) <= now


async def new_request_token(
    db: AsyncSession, consumer: Consumer, callback_url: str | None, now: datetime,
) -> OAuthToken:
    credentials = new_token()
    token = OAuthToken(
        token_key=credentials.key,
        secret=credentials.secret,
        token_type=REQUEST_TOKEN,
        consumer_key=consumer.consumer_key,
        callback_url=callback_url,
        status=TOKEN_ISSUED,
        created_at=now,
        expires_at=now + timedelta(seconds=settings.request_token_lifetime_seconds),
    )
    db.add(token)
    await db.flush()
    return token


async def lookup_request_token(db: AsyncSession, consumer: Consumer, token_key: str) -> OAuthToken | None:
    if not token_key:
        return None
    result = await db.execute(
        select(OAuthToken).where(
            OAuthToken.token_key == token_key,
            OAuthToken.consumer_key == consumer.consumer_key,
            OAuthToken.token_type == REQUEST_TOKEN,
        )
    )
    return result.scalar_one_or_none()


async def _compare_and_set(db: AsyncSession, token: OAuthToken, expected: str, values: dict) -> bool:
    result = await db.execute(
        update(OAuthToken)
        .where(OAuthToken.id == token.id, OAuthToken.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await db.refresh(token)
    return True


async def mark_authorized(
    db: AsyncSession, token: OAuthToken, *, verifier: str, access_key: str, now: datetime,
) -> bool:
    return await _compare_and_set(db, token, TOKEN_ISSUED, {
        "status": TOKEN_AUTHORIZED,
        "verifier": verifier,
        "access_key": access_key,
        "authorized_at": now,
    })


async def mark_exchanged(db: AsyncSession, token: OAuthToken, *, now: datetime) -> bool:
    return await _compare_and_set(db, token, TOKEN_AUTHORIZED, {
        "status": TOKEN_EXCHANGED,
        "exchanged_at": now,
    })


async def use_nonce(
    db: AsyncSession, consumer_key: str, token_key: str, nonce: str, timestamp: int,
) -> None:
    """Record a nonce; a nonce already seen for the same timestamp is a replay."""
    existing = await db.execute(
        select(OAuthNonce.id).where(
            OAuthNonce.consumer_key == consumer_key,
            OAuthNonce.token_key == (token_key or ""),
            OAuthNonce.nonce == nonce,
            OAuthNonce.timestamp == timestamp,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise NonceUsedError()

    db.add(OAuthNonce(consumer_key=consumer_key, token_key=token_key or "", nonce=nonce, timestamp=timestamp))
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise NonceUsedError() from exc


async def purge_expired(db: AsyncSession, now: datetime) -> int:
    """Delete handshake state that can no longer be used; return the rows removed.

    Unexchanged request tokens go once expired. Exchanged ones are kept for
    ``exchanged_token_retention_seconds`` past expiry so a late replay still
    reports ``token_already_exchanged``. Nonces older than the timestamp
    window can never match an accepted request again.
    """
    retained_until = now - timedelta(seconds=settings.exchanged_token_retention_seconds)
    tokens = await db.execute(
        delete(OAuthToken).where(
            or_(
                and_(OAuthToken.expires_at < now, OAuthToken.status != TOKEN_EXCHANGED),
                and_(OAuthToken.expires_at < retained_until, OAuthToken.status == TOKEN_EXCHANGED),
            )
        )
    )
    oldest_valid = int(now.timestamp()) - settings.signature_timestamp_window_seconds
    nonces = await db.execute(delete(OAuthNonce).where(OAuthNonce.timestamp < oldest_valid))
    await db.commit()

    purged_tokens, purged_nonces = tokens.rowcount or 0, nonces.rowcount or 0
    if purged_tokens or purged_nonces:
        logger.info("Purged %d request tokens and %d nonces", purged_tokens, purged_nonces)
    return purged_tokens + purged_nonces
