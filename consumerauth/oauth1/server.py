"""OAuth 1.0a token exchange: request token, user authorization, access token.

A request token is the only state carried between the three steps:

    fetch_request_token  -> token issued
    authorize            -> token authorized (verifier + acceptance key attached)
    fetch_access_token   -> token exchanged (terminal)

Only consumers in the ``approved`` stage take part. Each status change is a
conditional UPDATE, so concurrent authorizations or redemptions of the same
token yield at most one success.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consumerauth.config import settings
from consumerauth.core.actor import Actor
from consumerauth.core.exceptions import (
    BadConsumerError,
    ExpiredTokenError,
    InvalidCallbackError,
    InvalidRequestTokenError,
    InvalidSignatureError,
    InvalidTimestampError,
    InvalidUserError,
    InvalidVerifierError,
    NotLoggedInError,
    TokenAlreadyExchangedError,
    UserBlockedError,
)
from consumerauth.core.hashing import tokens_match
from consumerauth.core.ip_restrictions import check_source_ip
from consumerauth.core.tokens import TokenCredentials, new_verifier
from consumerauth.database import translate_storage_errors
from consumerauth.models.consumer import Consumer, ConsumerAcceptance, ConsumerStage
from consumerauth.oauth1 import data_store
from consumerauth.oauth1.models import TOKEN_AUTHORIZED, TOKEN_EXCHANGED, TOKEN_ISSUED, OAuthToken
from consumerauth.oauth1.request import SignedRequest
from consumerauth.oauth1.signature import verify_signature
from consumerauth.services import acceptance_service, consumer_registry

logger = logging.getLogger(__name__)

OUT_OF_BAND = "oob"

# Lets another identity provider swap the authorizing user; returning None aborts.
UserHook = Callable[[Actor], "Actor | None | Awaitable[Actor | None]"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_callback_url(base: str, verifier: str, request_token_key: str) -> str:
    separator = "&" if "?" in base else "?"
    query = urlencode({"oauth_verifier": verifier, "oauth_token": request_token_key})
    return f"{base}{separator}{query}"


class OAuthServer:
    def __init__(
        self,
        db: AsyncSession,
        *,
        user_hooks: Iterable[UserHook] = (),
        now: Callable[[], datetime] | None = None,
    ):
        self._db = db
        self._user_hooks = tuple(user_hooks)
        self._now = now or _utcnow

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def fetch_request_token(self, request: SignedRequest) -> TokenCredentials:
        """Issue a request token. No existing token is needed for this step."""
        request.validate()
        with translate_storage_errors():
            consumer = await self._get_consumer(request.consumer_key)
            if consumer.owner_only:
                raise BadConsumerError("Owner-only consumers do not use the authorization handshake")
            check_source_ip(consumer.get_restrictions(), request.source_ip, consumer.consumer_key)
            await self._check_signature(request, consumer)

            callback = self._resolve_callback(consumer, request.callback)
            token = await data_store.new_request_token(self._db, consumer, callback, self._now())
            await self._db.commit()

        logger.debug("Issued request token %s for consumer %s", token.token_key, consumer.consumer_key)
        return TokenCredentials(key=token.token_key, secret=token.secret)

    async def authorize(self, consumer_key: str, request_token_key: str, actor: Actor) -> str:
        """Record that ``actor`` authorized the request token; return the callback URL."""
        if actor.is_anonymous:
            raise NotLoggedInError()
        if actor.blocked or actor.locked:
            raise UserBlockedError()

        with translate_storage_errors():
            consumer = await self._get_consumer(consumer_key)
            token = await data_store.lookup_request_token(self._db, consumer, request_token_key)
            if token is None:
                raise InvalidRequestTokenError()
            now = self._now()
            if data_store.is_expired(token, now):
                raise ExpiredTokenError()
            if token.status != TOKEN_ISSUED:
                raise InvalidRequestTokenError("The request token has already been authorized")

            user = await self._run_user_hooks(actor)
            if user is None:
                raise InvalidUserError()

            try:
                acceptance = await acceptance_service.accept_consumer(self._db, consumer, user.id)
            except IntegrityError:
                # Another authorization by the same user inserted the acceptance
                # first; nothing else is written yet, so retry against that row
                await self._db.rollback()
                await self._db.refresh(consumer)
                await self._db.refresh(token)
                acceptance = await acceptance_service.accept_consumer(self._db, consumer, user.id)

            verifier = new_verifier()
            authorized = await data_store.mark_authorized(
                self._db, token, verifier=verifier, access_key=acceptance.access_token, now=now,
            )
            if not authorized:
                await self._db.rollback()
                raise InvalidRequestTokenError("The request token has already been authorized")
            await self._db.commit()

        logger.info(
            "User %s authorized request token %s (client: %s)", user.id, request_token_key, consumer_key,
        )
        return build_callback_url(token.callback_url or consumer.callback_url, verifier, token.token_key)

    async def fetch_access_token(self, request: SignedRequest) -> TokenCredentials:
        """Exchange an authorized request token plus verifier for the access token."""
        request.validate()
        with translate_storage_errors():
            consumer = await self._get_consumer(request.consumer_key)
            check_source_ip(consumer.get_restrictions(), request.source_ip, consumer.consumer_key)

            token = await data_store.lookup_request_token(self._db, consumer, request.token)
            if token is None:
                raise InvalidRequestTokenError()
            if token.status == TOKEN_EXCHANGED:
                raise TokenAlreadyExchangedError()
            now = self._now()
            if data_store.is_expired(token, now):
                raise ExpiredTokenError()
            if token.status != TOKEN_AUTHORIZED or not tokens_match(token.verifier or "", request.verifier):
                raise InvalidVerifierError()

            await self._check_signature(request, consumer, token)

            acceptance = await acceptance_service.lookup_by_access_token(self._db, token.access_key)
            if acceptance is None or acceptance.consumer_id != consumer.id:
                raise InvalidRequestTokenError("The authorization for this request token no longer exists")

            if not await data_store.mark_exchanged(self._db, token, now=now):
                raise TokenAlreadyExchangedError()
            await self._db.commit()

        logger.info("Request token %s exchanged (client: %s)", token.token_key, consumer.consumer_key)
        return TokenCredentials(key=acceptance.access_token, secret=acceptance.access_secret)

    async def verify_request(self, request: SignedRequest) -> ConsumerAcceptance:
        """Authenticate a resource request signed with an access token."""
        request.validate()
        with translate_storage_errors():
            consumer = await self._get_consumer(request.consumer_key)
            check_source_ip(consumer.get_restrictions(), request.source_ip, consumer.consumer_key)

            acceptance = await acceptance_service.lookup_by_access_token(self._db, request.token)
            if acceptance is None or acceptance.consumer_id != consumer.id:
                raise InvalidRequestTokenError("Invalid access token")

            await self._check_signature(
                request, consumer, token_key=acceptance.access_token, token_secret=acceptance.access_secret,
            )
            await self._db.commit()
        return acceptance

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_consumer(self, consumer_key: str) -> Consumer:
        consumer = None
        if consumer_key:
            consumer = await consumer_registry.lookup_by_key(self._db, consumer_key)
        if consumer is None or consumer.get_stage() != ConsumerStage.APPROVED:
            raise BadConsumerError()
        return consumer

    async def _check_signature(
        self,
        request: SignedRequest,
        consumer: Consumer,
        token: OAuthToken | None = None,
        *,
        token_key: str = "",
        token_secret: str = "",
    ) -> None:
        if token is not None:
            token_key, token_secret = token.token_key, token.secret

        skew = abs(int(self._now().timestamp()) - request.timestamp)
        if skew > settings.signature_timestamp_window_seconds:
            raise InvalidTimestampError()

        valid = verify_signature(
            request.method,
            request.url,
            request.params,
            consumer_secret=consumer.secret_key,
            token_secret=token_secret,
            rsa_public_key=consumer.rsa_key,
        )
        if not valid:
            logger.info("Invalid %s signature for consumer %s", request.signature_method, consumer.consumer_key)
            raise InvalidSignatureError()

        await data_store.use_nonce(self._db, consumer.consumer_key, token_key, request.nonce, request.timestamp)

    @staticmethod
    def _resolve_callback(consumer: Consumer, callback: str | None) -> str | None:
        """Validate the callback sent with a request-token call; None means out-of-band."""
        if callback is None or callback == OUT_OF_BAND:
            return None
        if consumer.callback_is_prefix and consumer.callback_url and callback.startswith(consumer.callback_url):
            return callback
        raise InvalidCallbackError()

    async def _run_user_hooks(self, actor: Actor) -> Actor | None:
        user = actor
        for hook in self._user_hooks:
            result = hook(user)
            if inspect.isawaitable(result):
                result = await result
            if result is None:
                logger.info("User hook rejected user %s", user.id)
                return None
            user = result
        return user
