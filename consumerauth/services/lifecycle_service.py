"""Consumer lifecycle controller.

Every management action except ``propose`` is a row in ``TRANSITIONS``:
the capability it needs, the stages it may start from, the error reported
when the stage does not allow it, the stage it moves to and what happens to
the suppression flag. ``transition()`` runs the same guard sequence for
every row:

    action capability -> suppress capability (when suppression is requested)
    -> record lookup -> owner check -> suppressed record check
    -> stage guard -> change token

so no record state is read before the actor has proven they may act at all.
Audit and notification happen after commit, and only when at least one
persisted field actually changed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from consumerauth.config import settings
from consumerauth.core.actor import Actor
from consumerauth.core.exceptions import (
    ChangeConflictError,
    ConsumerAuthError,
    ConsumerExistsError,
    EmailMismatchedError,
    EmailNotConfirmedError,
    InvalidActionError,
    InvalidConsumerKeyError,
    InvalidRequestError,
    ManagementScopeError,
    NotApprovedError,
    NotDisabledError,
    NotLoggedInError,
    NotProposedError,
    PermissionDeniedError,
    ReadOnlyError,
    UserBlockedError,
)
from consumerauth.core.grants import NORMAL, GrantCatalog
from consumerauth.core.permissions import (
    MANAGE_CONSUMER,
    PROPOSE_CONSUMER,
    SUPPRESS_CONSUMER,
    UPDATE_OWN_CONSUMER,
    CapabilityChecker,
    RoleCapabilityChecker,
)
from consumerauth.core.sites import ALL_SITES, SiteResolver, StaticSiteResolver
from consumerauth.core.tokens import TokenCredentials, new_consumer_key, new_consumer_secret, new_token
from consumerauth.database import translate_storage_errors
from consumerauth.models.audit_log import ConsumerLogEntry
from consumerauth.models.consumer import Consumer, ConsumerStage, dump_grants, dump_restrictions
from consumerauth.services import acceptance_service, audit_service, consumer_registry
from consumerauth.services.audit_service import AuditSink, DatabaseAuditSink
from consumerauth.services.notification_service import ConsumerNotifier, Notifier

logger = logging.getLogger(__name__)

PROPOSE = "propose"
UPDATE = "update"
APPROVE = "approve"
REJECT = "reject"
DISABLE = "disable"
REENABLE = "reenable"

# Log action for owner-only proposals; these are never sent as notifications
CREATE_OWNER_ONLY = "create-owner-only"

# What a transition does to the suppression flag
DELETED_KEEP = "keep"
DELETED_CLEAR = "clear"
DELETED_FROM_REQUEST = "from-request"


@dataclass(frozen=True)
class Transition:
    action: str
    capability: str
    sources: frozenset[ConsumerStage]
    stage_error: type[ConsumerAuthError]
    target: ConsumerStage | None = None  # None keeps the current stage
    deleted: str = DELETED_KEEP
    accepts_suppress: bool = False
    owner_only: bool = False  # only the consumer's owner may act
    # Stages allowed only when the requested suppression differs from the current flag
    resuppress_sources: frozenset[ConsumerStage] = frozenset()

    def permits(self, stage: ConsumerStage, deleted: bool, suppress: bool) -> bool:
        if stage in self.sources:
            return True
        return stage in self.resuppress_sources and bool(deleted) != suppress


TRANSITIONS: dict[str, Transition] = {
    UPDATE: Transition(
        action=UPDATE,
        capability=UPDATE_OWN_CONSUMER,
        sources=frozenset({ConsumerStage.PROPOSED, ConsumerStage.APPROVED}),
        stage_error=PermissionDeniedError,
        owner_only=True,
    ),
    APPROVE: Transition(
        action=APPROVE,
        capability=MANAGE_CONSUMER,
        sources=frozenset({ConsumerStage.PROPOSED, ConsumerStage.EXPIRED, ConsumerStage.REJECTED}),
        stage_error=NotProposedError,
        target=ConsumerStage.APPROVED,
        deleted=DELETED_CLEAR,
    ),
    REJECT: Transition(
        action=REJECT,
        capability=MANAGE_CONSUMER,
        sources=frozenset({ConsumerStage.PROPOSED}),
        stage_error=NotProposedError,
        target=ConsumerStage.REJECTED,
        deleted=DELETED_FROM_REQUEST,
        accepts_suppress=True,
    ),
    DISABLE: Transition(
        action=DISABLE,
        capability=MANAGE_CONSUMER,
        sources=frozenset({ConsumerStage.APPROVED}),
        stage_error=NotApprovedError,
        target=ConsumerStage.DISABLED,
        deleted=DELETED_FROM_REQUEST,
        accepts_suppress=True,
        resuppress_sources=frozenset({ConsumerStage.DISABLED}),
    ),
    REENABLE: Transition(
        action=REENABLE,
        capability=MANAGE_CONSUMER,
        sources=frozenset({ConsumerStage.DISABLED}),
        stage_error=NotDisabledError,
        target=ConsumerStage.APPROVED,
        deleted=DELETED_CLEAR,
    ),
}


@dataclass
class ActionResult:
    consumer: Consumer
    access_token: TokenCredentials | None = None
    changed: bool = True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConsumerLifecycleController:
    """Runs consumer management actions against one database session."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        capabilities: CapabilityChecker | None = None,
        sites: SiteResolver | None = None,
        grants: GrantCatalog | None = None,
        audit: AuditSink | None = None,
        notifier: Notifier | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self._db = db
        self._capabilities = capabilities or RoleCapabilityChecker.from_settings()
        self._sites = sites or StaticSiteResolver.from_settings()
        self._grants = grants or GrantCatalog.from_settings()
        self._audit = audit or DatabaseAuditSink(db)
        self._notifier = notifier or ConsumerNotifier()
        self._now = now or _utcnow

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _check_base(self, actor: Actor) -> None:
        if actor.is_anonymous:
            raise NotLoggedInError()
        if actor.locked or (settings.block_disables_login and actor.blocked):
            raise UserBlockedError()
        if settings.read_only_reason:
            raise ReadOnlyError(settings.read_only_reason)
        if not self._sites.is_management_site():
            # Consumer changes are logged on the management site only
            raise ManagementScopeError("Consumer management is only available on the management site")

    def _can(self, actor: Actor, capability: str) -> bool:
        return self._capabilities.has_capability(actor, capability)

    def _require(self, actor: Actor, capability: str) -> None:
        if not self._can(actor, capability):
            raise PermissionDeniedError()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def propose(
        self,
        actor: Actor,
        *,
        name: str,
        version: str,
        email: str,
        wiki: str = ALL_SITES,
        description: str = "",
        callback_url: str = "",
        callback_is_prefix: bool = False,
        grant_type: str = NORMAL,
        grants: list[str] | tuple[str, ...] = (),
        restrictions: dict | None = None,
        rsa_key: str = "",
        owner_only: bool = False,
    ) -> ActionResult:
        """Register a new consumer, or a new version of an existing one.

        Owner-only consumers skip review: they are created approved and the
        proposer's acceptance, with a freshly issued access token, is written
        in the same transaction.
        """
        self._check_base(actor)
        self._require(actor, PROPOSE_CONSUMER)
        if not actor.email_confirmed:
            raise EmailNotConfirmedError()
        if actor.email != email:
            raise EmailMismatchedError()

        site = self._sites.resolve(wiki)
        if site is None:
            raise InvalidRequestError(f"Unknown wiki: {wiki}")

        with translate_storage_errors():
            existing = await consumer_registry.find_latest_by_name_version(
                self._db, name, version, actor.id,
            )
            if existing is not None:
                await self._db.rollback()
                raise ConsumerExistsError(
                    f"A consumer named {name!r} already exists at version {existing.version}"
                )

            try:
                resolved_grants = self._grants.expand(grant_type, grants)
            except ValueError as exc:
                await self._db.rollback()
                raise InvalidRequestError(str(exc)) from exc

            if owner_only:
                callback_url = settings.owner_only_callback_url
                callback_is_prefix = False
                stage = ConsumerStage.APPROVED
            else:
                stage = ConsumerStage.PROPOSED

            now = self._now()
            consumer = await consumer_registry.create_consumer(
                self._db,
                consumer_key=new_consumer_key(),
                secret_key=new_consumer_secret(),
                name=name,
                version=version,
                user_id=actor.id,
                wiki=site,
                email=actor.email,
                email_authenticated=now,
                developer_agreement=True,
                description=description,
                callback_url=callback_url,
                callback_is_prefix=callback_is_prefix,
                rsa_key=rsa_key or "",
                grant_type=grant_type,
                grants=dump_grants(resolved_grants),
                restrictions=dump_restrictions(restrictions),
                owner_only=owner_only,
                registration=now,
                stage=stage.value,
                stage_timestamp=now,
                deleted=False,
            )

            access_token = None
            if owner_only:
                access_token = new_token()
                await acceptance_service.grant_acceptance(
                    self._db, consumer=consumer, user_id=actor.id, access_token=access_token,
                )
            await self._db.commit()

        logger.info("Consumer %s (%s %s) proposed by %s", consumer.consumer_key, name, version, actor.id)
        if owner_only:
            await self._after_change(consumer, CREATE_OWNER_ONLY, actor, description, notify=False)
        else:
            await self._after_change(consumer, PROPOSE, actor, description)
        return ActionResult(consumer=consumer, access_token=access_token, changed=True)

    async def transition(
        self,
        action: str,
        actor: Actor,
        consumer_key: str,
        *,
        change_token: str | None,
        reason: str = "",
        suppress: bool = False,
        rsa_key: str | None = None,
        restrictions: dict | None = None,
        reset_secret: bool = False,
    ) -> ActionResult:
        """Apply a management action to an existing consumer.

        ``change_token`` must be the token of the record as the caller last
        saw it; anything else is a ChangeConflictError.
        """
        self._check_base(actor)
        rule = TRANSITIONS.get(action)
        if rule is None:
            raise InvalidActionError(f"Unknown consumer action: {action}")

        self._require(actor, rule.capability)
        suppress = bool(suppress) and rule.accepts_suppress
        may_suppress = self._can(actor, SUPPRESS_CONSUMER)
        if suppress and not may_suppress:
            raise PermissionDeniedError()

        with translate_storage_errors():
            consumer = await consumer_registry.lookup_by_key(self._db, consumer_key)
            if consumer is None:
                raise InvalidConsumerKeyError()
            if rule.owner_only and consumer.user_id != actor.id:
                raise PermissionDeniedError()
            if consumer.deleted and not may_suppress:
                raise PermissionDeniedError()
            if not rule.permits(consumer.get_stage(), consumer.deleted, suppress):
                raise rule.stage_error()
            if not consumer_registry.check_change_token(consumer, change_token):
                raise ChangeConflictError()

            delta = self._delta_for(
                rule, consumer,
                suppress=suppress,
                rsa_key=rsa_key,
                restrictions=restrictions,
                reset_secret=reset_secret,
            )
            changed = await consumer_registry.mutate(self._db, consumer, delta)

            access_token = None
            if rule.action == UPDATE and consumer.owner_only and reset_secret:
                access_token = await acceptance_service.rotate_owner_acceptance(self._db, consumer, actor.id)
            await self._db.commit()

        if changed:
            await self._after_change(consumer, action, actor, reason)
        else:
            logger.debug("Action %s on consumer %s changed nothing", action, consumer_key)
        return ActionResult(consumer=consumer, access_token=access_token, changed=changed)

    async def view(self, actor: Actor, consumer_key: str) -> Consumer:
        """Return a consumer the actor may see: their own, or any as a manager.

        Suppressed consumers are only visible with the suppress capability.
        Anything not visible is reported as an unknown key.
        """
        if actor.is_anonymous:
            raise NotLoggedInError()
        is_manager = self._can(actor, MANAGE_CONSUMER)
        if not is_manager and not self._can(actor, UPDATE_OWN_CONSUMER):
            raise PermissionDeniedError()

        with translate_storage_errors():
            consumer = await consumer_registry.lookup_by_key(self._db, consumer_key)
        if consumer is None:
            raise InvalidConsumerKeyError()
        if consumer.deleted and not self._can(actor, SUPPRESS_CONSUMER):
            raise InvalidConsumerKeyError()
        if not is_manager and consumer.user_id != actor.id:
            raise InvalidConsumerKeyError()
        return consumer

    async def history(self, actor: Actor, consumer_key: str) -> list[ConsumerLogEntry]:
        consumer = await self.view(actor, consumer_key)
        with translate_storage_errors():
            return await audit_service.list_entries(self._db, consumer.consumer_key)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _delta_for(
        self,
        rule: Transition,
        consumer: Consumer,
        *,
        suppress: bool,
        rsa_key: str | None,
        restrictions: dict | None,
        reset_secret: bool,
    ) -> dict:
        delta: dict = {}
        if rule.target is not None and consumer.stage != rule.target.value:
            delta["stage"] = rule.target.value
            delta["stage_timestamp"] = self._now()

        if rule.deleted == DELETED_CLEAR:
            delta["deleted"] = False
        elif rule.deleted == DELETED_FROM_REQUEST:
            delta["deleted"] = suppress

        if rule.action == UPDATE:
            if rsa_key is not None:
                delta["rsa_key"] = rsa_key
            if restrictions is not None:
                delta["restrictions"] = dump_restrictions(restrictions)
            if reset_secret:
                delta["secret_key"] = new_consumer_secret()
        return delta

    async def _after_change(
        self, consumer: Consumer, action: str, actor: Actor, comment: str, *, notify: bool = True,
    ) -> None:
        try:
            await self._audit.record_action(consumer, action, actor, comment)
        except Exception:
            logger.exception("Audit sink failed for %s on consumer %s", action, consumer.consumer_key)

        if not notify:
            return
        try:
            await self._notifier.notify(consumer, action, actor, comment)
        except ValueError:
            raise
        except Exception:
            logger.exception("Notifier failed for %s on consumer %s", action, consumer.consumer_key)
