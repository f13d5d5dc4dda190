"""Lifecycle controller: proposals, owner-only consumers, updates, guards and side effects."""

import asyncio
import logging
import re

import pytest
from sqlalchemy import select

from consumerauth.config import settings
from consumerauth.core.actor import ANONYMOUS, Actor
from consumerauth.core.exceptions import ConsumerAuthError, ManagementScopeError, StorageUnavailableError
from consumerauth.core.sites import StaticSiteResolver
from consumerauth.models.consumer import ConsumerAcceptance
from consumerauth.services import acceptance_service, audit_service, consumer_registry
from consumerauth.services.notification_service import ConsumerNotifier, drain_notifications


def _kind(exc_info) -> str:
    return exc_info.value.kind


async def _propose(controller, actor, **fields):
    fields.setdefault("name", "Lifecycle App")
    fields.setdefault("version", "1.0.0")
    fields.setdefault("email", actor.email)
    fields.setdefault("callback_url", "https://app.example.org/callback")
    fields.setdefault("grants", ["editpage"])
    return await controller.propose(actor, **fields)


# ---------------------------------------------------------------------------
# Base checks
# ---------------------------------------------------------------------------

class TestBaseChecks:
    async def test_anonymous_is_not_logged_in(self, controller):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, ANONYMOUS, email="")
        assert _kind(exc_info) == "not_logged_in"

    async def test_blocked_user(self, controller, make_actor):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, make_actor("user", blocked=True))
        assert _kind(exc_info) == "user_blocked"

    async def test_block_ignored_when_block_does_not_disable_login(self, controller, make_actor, monkeypatch):
        monkeypatch.setattr(settings, "block_disables_login", False)
        result = await _propose(controller, make_actor("user", blocked=True))
        assert result.consumer.stage == "proposed"

    async def test_locked_user_always_rejected(self, controller, make_actor, monkeypatch):
        monkeypatch.setattr(settings, "block_disables_login", False)
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, make_actor("user", locked=True))
        assert _kind(exc_info) == "user_blocked"

    async def test_read_only_store(self, controller, proposer, monkeypatch):
        monkeypatch.setattr(settings, "read_only_reason", "Database maintenance")
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, proposer)
        assert _kind(exc_info) == "readonly"
        assert exc_info.value.message == "Database maintenance"

    async def test_outside_management_site_is_fatal(self, db, make_controller, proposer):
        ctl = make_controller(db, sites=StaticSiteResolver("enwiki", "metawiki", {"enwiki": "English"}))
        with pytest.raises(ManagementScopeError):
            await _propose(ctl, proposer)

    async def test_unknown_action(self, controller, admin):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition("delete", admin, "a" * 32, change_token="0" * 40)
        assert _kind(exc_info) == "invalid_action"


# ---------------------------------------------------------------------------
# Propose
# ---------------------------------------------------------------------------

class TestPropose:
    async def test_creates_proposed_consumer(self, controller, proposer, audit, notifier):
        result = await _propose(controller, proposer)
        consumer = result.consumer

        assert consumer.stage == "proposed"
        assert re.fullmatch(r"[0-9a-f]{32}", consumer.consumer_key)
        assert re.fullmatch(r"[0-9a-f]{32}", consumer.secret_key)
        assert consumer.user_id == proposer.id
        assert consumer.get_grants() == ["basic", "editpage"]
        assert consumer.developer_agreement is True
        assert result.access_token is None
        assert audit.entries == [(consumer.consumer_key, "propose", proposer.id, "")]
        assert notifier.sent == [(consumer.consumer_key, "propose", proposer.id)]

    async def test_requires_propose_capability(self, controller, make_actor):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, make_actor("oauth-admin"))
        assert _kind(exc_info) == "permission_denied"

    async def test_requires_confirmed_email(self, controller, make_actor):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, make_actor("user", email_confirmed=False))
        assert _kind(exc_info) == "email_not_confirmed"

    async def test_submitted_email_must_match(self, controller, proposer):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, proposer, email="someone-else@example.org")
        assert _kind(exc_info) == "email_mismatched"

    async def test_duplicate_version_rejected(self, controller, proposer):
        await _propose(controller, proposer, name="Foo", version="1.0.0")
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, proposer, name="Foo", version="1.0.0")
        assert _kind(exc_info) == "consumer_exists"

    async def test_older_version_rejected_newer_allowed(self, controller, proposer):
        await _propose(controller, proposer, name="Foo", version="2.0")
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, proposer, name="Foo", version="1.5")
        assert _kind(exc_info) == "consumer_exists"

        result = await _propose(controller, proposer, name="Foo", version="2.1")
        assert result.consumer.version == "2.1"

    async def test_same_name_for_another_owner_allowed(self, controller, proposer, make_actor):
        await _propose(controller, proposer, name="Foo")
        result = await _propose(controller, make_actor("user"), name="Foo")
        assert result.consumer.name == "Foo"

    async def test_racing_duplicate_caught_by_unique_constraint(self, db, controller, proposer, monkeypatch):
        """A proposal that slips past the lookup still fails on insert."""
        await _propose(controller, proposer, name="Foo", version="1.0.0")

        async def _nothing_found(*args, **kwargs):
            return None

        monkeypatch.setattr(consumer_registry, "find_latest_by_name_version", _nothing_found)
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, proposer, name="Foo", version="1.0.0")
        assert _kind(exc_info) == "consumer_exists"

    async def test_wiki_display_name_resolves_to_key(self, controller, proposer):
        result = await _propose(controller, proposer, wiki="English Wikipedia")
        assert result.consumer.wiki == "enwiki"

    async def test_unknown_wiki(self, controller, proposer):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, proposer, wiki="nowhere")
        assert _kind(exc_info) == "invalid_request"

    async def test_unknown_grant(self, controller, proposer):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await _propose(controller, proposer, grants=["rootaccess"])
        assert _kind(exc_info) == "invalid_request"

    async def test_authonly_grant_type(self, controller, proposer):
        result = await _propose(controller, proposer, grant_type="authonly", grants=["editpage"])
        assert result.consumer.get_grants() == ["mwoauth-authonly"]


class TestOwnerOnly:
    async def test_owner_only_is_approved_with_acceptance(self, db, controller, proposer, audit, notifier):
        result = await _propose(controller, proposer, owner_only=True, callback_is_prefix=True)
        consumer = result.consumer

        assert consumer.stage == "approved"
        assert consumer.owner_only is True
        assert consumer.callback_url == settings.owner_only_callback_url
        assert consumer.callback_is_prefix is False
        assert result.access_token is not None

        acceptance = await acceptance_service.get_current_authorization(db, proposer.id, consumer.id, consumer.wiki)
        assert acceptance is not None
        assert acceptance.access_token == result.access_token.key
        assert acceptance.access_secret == result.access_token.secret
        assert acceptance.get_grants() == consumer.get_grants()

        assert audit.entries == [(consumer.consumer_key, "create-owner-only", proposer.id, "")]
        assert notifier.sent == []

    async def test_reset_secret_rotates_owner_token_keeping_key(self, db, controller, proposer):
        proposed = await _propose(controller, proposer, owner_only=True)
        consumer = proposed.consumer
        old_secret = consumer.secret_key

        result = await controller.transition(
            "update", proposer, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
            reset_secret=True,
        )

        assert result.changed is True
        assert result.consumer.secret_key != old_secret
        assert result.access_token.key == proposed.access_token.key
        assert result.access_token.secret != proposed.access_token.secret

        rows = (await db.execute(
            select(ConsumerAcceptance).where(ConsumerAcceptance.consumer_id == consumer.id)
        )).scalars().all()
        assert len(rows) == 1
        assert rows[0].access_secret == result.access_token.secret


# ---------------------------------------------------------------------------
# Update and management actions
# ---------------------------------------------------------------------------

class TestTransitions:
    async def test_identical_update_is_silent_success(self, controller, make_consumer, proposer, audit, notifier):
        consumer = await make_consumer(proposer, restrictions={"IPAddresses": ["10.0.0.0/8"]})
        audit_before, notify_before = len(audit.entries), len(notifier.sent)

        result = await controller.transition(
            "update", proposer, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
            rsa_key="",
            restrictions={"IPAddresses": ["10.0.0.0/8"]},
        )

        assert result.changed is False
        assert result.consumer.revision == 1
        assert len(audit.entries) == audit_before
        assert len(notifier.sent) == notify_before

    async def test_update_changes_restrictions(self, controller, make_consumer, proposer, audit):
        consumer = await make_consumer(proposer)
        result = await controller.transition(
            "update", proposer, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
            restrictions={"IPAddresses": ["192.0.2.0/24"]},
            reason="lock down",
        )
        assert result.changed is True
        assert result.consumer.get_restrictions() == {"IPAddresses": ["192.0.2.0/24"]}
        assert audit.entries[-1] == (consumer.consumer_key, "update", proposer.id, "lock down")

    async def test_update_reset_secret_without_owner_only_issues_no_token(self, controller, make_consumer, proposer):
        consumer = await make_consumer(proposer)
        old = consumer.secret_key
        result = await controller.transition(
            "update", proposer, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
            reset_secret=True,
        )
        assert result.consumer.secret_key != old
        assert result.access_token is None

    async def test_update_by_non_owner_denied(self, controller, make_consumer, proposer, make_actor):
        consumer = await make_consumer(proposer)
        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition(
                "update", make_actor("user"), consumer.consumer_key,
                change_token=consumer_registry.change_token_for(consumer),
            )
        assert _kind(exc_info) == "permission_denied"

    async def test_stale_change_token_is_conflict(self, controller, make_consumer, proposer, admin):
        consumer = await make_consumer(proposer)
        stale = consumer_registry.change_token_for(consumer)
        await controller.transition("update", proposer, consumer.consumer_key, change_token=stale, reset_secret=True)

        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition("approve", admin, consumer.consumer_key, change_token=stale)
        assert _kind(exc_info) == "change_conflict"

    async def test_missing_change_token_is_conflict(self, controller, make_consumer, proposer, admin):
        consumer = await make_consumer(proposer)
        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition("approve", admin, consumer.consumer_key, change_token=None)
        assert _kind(exc_info) == "change_conflict"

    async def test_permission_checked_before_lookup(self, controller, proposer):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition("approve", proposer, "f" * 32, change_token="0" * 40)
        assert _kind(exc_info) == "permission_denied"

    async def test_unknown_key_for_manager(self, controller, admin):
        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition("approve", admin, "f" * 32, change_token="0" * 40)
        assert _kind(exc_info) == "invalid_consumer_key"

    async def test_approve_records_reason(self, controller, make_consumer, proposer, admin, audit, notifier):
        consumer = await make_consumer(proposer)
        await controller.transition(
            "approve", admin, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
            reason="looks fine",
        )
        assert audit.entries[-1] == (consumer.consumer_key, "approve", admin.id, "looks fine")
        assert notifier.sent[-1] == (consumer.consumer_key, "approve", admin.id)

    async def test_concurrent_approvals_one_wins(self, db, make_controller, make_consumer, proposer, admin, session_factory):
        consumer = await make_consumer(proposer)
        token = consumer_registry.change_token_for(consumer)

        async with session_factory() as first, session_factory() as second:
            # Both requests read the proposed record before either writes
            await consumer_registry.lookup_by_key(first, consumer.consumer_key)
            await consumer_registry.lookup_by_key(second, consumer.consumer_key)

            winner = await make_controller(first).transition(
                "approve", admin, consumer.consumer_key, change_token=token,
            )
            assert winner.consumer.stage == "approved"

            with pytest.raises(ConsumerAuthError) as exc_info:
                await make_controller(second).transition(
                    "approve", admin, consumer.consumer_key, change_token=token,
                )
            assert _kind(exc_info) == "change_conflict"


class TestSuppression:
    async def test_reject_with_suppress_requires_suppress_capability(self, db, controller, make_consumer, proposer, admin):
        consumer = await make_consumer(proposer)
        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition(
                "reject", admin, consumer.consumer_key,
                change_token=consumer_registry.change_token_for(consumer),
                suppress=True,
            )
        assert _kind(exc_info) == "permission_denied"
        await db.refresh(consumer)
        assert consumer.deleted is False
        assert consumer.stage == "proposed"

    async def test_disable_with_suppress_requires_suppress_capability(self, db, controller, make_consumer, proposer, admin):
        consumer = await make_consumer(proposer, stage="approved")
        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition(
                "disable", admin, consumer.consumer_key,
                change_token=consumer_registry.change_token_for(consumer),
                suppress=True,
            )
        assert _kind(exc_info) == "permission_denied"
        await db.refresh(consumer)
        assert consumer.deleted is False
        assert consumer.stage == "approved"

    async def test_suppressed_record_hidden_from_ordinary_admins(self, controller, make_consumer, proposer, admin, oversighter):
        consumer = await make_consumer(proposer)
        await controller.transition(
            "reject", oversighter, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
            suppress=True,
        )
        assert consumer.deleted is True

        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.transition(
                "approve", admin, consumer.consumer_key,
                change_token=consumer_registry.change_token_for(consumer),
            )
        assert _kind(exc_info) == "permission_denied"

        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.view(admin, consumer.consumer_key)
        assert _kind(exc_info) == "invalid_consumer_key"

        result = await controller.transition(
            "approve", oversighter, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
        )
        assert result.consumer.stage == "approved"
        assert result.consumer.deleted is False

    async def test_suppress_flag_ignored_for_actions_without_it(self, controller, make_consumer, proposer, admin):
        consumer = await make_consumer(proposer)
        result = await controller.transition(
            "approve", admin, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
            suppress=True,
        )
        assert result.consumer.deleted is False


# ---------------------------------------------------------------------------
# View
# ---------------------------------------------------------------------------

class TestView:
    async def test_owner_and_manager_can_view(self, controller, make_consumer, proposer, admin):
        consumer = await make_consumer(proposer)
        assert (await controller.view(proposer, consumer.consumer_key)).id == consumer.id
        assert (await controller.view(admin, consumer.consumer_key)).id == consumer.id

    async def test_other_user_sees_unknown_key(self, controller, make_consumer, proposer, make_actor):
        consumer = await make_consumer(proposer)
        with pytest.raises(ConsumerAuthError) as exc_info:
            await controller.view(make_actor("user"), consumer.consumer_key)
        assert _kind(exc_info) == "invalid_consumer_key"


# ---------------------------------------------------------------------------
# Side effects
# ---------------------------------------------------------------------------

class TestSideEffects:
    async def test_audit_failure_does_not_fail_action(self, db, make_controller, proposer):
        class BrokenAudit:
            async def record_action(self, *args):
                raise RuntimeError("log store down")

        ctl = make_controller(db, audit=BrokenAudit())
        result = await _propose(ctl, proposer)
        assert result.consumer.id is not None

    async def test_notifier_failure_does_not_fail_action(self, db, make_controller, proposer):
        class BrokenNotifier:
            async def notify(self, *args):
                raise ConnectionError("smtp down")

        ctl = make_controller(db, notifier=BrokenNotifier())
        result = await _propose(ctl, proposer)
        assert result.consumer.stage == "proposed"

    async def test_database_audit_sink_builds_hash_chain(self, db, make_controller, proposer, admin):
        ctl = make_controller(db, audit=None)
        proposed = await _propose(ctl, proposer, description="first app")
        consumer = proposed.consumer
        await ctl.transition(
            "approve", admin, consumer.consumer_key,
            change_token=consumer_registry.change_token_for(consumer),
            reason="ok",
        )

        entries = await audit_service.list_entries(db, consumer.consumer_key)
        assert [e.action for e in entries] == ["propose", "approve"]
        assert entries[0].comment == "first app"
        assert entries[0].target_user_id == proposer.id
        assert entries[1].performer_id == admin.id
        assert entries[1].prev_hash == entries[0].entry_hash

    async def test_history_requires_visibility(self, db, make_controller, proposer, make_actor):
        ctl = make_controller(db, audit=None)
        consumer = (await _propose(ctl, proposer)).consumer
        assert [e.action for e in await ctl.history(proposer, consumer.consumer_key)] == ["propose"]
        with pytest.raises(ConsumerAuthError):
            await ctl.history(make_actor("user"), consumer.consumer_key)


class TestConsumerNotifier:
    async def test_unknown_action_is_fatal(self, controller, proposer):
        consumer = (await _propose(controller, proposer)).consumer
        with pytest.raises(ValueError):
            await ConsumerNotifier().notify(consumer, "create-owner-only", proposer, None)

    async def test_delivers_payload_in_background(self, controller, proposer, admin):
        consumer = (await _propose(controller, proposer)).consumer
        delivered = []

        await ConsumerNotifier(deliver=delivered.append).notify(consumer, "approve", admin, "ok")
        await drain_notifications()

        assert delivered == [{
            "type": "oauth-app-approve",
            "consumer_key": consumer.consumer_key,
            "consumer_name": consumer.name,
            "consumer_version": consumer.version,
            "owner_id": proposer.id,
            "performer_id": admin.id,
            "performer_name": admin.name,
            "comment": "ok",
        }]

    async def test_delivery_failure_is_logged_with_consumer(self, controller, proposer, admin, caplog):
        consumer = (await _propose(controller, proposer)).consumer

        async def _fail(payload):
            raise ConnectionError("down")

        with caplog.at_level(logging.ERROR, logger="consumerauth.services.notification_service"):
            await ConsumerNotifier(deliver=_fail).notify(consumer, "approve", admin, None)
            assert await drain_notifications() == 0
        assert f"oauth-app-approve notification for consumer {consumer.consumer_key}" in caplog.text

    async def test_drain_cancels_slow_deliveries(self, controller, proposer, admin):
        consumer = (await _propose(controller, proposer)).consumer

        async def _hang(payload):
            await asyncio.sleep(60)

        await ConsumerNotifier(deliver=_hang).notify(consumer, "approve", admin, None)
        assert await drain_notifications(timeout_seconds=0.01) == 1
        assert await drain_notifications() == 0


def test_storage_errors_become_storage_unavailable():
    from sqlalchemy.exc import OperationalError

    from consumerauth.database import translate_storage_errors

    with pytest.raises(StorageUnavailableError) as exc_info:
        with translate_storage_errors():
            raise OperationalError("SELECT 1", {}, Exception("connection lost"))
    assert exc_info.value.kind == "storage_unavailable"
    assert exc_info.value.status_code == 503


def test_actor_is_frozen():
    actor = Actor(id=1)
    with pytest.raises(Exception):
        actor.id = 2
