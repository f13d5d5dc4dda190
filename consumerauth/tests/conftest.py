"""Shared test fixtures for the consumer authorization test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions).
"""

import itertools

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from consumerauth.core.actor import Actor
from consumerauth.services.notification_service import drain_notifications
from consumerauth.database import Base, get_db
from consumerauth.main import app
from consumerauth.models import *  # noqa: ensure all models are loaded for create_all


# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Auto-use: create/drop tables for every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain_notifications()
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with TestSession() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestSession


@pytest.fixture
async def client():
    """httpx AsyncClient wired to the FastAPI app with test DB override."""
    import httpx

    async def _override_get_db():
        async with TestSession() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    """Return a callable that builds an Authorization header for an Actor."""
    from consumerauth.core.auth import create_user_token

    def _build(actor: Actor) -> dict:
        return {"Authorization": f"Bearer {create_user_token(actor)}"}
    return _build


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

_ids = itertools.count(1000)


@pytest.fixture
def make_actor():
    """Factory fixture: build an Actor with the given roles."""
    def _make(*roles: str, **kwargs) -> Actor:
        user_id = kwargs.pop("id", None) or next(_ids)
        kwargs.setdefault("name", f"User{user_id}")
        kwargs.setdefault("email", f"user{user_id}@example.org")
        kwargs.setdefault("email_confirmed", True)
        return Actor(id=user_id, roles=frozenset(roles or ("user",)), **kwargs)
    return _make


@pytest.fixture
def proposer(make_actor):
    return make_actor("user")


@pytest.fixture
def admin(make_actor):
    return make_actor("user", "oauth-admin")


@pytest.fixture
def oversighter(make_actor):
    return make_actor("user", "oversight")


# ---------------------------------------------------------------------------
# Lifecycle collaborators
# ---------------------------------------------------------------------------

class RecordingAudit:
    def __init__(self):
        self.entries: list[tuple[str, str, int, str]] = []

    async def record_action(self, consumer, action, performer, comment):
        self.entries.append((consumer.consumer_key, action, performer.id, comment))


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str, int]] = []

    async def notify(self, consumer, action, performer, comment):
        from consumerauth.services.notification_service import NOTIFY_ACTIONS

        if action not in NOTIFY_ACTIONS:
            raise ValueError(f"Invalid action type: {action}")
        self.sent.append((consumer.consumer_key, action, performer.id))


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_controller(audit, notifier):
    """Factory fixture: a lifecycle controller on a session, recording side effects."""
    from consumerauth.services.lifecycle_service import ConsumerLifecycleController

    def _make(session: AsyncSession, **kwargs) -> ConsumerLifecycleController:
        kwargs.setdefault("audit", audit)
        kwargs.setdefault("notifier", notifier)
        return ConsumerLifecycleController(session, **kwargs)
    return _make


@pytest.fixture
def controller(db, make_controller):
    return make_controller(db)


@pytest.fixture
def make_consumer(db, make_controller, admin):
    """Factory fixture: propose a consumer and optionally move it to a stage."""
    from consumerauth.services import consumer_registry

    counter = itertools.count(1)

    async def _make(owner: Actor, *, stage: str = "proposed", **fields):
        fields.setdefault("name", f"Test App {next(counter)}")
        fields.setdefault("version", "1.0.0")
        fields.setdefault("email", owner.email)
        fields.setdefault("callback_url", "https://app.example.org/callback")
        fields.setdefault("grants", ["editpage"])
        ctl = make_controller(db)
        result = await ctl.propose(owner, **fields)
        consumer = result.consumer

        path = {
            "proposed": [],
            "approved": ["approve"],
            "rejected": ["reject"],
            "disabled": ["approve", "disable"],
        }[stage]
        for action in path:
            await ctl.transition(
                action, admin, consumer.consumer_key,
                change_token=consumer_registry.change_token_for(consumer),
            )
        return consumer

    return _make
