"""Test fixtures — a fresh in-memory database per test.

Learn: Each test gets its own SQLite database (aiosqlite, one shared
connection, foreign keys on) built from the ORM metadata, with the
role → permission table seeded and loaded exactly as the app lifespan
does. Nothing leaks between tests because the database dies with the
engine.

Argon2 cost parameters are lowered through WARDEN_* env vars before the
application settings are first imported.
"""

import os

os.environ.setdefault("WARDEN_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("WARDEN_ARGON2_TIME_COST", "1")
os.environ.setdefault("WARDEN_ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("WARDEN_ARGON2_PARALLELISM", "1")

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.dependencies import get_verifier
from warden.auth.gate import AccessControlGate
from warden.auth.outbox import get_outbox
from warden.auth.providers import ProviderIdentity
from warden.config import settings
from warden.db.engine import build_engine, get_db
from warden.db.models import Base
from warden.errors import ProviderVerificationFailed
from warden.main import app
from warden.services.permission_resolver import (
    load_role_permissions,
    reset_role_permissions,
    seed_role_permissions,
)


class FakeClock:
    """Deterministic clock. Each reading moves time forward by 1ms."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeVerifier:
    """Provider verifier keyed by artifact string."""

    def __init__(self):
        self.identities: dict[str, ProviderIdentity] = {}

    async def verify(self, provider, artifact):
        identity = self.identities.get(artifact)
        if identity is None or identity.provider != provider:
            raise ProviderVerificationFailed()
        return identity


class CollectingOutbox:
    """Captures tokens the API would hand to the mail collaborator."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, address: str, purpose: str, token: str) -> None:
        self.sent.append((address, purpose, token))

    def last(self, purpose: str) -> str:
        return [tok for _, p, tok in self.sent if p == purpose][-1]


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def cfg():
    return settings.model_copy()


@pytest.fixture()
def verifier():
    return FakeVerifier()


@pytest_asyncio.fixture()
async def db_session():
    """Per-test database with the role table seeded and loaded."""
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session = AsyncSession(engine, expire_on_commit=False)
    reset_role_permissions()
    await seed_role_permissions(session)
    await load_role_permissions(session)
    try:
        yield session
    finally:
        await session.close()
        reset_role_permissions()
        await engine.dispose()


@pytest_asyncio.fixture()
async def gate(db_session, cfg, clock, verifier):
    return AccessControlGate(db_session, cfg=cfg, clock=clock, verifier=verifier)


@pytest.fixture()
def outbox():
    return CollectingOutbox()


@pytest_asyncio.fixture()
async def client(db_session, outbox, verifier):
    """HTTP client with the database, outbox and provider verifier overridden."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_outbox] = lambda: outbox
    app.dependency_overrides[get_verifier] = lambda: verifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
