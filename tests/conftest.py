"""Pytest configuration and fixtures."""

import os
import re
from collections.abc import AsyncGenerator, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

# Set test environment before importing app
os.environ["ENVIRONMENT"] = "test"
os.environ["ADMIN_EMAILS"] = '["admin@example.com"]'
# The test client connects from 127.0.0.1, a trusted proxy, so tests pick
# the client address with X-Forwarded-For
os.environ["TRUST_PROXY_HEADERS"] = "true"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from latchkey.api.deps import get_clock, get_email_service
from latchkey.database import get_session
from latchkey.main import app
from latchkey.models import User
from latchkey.services.email import EmailAttachment, EmailBackend, EmailService
from latchkey.services.rate_limit import get_rate_limiter
from latchkey.services.sessions import SessionMinter
from latchkey.services.store import IdentityStore
from latchkey.services.tokens import TokenIssuer, TokenVerifier

TOKEN_PATTERN = re.compile(r"token=([A-Za-z0-9_-]+)")


def extract_token(text: str) -> str:
    """Pull the first token value out of a verify URL embedded in text."""
    match = TOKEN_PATTERN.search(text)
    assert match, f"no token in {text!r}"
    return match.group(1)


class FrozenClock:
    """Controllable clock for expiry tests."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEmailBackend(EmailBackend):
    """Email backend that records messages instead of sending them."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.fail = False
        self.error: Exception | None = None

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        attachments: Sequence[EmailAttachment] = (),
    ) -> bool:
        if self.error is not None:
            raise self.error
        if self.fail:
            return False
        self.messages.append(
            {
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
                "attachments": list(attachments),
            }
        )
        return True

    def sent_to(self, to: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m["to"] == to]


@pytest.fixture
async def test_engine(tmp_path):
    """Create a file-backed SQLite engine with a fresh schema.

    NullPool gives every session its own connection, so concurrent sessions
    really race against each other in the database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'latchkey.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session: AsyncSession) -> IdentityStore:
    return IdentityStore(session)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def issuer(store: IdentityStore, clock: FrozenClock) -> TokenIssuer:
    return TokenIssuer(store, clock=clock)


@pytest.fixture
def verifier(store: IdentityStore, clock: FrozenClock) -> TokenVerifier:
    return TokenVerifier(store, clock=clock)


@pytest.fixture
def email_backend() -> RecordingEmailBackend:
    return RecordingEmailBackend()


@pytest.fixture
def emails(email_backend: RecordingEmailBackend) -> EmailService:
    return EmailService(email_backend)


@pytest.fixture
def minter(clock: FrozenClock) -> SessionMinter:
    return SessionMinter.from_settings(clock=clock)


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Rate limits are in-memory and global; start every test clean."""
    get_rate_limiter().reset()
    yield
    get_rate_limiter().reset()


@pytest.fixture
async def client(
    session_factory, clock: FrozenClock, emails: EmailService
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_email_service] = lambda: emails

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def user(session: AsyncSession) -> User:
    """Create a test user."""
    user = User(email="test@example.com", community_verified=True)
    session.add(user)
    await session.commit()
    return user


@pytest.fixture
async def admin_user(session: AsyncSession) -> User:
    """Create a test admin user."""
    user = User(email="admin@example.com", community_verified=True, is_admin=True)
    session.add(user)
    await session.commit()
    return user


@pytest.fixture
def auth_headers(user: User, minter: SessionMinter) -> dict[str, str]:
    """Create authorization headers for the test user."""
    return {"Authorization": f"Bearer {minter.mint(user)}"}


@pytest.fixture
def admin_headers(admin_user: User, minter: SessionMinter) -> dict[str, str]:
    """Create authorization headers for the admin user."""
    return {"Authorization": f"Bearer {minter.mint(admin_user)}"}
