"""Authentication endpoint tests."""

from collections.abc import AsyncGenerator
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from latchkey.config import settings
from latchkey.errors import StorageUnavailableError
from latchkey.main import app
from latchkey.models import AuthToken, TokenKind, User
from latchkey.services.sessions import SessionMinter
from latchkey.services.store import IdentityStore
from latchkey.services.tokens import TokenIssuer
from tests.conftest import FrozenClock, RecordingEmailBackend, extract_token

OUTSIDE_IP = {"X-Forwarded-For": "203.0.113.5"}
MAGIC_LINK_SUBJECTS = {
    "Your Latchkey community access link",
    "Your Latchkey access request",
    "Your Latchkey business advertising access link",
    "Your Latchkey business advertising request",
}


def redirect_params(response) -> dict[str, list[str]]:
    return parse_qs(urlparse(response.headers["location"]).query)


def last_email(backend: RecordingEmailBackend, subject: str) -> dict:
    matching = [m for m in backend.messages if m["subject"] == subject]
    assert matching, f"no email with subject {subject!r}"
    return matching[-1]


async def request_link(client: AsyncClient, email: str, **kwargs):
    return await client.post("/api/auth/magic-link", json={"email": email}, **kwargs)


async def magic_link_token(backend: RecordingEmailBackend, email: str) -> str:
    [*_, message] = [
        m
        for m in backend.messages
        if m["to"].lower() == email.lower() and m["subject"] in MAGIC_LINK_SUBJECTS
    ]
    return extract_token(message["text"])


class TestRequestMagicLink:
    """Tests for POST /api/auth/magic-link."""

    @pytest.mark.asyncio
    async def test_creates_user_and_sends_link(
        self, client: AsyncClient, email_backend: RecordingEmailBackend, session_factory
    ):
        response = await request_link(client, "newuser@example.com")

        assert response.status_code == 200
        data = response.json()
        assert data["email_sent"] is True
        assert data["community_verified"] is True
        # Not echoed outside development
        assert data["magic_link"] is None

        [message] = email_backend.sent_to("newuser@example.com")
        assert message["subject"] == "Your Latchkey community access link"
        token = extract_token(message["text"])

        async with session_factory() as other:
            stored = (
                await other.execute(select(AuthToken).where(AuthToken.token == token))
            ).scalar_one()
        assert stored.kind == TokenKind.MAGIC_LINK

    @pytest.mark.asyncio
    async def test_outside_community_network(
        self, client: AsyncClient, email_backend: RecordingEmailBackend
    ):
        response = await request_link(client, "visitor@example.com", headers=OUTSIDE_IP)

        assert response.status_code == 200
        assert response.json()["community_verified"] is False
        [message] = email_backend.sent_to("visitor@example.com")
        assert message["subject"] == "Your Latchkey access request"

    @pytest.mark.asyncio
    async def test_business_context_verifies(
        self, client: AsyncClient, email_backend: RecordingEmailBackend
    ):
        response = await client.post(
            "/api/auth/magic-link",
            json={"email": "shop@example.com", "context": "business_advertising"},
            headers=OUTSIDE_IP,
        )

        assert response.status_code == 200
        assert response.json()["community_verified"] is True
        [message] = email_backend.sent_to("shop@example.com")
        assert message["subject"] == "Your Latchkey business advertising access link"

    @pytest.mark.asyncio
    async def test_existing_user_not_downgraded(self, client: AsyncClient, user: User):
        response = await request_link(client, user.email, headers=OUTSIDE_IP)

        assert response.status_code == 200
        assert response.json()["community_verified"] is True

    @pytest.mark.asyncio
    async def test_invalid_email(self, client: AsyncClient):
        response = await request_link(client, "not-an-email")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_context(self, client: AsyncClient):
        response = await client.post(
            "/api/auth/magic-link", json={"email": "a@example.com", "context": "other"}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_email_failure_outside_production(
        self, client: AsyncClient, email_backend: RecordingEmailBackend
    ):
        email_backend.fail = True

        response = await request_link(client, "newuser@example.com")

        assert response.status_code == 200
        assert response.json()["email_sent"] is False

    @pytest.mark.asyncio
    async def test_rate_limited(self, client: AsyncClient):
        headers = {"X-Forwarded-For": "198.51.100.7"}
        for i in range(5):
            response = await request_link(client, f"user{i}@example.com", headers=headers)
            assert response.status_code == 200

        response = await request_link(client, "user5@example.com", headers=headers)

        assert response.status_code == 429
        assert "Retry-After" in response.headers

    @pytest.mark.asyncio
    async def test_storage_unavailable(self, client: AsyncClient, monkeypatch):
        async def broken(self, email, **kwargs):
            raise StorageUnavailableError("get_or_create_user timed out")

        monkeypatch.setattr(IdentityStore, "get_or_create_user", broken)

        response = await request_link(client, "newuser@example.com")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        assert response.json()["code"] == "storage_unavailable"

    @pytest.mark.asyncio
    async def test_no_store_headers(self, client: AsyncClient):
        response = await request_link(client, "newuser@example.com")

        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["Referrer-Policy"] == "no-referrer"
        assert "X-Request-ID" in response.headers


class TestClientAddress:
    """Which address the geofence and rate limits see."""

    @pytest.fixture
    async def remote_client(self, client: AsyncClient) -> AsyncGenerator[AsyncClient, None]:
        """Client connecting directly from an address that is not a proxy."""
        transport = ASGITransport(app=app, client=("203.0.113.50", 40000))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    @pytest.mark.asyncio
    async def test_forwarded_header_ignored_from_untrusted_peer(self, remote_client: AsyncClient):
        response = await request_link(
            remote_client, "visitor@example.com", headers={"X-Forwarded-For": "10.1.2.3"}
        )

        assert response.status_code == 200
        assert response.json()["community_verified"] is False

    @pytest.mark.asyncio
    async def test_client_supplied_hops_ignored(self, client: AsyncClient):
        # The proxy appends the real client; anything left of it came from the client
        headers = {"X-Forwarded-For": "10.1.2.3, 203.0.113.9"}

        response = await request_link(client, "visitor@example.com", headers=headers)

        assert response.json()["community_verified"] is False

    @pytest.mark.asyncio
    async def test_community_client_behind_proxy_chain(self, client: AsyncClient):
        headers = {"X-Forwarded-For": "10.1.2.3, 127.0.0.2"}

        response = await request_link(client, "member@example.com", headers=headers)

        assert response.json()["community_verified"] is True

    @pytest.mark.asyncio
    async def test_forwarded_header_ignored_when_not_trusted(
        self, client: AsyncClient, monkeypatch
    ):
        monkeypatch.setattr(settings, "trust_proxy_headers", False)

        response = await request_link(client, "member@example.com", headers=OUTSIDE_IP)

        # Falls back to the socket peer, 127.0.0.1
        assert response.json()["community_verified"] is True

    @pytest.mark.asyncio
    async def test_rotating_header_from_untrusted_peer_is_limited(
        self, remote_client: AsyncClient
    ):
        statuses = [
            (
                await request_link(
                    remote_client,
                    f"user{i}@example.com",
                    headers={"X-Forwarded-For": f"198.51.100.{i}"},
                )
            ).status_code
            for i in range(6)
        ]

        assert statuses == [200] * 5 + [429]

    @pytest.mark.asyncio
    async def test_rotating_client_hops_are_limited(self, client: AsyncClient):
        statuses = [
            (
                await request_link(
                    client,
                    f"user{i}@example.com",
                    headers={"X-Forwarded-For": f"198.51.100.{i}, 203.0.113.9"},
                )
            ).status_code
            for i in range(6)
        ]

        assert statuses == [200] * 5 + [429]


class TestVerifyLink:
    """Tests for the browser flow, GET /api/auth/verify."""

    @pytest.mark.asyncio
    async def test_magic_link_login(
        self, client: AsyncClient, email_backend: RecordingEmailBackend
    ):
        await request_link(client, "newuser@example.com")
        token = await magic_link_token(email_backend, "newuser@example.com")

        response = await client.get("/api/auth/verify", params={"token": token})

        assert response.status_code == 303
        assert response.headers["location"].startswith(settings.app_url)
        assert redirect_params(response) == {"auth": ["success"]}
        assert settings.session_cookie_name in response.cookies

        me = await client.get("/api/auth/me")
        assert me.status_code == 200
        assert me.json()["email"] == "newuser@example.com"

    @pytest.mark.asyncio
    async def test_magic_link_login_sends_qr_key(
        self, client: AsyncClient, email_backend: RecordingEmailBackend
    ):
        await request_link(client, "newuser@example.com")
        token = await magic_link_token(email_backend, "newuser@example.com")

        await client.get("/api/auth/verify", params={"token": token})

        message = last_email(email_backend, "Your Latchkey QR key")
        assert message["to"] == "newuser@example.com"
        [attachment] = message["attachments"]
        assert attachment.content.startswith(b"\x89PNG")
        assert extract_token(message["text"]) != token

    @pytest.mark.asyncio
    async def test_magic_link_is_single_use(
        self, client: AsyncClient, email_backend: RecordingEmailBackend
    ):
        await request_link(client, "newuser@example.com")
        token = await magic_link_token(email_backend, "newuser@example.com")

        first = await client.get("/api/auth/verify", params={"token": token})
        second = await client.get("/api/auth/verify", params={"token": token})

        assert first.status_code == 303
        assert second.status_code == 400
        assert second.json()["detail"] == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_qr_key_login_is_reusable(
        self, client: AsyncClient, email_backend: RecordingEmailBackend, clock: FrozenClock
    ):
        await request_link(client, "newuser@example.com")
        token = await magic_link_token(email_backend, "newuser@example.com")
        await client.get("/api/auth/verify", params={"token": token})
        qr_token = extract_token(last_email(email_backend, "Your Latchkey QR key")["text"])
        sent_before = len(email_backend.messages)

        for _ in range(3):
            clock.advance(days=1)
            response = await client.get("/api/auth/verify", params={"token": qr_token})
            assert response.status_code == 303
            assert redirect_params(response) == {"auth": ["success"]}

        # QR logins do not send another key
        assert len(email_backend.messages) == sent_before

    @pytest.mark.asyncio
    async def test_expired_qr_key_redirects_and_reminds(
        self,
        client: AsyncClient,
        issuer: TokenIssuer,
        user: User,
        clock: FrozenClock,
        email_backend: RecordingEmailBackend,
    ):
        qr_key = await issuer.issue(user.id, TokenKind.QR_CODE)
        clock.advance(days=31)

        response = await client.get("/api/auth/verify", params={"token": qr_key.token})

        assert response.status_code == 303
        assert redirect_params(response) == {"expired": ["qr_key"]}
        assert settings.session_cookie_name not in response.cookies
        reminder = last_email(email_backend, "Time to renew your Latchkey QR key")
        assert reminder["to"] == user.email

    @pytest.mark.asyncio
    async def test_expired_magic_link(
        self, client: AsyncClient, issuer: TokenIssuer, user: User, clock: FrozenClock
    ):
        token = await issuer.issue(user.id, TokenKind.MAGIC_LINK)
        clock.advance(minutes=15)

        response = await client.get("/api/auth/verify", params={"token": token.token})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_unknown_token(self, client: AsyncClient):
        response = await client.get("/api/auth/verify", params={"token": "invalid-token"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or expired token"


class TestVerifyApi:
    """Tests for POST /api/auth/verify."""

    @pytest.mark.asyncio
    async def test_returns_session(
        self, client: AsyncClient, issuer: TokenIssuer, user: User, clock: FrozenClock
    ):
        token = await issuer.issue(user.id, TokenKind.MAGIC_LINK)

        response = await client.post("/api/auth/verify", json={"token": token.token})

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["kind"] == "magic_link"
        assert data["user"]["email"] == user.email
        assert data["user"]["email_verified_at"] is not None

        me = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"}
        )
        assert me.status_code == 200
        assert me.json()["user_id"] == user.id

    @pytest.mark.asyncio
    async def test_invalid_token(self, client: AsyncClient):
        response = await client.post("/api/auth/verify", json={"token": "invalid-token"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_already_used_looks_like_invalid(
        self, client: AsyncClient, issuer: TokenIssuer, user: User
    ):
        token = await issuer.issue(user.id, TokenKind.MAGIC_LINK)
        await client.post("/api/auth/verify", json={"token": token.token})

        response = await client.post("/api/auth/verify", json={"token": token.token})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_expired_qr_key_is_generic(
        self,
        client: AsyncClient,
        issuer: TokenIssuer,
        user: User,
        clock: FrozenClock,
        email_backend: RecordingEmailBackend,
    ):
        qr_key = await issuer.issue(user.id, TokenKind.QR_CODE)
        clock.advance(days=30)

        response = await client.post("/api/auth/verify", json={"token": qr_key.token})

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid or expired token"}
        # Renewal is signalled to the owner by mail only
        assert email_backend.sent_to(user.email)

    @pytest.mark.asyncio
    async def test_admin_from_allow_list(
        self, client: AsyncClient, email_backend: RecordingEmailBackend
    ):
        await request_link(client, "Admin@example.com", headers=OUTSIDE_IP)
        token = await magic_link_token(email_backend, "Admin@example.com")

        response = await client.post("/api/auth/verify", json={"token": token})

        assert response.status_code == 200
        assert response.json()["user"]["is_admin"] is True
        assert response.json()["user"]["community_verified"] is False


class TestSession:
    """Tests for /me, /logout and /qr-key."""

    @pytest.mark.asyncio
    async def test_me(self, client: AsyncClient, auth_headers: dict[str, str], user: User):
        response = await client.get("/api/auth/me", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["email"] == user.email
        assert data["is_admin"] is False
        assert data["community_verified"] is True

    @pytest.mark.asyncio
    async def test_me_unauthenticated(self, client: AsyncClient):
        response = await client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"

    @pytest.mark.asyncio
    async def test_me_expired_session(
        self, client: AsyncClient, auth_headers: dict[str, str], clock: FrozenClock
    ):
        clock.advance(hours=1)

        response = await client.get("/api/auth/me", headers=auth_headers)

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired session"

    @pytest.mark.asyncio
    async def test_me_tampered_session(
        self, client: AsyncClient, minter: SessionMinter, user: User, admin_user: User
    ):
        header, _, signature = minter.mint(user).split(".")
        _, admin_payload, _ = minter.mint(admin_user).split(".")
        headers = {"Authorization": f"Bearer {header}.{admin_payload}.{signature}"}

        response = await client.get("/api/auth/me", headers=headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_logout(self, client: AsyncClient, minter: SessionMinter, user: User):
        client.cookies.set(settings.session_cookie_name, minter.mint(user))

        response = await client.post("/api/auth/logout")

        assert response.status_code == 200
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{settings.session_cookie_name}=")
        assert "Max-Age=0" in cookie

    @pytest.mark.asyncio
    async def test_qr_key(self, client: AsyncClient, auth_headers: dict[str, str]):
        first = await client.get("/api/auth/qr-key", headers=auth_headers)
        second = await client.get("/api/auth/qr-key", headers=auth_headers)

        assert first.status_code == 200
        assert first.json()["reused"] is False
        assert first.json()["image"].startswith("data:image/png;base64,")
        assert second.json()["reused"] is True
        assert second.json()["token"] == first.json()["token"]

    @pytest.mark.asyncio
    async def test_qr_key_unauthenticated(self, client: AsyncClient):
        response = await client.get("/api/auth/qr-key")
        assert response.status_code == 401
