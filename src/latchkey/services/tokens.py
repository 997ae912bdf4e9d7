"""Token issuance and verification.

Magic links are single-use and short-lived; QR keys are reusable for their
whole validity window. Verification is a small state machine:

    lookup miss                      -> TokenNotFoundError
    expired (any kind, used or not)  -> TokenExpiredError
    magic link, already used         -> TokenAlreadyUsedError
    magic link, unused               -> atomic claim, success
    QR key                           -> success, token unchanged

Every success stamps the owner's ``email_verified_at`` if it is still empty.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from latchkey.config import settings
from latchkey.errors import (
    TokenAlreadyUsedError,
    TokenError,
    TokenExpiredError,
    TokenNotFoundError,
    UserNotFoundError,
)
from latchkey.models import AuthToken, Clock, TokenKind, User, utcnow
from latchkey.services.store import IdentityStore

logger = logging.getLogger(__name__)

# 32 random bytes -> 43 url-safe characters
TOKEN_BYTES = 32


def generate_token_value() -> str:
    """Generate an unguessable, fixed-length, URL-safe token value."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def token_prefix(value: str) -> str:
    """Short prefix of a token value, safe to log."""
    return f"{value[:8]}..."


class TokenIssuer:
    """Creates tokens and persists them before handing them out."""

    def __init__(
        self,
        store: IdentityStore,
        *,
        magic_link_ttl: timedelta | None = None,
        qr_key_ttl: timedelta | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.magic_link_ttl = magic_link_ttl or timedelta(
            minutes=settings.magic_link_expiration_minutes
        )
        self.qr_key_ttl = qr_key_ttl or timedelta(days=settings.qr_key_expiration_days)
        self.clock = clock

    def lifetime(self, kind: TokenKind) -> timedelta:
        """Validity window for a token kind."""
        match kind:
            case TokenKind.MAGIC_LINK:
                return self.magic_link_ttl
            case TokenKind.QR_CODE:
                return self.qr_key_ttl

    async def issue(self, user_id: str, kind: TokenKind) -> AuthToken:
        """Issue a new token for a user.

        The row is committed before this returns; if persistence fails no
        token value escapes.

        Raises:
            UserNotFoundError: ``user_id`` does not reference a user
            StorageUnavailableError: the write was not confirmed
        """
        user = await self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        now = self.clock()
        token = AuthToken(
            token=generate_token_value(),
            user_id=user.id,
            kind=kind,
            expires_at=now + self.lifetime(kind),
            created_at=now,
        )
        await self.store.add_token(token)
        await self.store.commit()

        logger.info(
            f"Issued {kind.value} token {token_prefix(token.token)} for user {user.id}, "
            f"expires {token.expires_at.isoformat()}"
        )
        return token


@dataclass(frozen=True)
class VerifiedToken:
    """Identity resolved from a successfully verified token."""

    user: User
    kind: TokenKind
    expires_at: datetime

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def email(self) -> str:
        return self.user.email


class TokenVerifier:
    """Validates presented tokens and consumes magic links."""

    def __init__(self, store: IdentityStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def verify(self, value: str) -> VerifiedToken:
        """Verify a presented token value.

        Raises:
            TokenNotFoundError: unknown token
            TokenExpiredError: token past its expiry
            TokenAlreadyUsedError: magic link already redeemed
            StorageUnavailableError: store failure; never treated as success
        """
        now = self.clock()
        token = await self.store.get_token(value)
        if token is None:
            raise self._reject(value, TokenNotFoundError("Token not found"))

        # Expiry wins over every other state
        if token.is_expired(now):
            raise self._reject(value, TokenExpiredError(token.kind, token.user_id))

        if token.kind.single_use:
            if token.used_at is not None:
                raise self._reject(value, TokenAlreadyUsedError("Magic link already used"))
            if not await self.store.claim_magic_link(value, now):
                raise self._reject(value, await self._explain_lost_claim(value, now))

        user = await self.store.get_user(token.user_id)
        if user is None:
            raise self._reject(value, TokenNotFoundError("Token owner not found"))

        await self.store.mark_email_verified(user, now)
        await self.store.commit()

        logger.info(f"Verified {token.kind.value} token {token_prefix(value)} for user {user.id}")
        return VerifiedToken(user=user, kind=token.kind, expires_at=token.expires_at)

    async def _explain_lost_claim(self, value: str, now: datetime) -> TokenError:
        """Work out why a conditional claim matched no row."""
        current = await self.store.get_token(value, refresh=True)
        if current is None:
            return TokenNotFoundError("Token removed during verification")
        if current.is_expired(now):
            return TokenExpiredError(current.kind, current.user_id)
        return TokenAlreadyUsedError("Magic link already used")

    @staticmethod
    def _reject(value: str, error: TokenError) -> TokenError:
        logger.warning(f"Token {token_prefix(value)} rejected: {error.code}")
        return error
