"""Stateless session credentials.

A session is a signed JWT carrying the user's claims. Nothing is stored
server side; validity is a function of the signature, the issued-at time and
the current time. Signing keys are injected so they can be rotated: the first
key signs, every key is accepted when reading.
"""

import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from latchkey.config import settings
from latchkey.errors import InvalidSessionError, SessionExpiredError
from latchkey.models import Clock, User, utcnow

logger = logging.getLogger(__name__)

# Tolerated clock skew for credentials minted by another instance
ISSUED_AT_LEEWAY = timedelta(seconds=30)


@dataclass(frozen=True)
class SessionClaims:
    """Claims carried by a session credential."""

    user_id: str
    email: str
    community_verified: bool
    is_admin: bool
    issued_at: datetime
    expires_at: datetime


def key_id(secret: str) -> str:
    """Stable, non-reversible identifier for a signing secret."""
    return hashlib.sha256(secret.encode()).hexdigest()[:16]


class SessionMinter:
    """Mints and reads signed session credentials."""

    def __init__(
        self,
        signing_keys: Sequence[str],
        *,
        lifetime: timedelta = timedelta(hours=1),
        algorithm: str = "HS256",
        clock: Clock = utcnow,
    ) -> None:
        if not signing_keys:
            raise ValueError("At least one signing key is required")
        self.signing_keys = list(signing_keys)
        self.lifetime = lifetime
        self.algorithm = algorithm
        self.clock = clock
        self._keys_by_id = {key_id(secret): secret for secret in self.signing_keys}

    @classmethod
    def from_settings(cls, clock: Clock = utcnow) -> "SessionMinter":
        return cls(
            [settings.session_secret, *settings.session_previous_secrets],
            lifetime=timedelta(minutes=settings.session_lifetime_minutes),
            algorithm=settings.jwt_algorithm,
            clock=clock,
        )

    @property
    def active_key(self) -> str:
        return self.signing_keys[0]

    def mint(self, user: User) -> str:
        """Create a session credential for a user."""
        issued_at = int(self.clock().timestamp())
        payload = {
            "sub": user.id,
            "email": user.email,
            "community_verified": user.community_verified,
            "is_admin": user.is_admin,
            "iat": issued_at,
            "exp": issued_at + int(self.lifetime.total_seconds()),
        }
        return jwt.encode(
            payload,
            self.active_key,
            algorithm=self.algorithm,
            headers={"kid": key_id(self.active_key)},
        )

    def read(self, credential: str) -> SessionClaims:
        """Validate a session credential and return its claims.

        Raises:
            InvalidSessionError: signature, key or claims are not valid
            SessionExpiredError: the session outlived its lifetime
        """
        payload = self._decode(credential)

        try:
            user_id = payload["sub"]
            email = payload["email"]
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=UTC)
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise InvalidSessionError("Malformed session claims") from e
        if not isinstance(user_id, str) or not isinstance(email, str):
            raise InvalidSessionError("Malformed session claims")

        now = self.clock()
        if issued_at - now > ISSUED_AT_LEEWAY:
            raise InvalidSessionError("Session issued in the future")

        expires_at = issued_at + self.lifetime
        if now >= expires_at:
            raise SessionExpiredError("Session expired")

        return SessionClaims(
            user_id=user_id,
            email=email,
            community_verified=bool(payload.get("community_verified", False)),
            is_admin=bool(payload.get("is_admin", False)),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def _decode(self, credential: str) -> dict[str, Any]:
        try:
            header = jwt.get_unverified_header(credential)
        except JWTError as e:
            raise InvalidSessionError("Malformed session credential") from e

        kid = header.get("kid")
        if kid is not None:
            secret = self._keys_by_id.get(kid)
            if secret is None:
                raise InvalidSessionError("Unknown session signing key")
            candidates = [secret]
        else:
            candidates = self.signing_keys

        for secret in candidates:
            try:
                # Lifetime is checked against the injected clock, not jose's
                return jwt.decode(
                    credential,
                    secret,
                    algorithms=[self.algorithm],
                    options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
                )
            except JWTError:
                continue

        raise InvalidSessionError("Session signature verification failed")
