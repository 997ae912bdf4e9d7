"""Error taxonomy for token issuance, verification and sessions.

Storage errors are transient and left for the caller to retry at the HTTP
boundary. Everything else is terminal and surfaced as-is; the HTTP layer
decides how much of the reason the end user gets to see.
"""

from latchkey.models.auth_token import TokenKind


class LatchkeyError(Exception):
    """Base class for all latchkey errors."""


class StorageUnavailableError(LatchkeyError):
    """Identity store call failed or did not finish within its timeout."""


class UserNotFoundError(LatchkeyError):
    """Token issuance was requested for a user id that does not exist."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class TokenError(LatchkeyError):
    """A presented token failed verification."""

    code = "invalid"


class TokenNotFoundError(TokenError):
    """No token with the presented value exists."""

    code = "not_found"


class TokenExpiredError(TokenError):
    """The token exists but is past its expiry.

    Carries the kind and owner so callers can start the renewal flow for
    an expired QR key.
    """

    code = "expired"

    def __init__(self, kind: TokenKind, user_id: str) -> None:
        super().__init__(f"{kind.value} token expired")
        self.kind = kind
        self.user_id = user_id


class TokenAlreadyUsedError(TokenError):
    """A single-use magic link was already redeemed."""

    code = "already_used"


class InvalidSessionError(LatchkeyError):
    """Session credential failed its integrity check or is malformed."""


class SessionExpiredError(InvalidSessionError):
    """Session credential is authentic but older than the session lifetime."""
