"""SQLModel database models."""

from latchkey.models.auth_token import AuthToken, TokenKind
from latchkey.models.base import Clock, TimestampMixin, UTCDateTime, generate_nanoid, utcnow
from latchkey.models.user import User, UserRead

__all__ = [
    "AuthToken",
    "Clock",
    "TimestampMixin",
    "TokenKind",
    "UTCDateTime",
    "User",
    "UserRead",
    "generate_nanoid",
    "utcnow",
]
