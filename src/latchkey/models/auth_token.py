"""Auth token model for magic links and QR keys."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Index
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel

from latchkey.models.base import UTCDateTime, generate_nanoid, utcnow


class TokenKind(str, Enum):
    """Kind of bearer token.

    Per-kind behavior is answered here so call sites never compare raw strings.
    """

    MAGIC_LINK = "magic_link"
    QR_CODE = "qr_code"

    @property
    def single_use(self) -> bool:
        """Whether a successful verification consumes the token."""
        match self:
            case TokenKind.MAGIC_LINK:
                return True
            case TokenKind.QR_CODE:
                return False

    @property
    def renew_on_expiry(self) -> bool:
        """Whether an expired token should trigger a renewal reminder."""
        match self:
            case TokenKind.MAGIC_LINK:
                return False
            case TokenKind.QR_CODE:
                return True


class AuthToken(SQLModel, table=True):
    """Issued bearer token, owned by exactly one user."""

    __tablename__ = "auth_tokens"
    __table_args__ = (
        Index("auth_tokens_user_kind_expires_idx", "user_id", "kind", "expires_at"),
    )

    id: str = Field(default_factory=generate_nanoid, primary_key=True, max_length=21)
    token: str = Field(unique=True, index=True, max_length=64, description="Opaque token value")
    user_id: str = Field(foreign_key="users.id", ondelete="CASCADE", max_length=21)
    kind: TokenKind = Field(
        sa_column=Column(
            SAEnum(
                TokenKind,
                native_enum=False,
                length=20,
                values_callable=lambda kinds: [k.value for k in kinds],
            ),
            nullable=False,
        )
    )
    expires_at: datetime = Field(
        sa_type=UTCDateTime,  # type: ignore[call-overload]
        nullable=False,
    )
    used_at: datetime | None = Field(
        default=None,
        sa_type=UTCDateTime,  # type: ignore[call-overload]
        description="Consumption marker, only ever set for magic links",
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=UTCDateTime,  # type: ignore[call-overload]
    )

    def is_expired(self, now: datetime) -> bool:
        """A token is valid strictly before its expiry instant."""
        return self.expires_at <= now
