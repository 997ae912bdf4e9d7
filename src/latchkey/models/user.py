"""User model."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from latchkey.models.base import TimestampMixin, UTCDateTime, generate_nanoid


class User(TimestampMixin, SQLModel, table=True):
    """User account model.

    ``community_verified`` and ``is_admin`` only ever move from False to True.
    """

    __tablename__ = "users"

    id: str = Field(default_factory=generate_nanoid, primary_key=True, max_length=21)
    email: str = Field(unique=True, index=True, max_length=255)
    email_verified_at: datetime | None = Field(
        default=None,
        sa_type=UTCDateTime,  # type: ignore[call-overload]
        description="Set on the first successful token redemption",
    )
    community_verified: bool = Field(default=False)
    is_admin: bool = Field(default=False)


class UserRead(SQLModel):
    """Schema for reading a user."""

    id: str
    email: str
    email_verified_at: datetime | None
    community_verified: bool
    is_admin: bool
