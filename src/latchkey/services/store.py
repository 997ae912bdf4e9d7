"""Identity store: all reads and writes of users and auth tokens.

Every call runs under a bounded timeout. Timeouts and database errors
surface as StorageUnavailableError and are never retried here; a retry
inside the store could mask a double submission.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import TypeVar

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from latchkey.config import settings
from latchkey.errors import StorageUnavailableError
from latchkey.models import AuthToken, TokenKind, User

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IdentityStore:
    """Access layer over one database session."""

    def __init__(self, session: AsyncSession, timeout: float | None = None) -> None:
        self.session = session
        self.timeout = settings.store_timeout_seconds if timeout is None else timeout

    async def _run(self, operation: str, func_: Callable[[], Awaitable[T]]) -> T:
        try:
            async with asyncio.timeout(self.timeout):
                return await func_()
        except TimeoutError as e:
            logger.warning(f"Identity store {operation} timed out after {self.timeout}s")
            raise StorageUnavailableError(f"{operation} timed out") from e
        except SQLAlchemyError as e:
            logger.error(f"Identity store {operation} failed: {e!r}")
            raise StorageUnavailableError(f"{operation} failed") from e

    # Transactions

    async def commit(self) -> None:
        """Commit the unit of work. Nothing is durable until this returns."""
        await self._run("commit", self.session.commit)

    async def ping(self) -> None:
        """Round-trip to the database."""

        async def _ping() -> None:
            await self.session.execute(select(1))

        await self._run("ping", _ping)

    # Users

    async def get_user(self, user_id: str) -> User | None:
        async def _get() -> User | None:
            result = await self.session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

        return await self._run("get_user", _get)

    async def lock_user(self, user_id: str) -> User | None:
        """Load a user and hold a row lock until the transaction ends.

        Serializes per-user token minting on databases with row locks.
        """

        async def _lock() -> User | None:
            stmt = select(User).where(User.id == user_id).with_for_update()
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        return await self._run("lock_user", _lock)

    async def get_user_by_email(self, email: str) -> User | None:
        async def _get() -> User | None:
            result = await self.session.execute(select(User).where(User.email == email))
            return result.scalar_one_or_none()

        return await self._run("get_user_by_email", _get)

    async def list_users(self) -> Sequence[User]:
        async def _list() -> Sequence[User]:
            result = await self.session.execute(select(User).order_by(User.email))
            return result.scalars().all()

        return await self._run("list_users", _list)

    async def get_or_create_user(
        self,
        email: str,
        *,
        community_verified: bool,
        is_admin: bool,
    ) -> tuple[User, bool]:
        """Return the user for ``email``, creating it if needed.

        Must be the first write of its unit of work: losing a signup race
        rolls the session back before reloading the winner's row.

        Returns:
            (user, created)
        """

        async def _get_or_create() -> tuple[User, bool]:
            result = await self.session.execute(select(User).where(User.email == email))
            existing = result.scalar_one_or_none()
            if existing:
                return existing, False

            user = User(email=email, community_verified=community_verified, is_admin=is_admin)
            self.session.add(user)
            try:
                await self.session.flush()
            except IntegrityError:
                await self.session.rollback()
                result = await self.session.execute(select(User).where(User.email == email))
                winner = result.scalar_one_or_none()
                if winner is None:
                    raise
                logger.info(f"Concurrent signup for {email}, using existing user {winner.id}")
                return winner, False
            return user, True

        return await self._run("get_or_create_user", _get_or_create)

    async def promote_user(
        self,
        user: User,
        *,
        community_verified: bool = False,
        is_admin: bool = False,
    ) -> bool:
        """Raise role flags on a user. Flags are never lowered.

        Returns:
            True if anything changed
        """
        changed = False
        if community_verified and not user.community_verified:
            user.community_verified = True
            changed = True
        if is_admin and not user.is_admin:
            user.is_admin = True
            changed = True
        if changed:
            await self._run("promote_user", self.session.flush)
        return changed

    async def mark_email_verified(self, user: User, now: datetime) -> bool:
        """Stamp ``email_verified_at`` unless it is already set.

        Returns:
            True if this call set the timestamp
        """
        if user.email_verified_at is not None:
            return False

        async def _mark() -> bool:
            stmt = (
                update(User)
                .where(User.id == user.id, User.email_verified_at.is_(None))  # type: ignore[union-attr]
                .values(email_verified_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            await self.session.refresh(user)
            return result.rowcount == 1  # type: ignore[attr-defined]

        return await self._run("mark_email_verified", _mark)

    # Tokens

    async def add_token(self, token: AuthToken) -> AuthToken:
        async def _add() -> AuthToken:
            self.session.add(token)
            await self.session.flush()
            return token

        return await self._run("add_token", _add)

    async def get_token(self, value: str, *, refresh: bool = False) -> AuthToken | None:
        """Look up a token by its value.

        Args:
            value: Opaque token value
            refresh: Bypass the session identity map and reload from the database
        """

        async def _get() -> AuthToken | None:
            stmt = select(AuthToken).where(AuthToken.token == value)
            if refresh:
                stmt = stmt.execution_options(populate_existing=True)
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        return await self._run("get_token", _get)

    async def claim_magic_link(self, value: str, now: datetime) -> bool:
        """Atomically consume an unused, unexpired magic link.

        A single conditional UPDATE: the used check and the write cannot be
        interleaved, so of any number of concurrent claims exactly one wins.

        Returns:
            True if this call consumed the token
        """

        async def _claim() -> bool:
            stmt = (
                update(AuthToken)
                .where(
                    AuthToken.token == value,  # type: ignore[arg-type]
                    AuthToken.kind == TokenKind.MAGIC_LINK,  # type: ignore[arg-type]
                    AuthToken.used_at.is_(None),  # type: ignore[union-attr]
                    AuthToken.expires_at > now,  # type: ignore[arg-type]
                )
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            return result.rowcount == 1  # type: ignore[attr-defined]

        return await self._run("claim_magic_link", _claim)

    async def find_active_qr_token(self, user_id: str, now: datetime) -> AuthToken | None:
        """Newest QR key for a user that is still valid at ``now``."""

        async def _find() -> AuthToken | None:
            stmt = (
                select(AuthToken)
                .where(
                    AuthToken.user_id == user_id,
                    AuthToken.kind == TokenKind.QR_CODE,
                    AuthToken.expires_at > now,
                )
                .order_by(AuthToken.created_at.desc())  # type: ignore[attr-defined]
                .limit(1)
            )
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        return await self._run("find_active_qr_token", _find)

    async def list_expired_qr_tokens(self, now: datetime) -> Sequence[tuple[AuthToken, User]]:
        """Expired QR keys together with their owners."""

        async def _list() -> Sequence[tuple[AuthToken, User]]:
            stmt = (
                select(AuthToken, User)
                .join(User, User.id == AuthToken.user_id)  # type: ignore[arg-type]
                .where(AuthToken.kind == TokenKind.QR_CODE, AuthToken.expires_at <= now)
                .order_by(AuthToken.expires_at)  # type: ignore[arg-type]
            )
            result = await self.session.execute(stmt)
            return [(token, user) for token, user in result.all()]

        return await self._run("list_expired_qr_tokens", _list)

    async def delete_expired_tokens(self, now: datetime) -> int:
        """Delete every token of any kind that is expired at ``now``.

        Returns:
            Number of deleted rows
        """

        async def _delete() -> int:
            stmt = delete(AuthToken).where(AuthToken.expires_at <= now)  # type: ignore[arg-type]
            result = await self.session.execute(stmt)
            return result.rowcount  # type: ignore[attr-defined]

        return await self._run("delete_expired_tokens", _delete)

    async def list_tokens(self, offset: int = 0, limit: int = 100) -> Sequence[AuthToken]:
        async def _list() -> Sequence[AuthToken]:
            stmt = (
                select(AuthToken)
                .order_by(AuthToken.created_at.desc())  # type: ignore[attr-defined]
                .offset(offset)
                .limit(limit)
            )
            result = await self.session.execute(stmt)
            return result.scalars().all()

        return await self._run("list_tokens", _list)

    async def count_tokens(self) -> int:
        async def _count() -> int:
            result = await self.session.execute(select(func.count()).select_from(AuthToken))
            return int(result.scalar_one())

        return await self._run("count_tokens", _count)

    async def delete_all_tokens(self) -> int:
        async def _delete() -> int:
            result = await self.session.execute(delete(AuthToken))
            return result.rowcount  # type: ignore[attr-defined]

        return await self._run("delete_all_tokens", _delete)
