"""Authentication service: the operations the web layer and CLI call.

Ties the role resolver, token issuer and verifier, QR key manager, session
minter and email delivery together over one identity store.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache

from latchkey.config import settings
from latchkey.errors import UserNotFoundError
from latchkey.models import AuthToken, Clock, TokenKind, User, utcnow
from latchkey.services.email import EmailService
from latchkey.services.qr_keys import QRKeyArtifact, QRKeyManager, build_verify_url
from latchkey.services.roles import OriginContext, RoleResolver
from latchkey.services.sessions import SessionClaims, SessionMinter
from latchkey.services.store import IdentityStore
from latchkey.services.sweeper import ExpirySweeper, SweepResult
from latchkey.services.tokens import TokenIssuer, TokenVerifier, VerifiedToken

logger = logging.getLogger(__name__)


@lru_cache
def get_role_resolver() -> RoleResolver:
    """Role resolver built once from settings."""
    return RoleResolver(settings.admin_emails, settings.community_networks)


@dataclass(frozen=True)
class IssuedMagicLink:
    user: User
    token: AuthToken
    url: str
    created: bool


class AuthService:
    """Passwordless authentication over one unit of work."""

    def __init__(
        self,
        store: IdentityStore,
        *,
        resolver: RoleResolver | None = None,
        emails: EmailService | None = None,
        minter: SessionMinter | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.resolver = resolver or get_role_resolver()
        self.emails = emails or EmailService()
        self.minter = minter or SessionMinter.from_settings(clock=clock)
        self.clock = clock
        self.issuer = TokenIssuer(store, clock=clock)
        self.verifier = TokenVerifier(store, clock=clock)
        self.qr_keys = QRKeyManager(store, self.issuer, clock=clock)

    async def ensure_user(self, email: str, origin: OriginContext) -> tuple[User, bool]:
        """Find or create the user for an email and apply role rules.

        New accounts get the creation-time decision; existing accounts are
        only ever promoted.

        Returns:
            (user, created)
        """
        decision = self.resolver.resolve_on_create(email, origin)
        user, created = await self.store.get_or_create_user(
            email,
            community_verified=decision.community_verified,
            is_admin=decision.is_admin,
        )
        if created:
            logger.info(
                f"Created user {user.id} (community_verified={user.community_verified}, "
                f"is_admin={user.is_admin})"
            )
            return user, True

        decision = self.resolver.resolve_on_login(user, origin)
        if await self.store.promote_user(
            user,
            community_verified=decision.community_verified,
            is_admin=decision.is_admin,
        ):
            logger.info(
                f"Promoted user {user.id} (community_verified={user.community_verified}, "
                f"is_admin={user.is_admin})"
            )
        return user, False

    async def issue_magic_link(self, email: str, origin: OriginContext) -> IssuedMagicLink:
        """Resolve the user for ``email`` and issue a magic link for them."""
        user, created = await self.ensure_user(email, origin)
        token = await self.issuer.issue(user.id, TokenKind.MAGIC_LINK)
        return IssuedMagicLink(
            user=user,
            token=token,
            url=build_verify_url(token.token),
            created=created,
        )

    async def send_magic_link(self, issued: IssuedMagicLink, origin: OriginContext) -> bool:
        return await self.emails.send_magic_link(
            issued.user.email,
            issued.url,
            intent=origin.intent,
            community_verified=issued.user.community_verified,
        )

    async def issue_or_reuse_qr_key(self, user_id: str) -> QRKeyArtifact:
        return await self.qr_keys.get_or_create(user_id)

    async def verify_token(self, value: str) -> VerifiedToken:
        return await self.verifier.verify(value)

    async def deliver_qr_key(self, user: User) -> bool:
        """Issue or reuse a user's QR key and email it. Failures are logged only."""
        try:
            artifact = await self.issue_or_reuse_qr_key(user.id)
            return await self.emails.send_qr_key(user.email, artifact.png, artifact.verify_url)
        except Exception as e:
            logger.error(f"Failed to deliver QR key to user {user.id}: {e!r}")
            return False

    async def send_renewal_reminder(self, user_id: str) -> bool:
        """Remind a user that their QR key lapsed. Failures are logged only."""
        user = await self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        try:
            return await self.emails.send_qr_renewal_reminder(
                user.email, settings.app_url.rstrip("/") + "/"
            )
        except Exception as e:
            logger.error(f"Failed to send renewal reminder to user {user_id}: {e!r}")
            return False

    def mint_session(self, user: User) -> str:
        return self.minter.mint(user)

    def read_session(self, credential: str) -> SessionClaims:
        return self.minter.read(credential)

    async def sweep(self) -> SweepResult:
        return await ExpirySweeper(self.store, self.emails, clock=self.clock).sweep()
