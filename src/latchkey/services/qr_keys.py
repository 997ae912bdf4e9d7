"""QR keys: long-lived reusable tokens rendered as scannable codes."""

import base64
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlencode

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from latchkey.config import settings
from latchkey.errors import UserNotFoundError
from latchkey.models import Clock, TokenKind, utcnow
from latchkey.services.store import IdentityStore
from latchkey.services.tokens import TokenIssuer, token_prefix

logger = logging.getLogger(__name__)


def build_verify_url(token: str, base_url: str | None = None, path: str | None = None) -> str:
    """Absolute verification URL carrying a token."""
    base = (base_url or settings.app_url).rstrip("/")
    return f"{base}{path or settings.verify_path}?{urlencode({'token': token})}"


def render_qr_png(data: str, box_size: int = 8, border: int = 1) -> bytes:
    """Encode ``data`` as a QR code PNG. Pure function of its input."""
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    return buffered.getvalue()


@dataclass(frozen=True)
class QRKeyArtifact:
    """A QR key's token together with its rendered code."""

    token: str
    verify_url: str
    png: bytes
    expires_at: datetime
    reused: bool

    @property
    def data_url(self) -> str:
        return f"data:image/png;base64,{base64.b64encode(self.png).decode()}"


class QRKeyManager:
    """Hands out a user's QR key, reusing the current one while it is valid."""

    def __init__(
        self,
        store: IdentityStore,
        issuer: TokenIssuer,
        *,
        base_url: str | None = None,
        verify_path: str | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.base_url = base_url
        self.verify_path = verify_path
        self.clock = clock

    async def get_or_create(self, user_id: str) -> QRKeyArtifact:
        """Return the user's unexpired QR key, minting one only if none exists.

        Repeated calls inside the validity window return the same token.

        Raises:
            UserNotFoundError: ``user_id`` does not reference a user
        """
        # Row lock keeps concurrent callers for one user from minting twice
        user = await self.store.lock_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        existing = await self.store.find_active_qr_token(user_id, self.clock())
        if existing is not None:
            token, expires_at, reused = existing.token, existing.expires_at, True
            # Nothing was written; committing only releases the row lock
            await self.store.commit()
            logger.debug(f"Reusing QR key {token_prefix(token)} for user {user_id}")
        else:
            issued = await self.issuer.issue(user_id, TokenKind.QR_CODE)
            token, expires_at, reused = issued.token, issued.expires_at, False

        return self.render(token, expires_at=expires_at, reused=reused)

    def render(self, token: str, *, expires_at: datetime, reused: bool = False) -> QRKeyArtifact:
        """Render a token as a QR code pointing at the verification URL."""
        verify_url = build_verify_url(token, self.base_url, self.verify_path)
        return QRKeyArtifact(
            token=token,
            verify_url=verify_url,
            png=render_qr_png(verify_url),
            expires_at=expires_at,
            reused=reused,
        )
