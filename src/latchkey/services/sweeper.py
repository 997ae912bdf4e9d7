"""Periodic removal of expired tokens."""

import logging
from dataclasses import dataclass

from latchkey.config import settings
from latchkey.models import Clock, utcnow
from latchkey.services.email import EmailService
from latchkey.services.store import IdentityStore
from latchkey.services.tokens import token_prefix

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    removed: int = 0
    reminders_sent: int = 0
    reminders_failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "removed": self.removed,
            "reminders_sent": self.reminders_sent,
            "reminders_failed": self.reminders_failed,
        }


class ExpirySweeper:
    """Reminds owners of lapsed QR keys, then deletes every expired token.

    Expiry is the only deletion predicate, so a token a concurrent verify
    could still accept is never removed. Safe to run repeatedly.
    """

    def __init__(
        self,
        store: IdentityStore,
        emails: EmailService,
        *,
        renew_url: str | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.emails = emails
        self.renew_url = renew_url or settings.app_url.rstrip("/") + "/"
        self.clock = clock

    async def sweep(self) -> SweepResult:
        now = self.clock()
        result = SweepResult()

        expired_keys = await self.store.list_expired_qr_tokens(now)
        reminded: set[str] = set()
        for token, user in expired_keys:
            if not token.kind.renew_on_expiry or user.id in reminded:
                continue
            reminded.add(user.id)

            # Best effort: a failed reminder never blocks the cleanup
            try:
                sent = await self.emails.send_qr_renewal_reminder(user.email, self.renew_url)
            except Exception as e:
                logger.error(f"Renewal reminder for {token_prefix(token.token)} raised: {e!r}")
                sent = False

            if sent:
                result.reminders_sent += 1
            else:
                result.reminders_failed += 1
                logger.warning(f"Renewal reminder not delivered to user {user.id}")

        result.removed = await self.store.delete_expired_tokens(now)
        await self.store.commit()

        logger.info(
            f"Swept {result.removed} expired tokens, "
            f"{result.reminders_sent} reminders sent, {result.reminders_failed} failed"
        )
        return result
