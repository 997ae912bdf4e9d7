"""Maintenance background tasks for cleanup operations."""

import logging
from typing import Any

from latchkey.database import get_session_context
from latchkey.services.email import EmailService, email_service
from latchkey.services.store import IdentityStore
from latchkey.services.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

# Timeout for maintenance tasks (10 minutes)
MAINTENANCE_TIMEOUT_SECONDS = 10 * 60


async def sweep_expired_tokens(
    ctx: dict[str, Any],
    emails: EmailService | None = None,
) -> dict[str, Any]:
    """Remind owners of expired QR keys and delete all expired tokens.

    Args:
        ctx: SAQ context
        emails: Email service override

    Returns:
        Dict with sweep results
    """
    job = ctx.get("job")
    run_id = job.key if job else "local-sweep"

    async with get_session_context() as session:
        sweeper = ExpirySweeper(IdentityStore(session), emails or email_service)
        result = await sweeper.sweep()

    logger.info(f"Sweep {run_id} finished: {result.to_dict()}")
    return result.to_dict()


# Set SAQ job timeouts
sweep_expired_tokens.timeout = MAINTENANCE_TIMEOUT_SECONDS  # type: ignore[attr-defined]
