"""Background task processing."""

from latchkey.tasks.maintenance import sweep_expired_tokens
from latchkey.tasks.queue import get_queue_settings, queue

__all__ = ["get_queue_settings", "queue", "sweep_expired_tokens"]
