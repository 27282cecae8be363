"""
Failure taxonomy for the real-time layer.

Every per-event handler failure is one of these; SocketSession.dispatch turns
them into a scoped error event for the originating connection only.  A target
with no live connection is not an error: sends simply report False.
"""

import logging
from collections.abc import Awaitable
from typing import Any

logger = logging.getLogger(__name__)


class RealtimeError(Exception):
    """Base class. ``message`` is safe to show to the client."""

    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(RealtimeError):
    default_message = "Authentication required"


class Forbidden(RealtimeError):
    default_message = "Not allowed"


class NotFound(RealtimeError):
    default_message = "Not found"


class InvalidCall(RealtimeError):
    default_message = "Invalid call"


class PersistenceFailure(RealtimeError):
    default_message = "Storage error"


async def run_best_effort(awaitable: Awaitable[Any], what: str) -> None:
    """Await a side effect whose failure must not affect the caller.

    Used for mention notifications and presence fan-out: the failure is
    logged and dropped, never retried.
    """
    try:
        await awaitable
    except Exception as exc:
        logger.warning("Best-effort %s failed: %s", what, exc, exc_info=True)
