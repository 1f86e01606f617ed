"""Turn-level exceptions.

Per-tool failures live in :mod:`turnkit.ai.tools.errors` and never escape the
dispatcher; the exceptions here either end a turn or signal cancellation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, AbstractSet

if TYPE_CHECKING:
    from .compat import IncompatibilityReason

__all__ = [
    "TurnError",
    "TurnCancelledError",
    "RoundLimitExceededError",
    "ProtocolIncompatibilityError",
    "ROUND_LIMIT_MESSAGE",
    "ALL_METHODS_FAILED_MESSAGE",
]

ROUND_LIMIT_MESSAGE = "Tool calls exceeded maximum turns"
ALL_METHODS_FAILED_MESSAGE = (
    "All API methods failed. This provider may not support standard OpenAI APIs. "
    "Please check your model and base URL configuration."
)


class TurnError(RuntimeError):
    """Base class for failures that end a turn with an error message."""


class TurnCancelledError(Exception):
    """Raised at a suspension point once the session's cancellation token fired.

    Deliberately not a :class:`TurnError`: cancellation is silent.
    """

    def __init__(self, session_id: str | None = None) -> None:
        super().__init__(f"Turn cancelled for session {session_id}" if session_id else "Turn cancelled")
        self.session_id = session_id


class RoundLimitExceededError(TurnError):
    def __init__(self, limit: int) -> None:
        super().__init__(ROUND_LIMIT_MESSAGE)
        self.limit = limit


class ProtocolIncompatibilityError(TurnError):
    """Every fallback strategy for a request was rejected by the backend."""

    def __init__(
        self,
        message: str,
        *,
        reasons: AbstractSet["IncompatibilityReason"] = frozenset(),
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.reasons = frozenset(reasons)
        self.last_error = last_error
