"""Explicit ownership of per-session mutable state.

Each session gets a :class:`SessionState` on first use. State is retained
across turns (todo list, session-scoped permission memo) and dropped only by
:meth:`SessionRegistry.dispose`. The active cancellation token is replaced per
turn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Sequence

from .cancellation import CancelToken
from .types import TodoItem

__all__ = ["SessionState", "SessionRegistry"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionState:
    session_id: str
    todos: list[TodoItem] = field(default_factory=list)
    always_allow: set[str] = field(default_factory=set)
    active_token: CancelToken | None = None
    turns_started: int = 0


class SessionRegistry:
    """Create-on-first-use table of :class:`SessionState` keyed by session id."""

    def __init__(self) -> None:
        self._states: Dict[str, SessionState] = {}

    def get(self, session_id: str) -> SessionState | None:
        return self._states.get(session_id)

    def get_or_create(self, session_id: str) -> SessionState:
        state = self._states.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id)
            self._states[session_id] = state
            LOGGER.debug("Created state for session %s", session_id)
        return state

    def session_ids(self) -> Iterable[str]:
        return tuple(self._states)

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    def begin_turn(self, session_id: str) -> CancelToken:
        """Install a fresh cancellation token for ``session_id``.

        A token still held by an overlapping turn of the same session is
        replaced, not cancelled; other sessions are never touched.
        """
        state = self.get_or_create(session_id)
        if state.active_token is not None:
            LOGGER.debug("Session %s started an overlapping turn", session_id)
        token = CancelToken(session_id)
        state.active_token = token
        state.turns_started += 1
        return token

    def end_turn(self, session_id: str, token: CancelToken) -> None:
        """Discard ``token`` if it is still the session's active token."""
        state = self._states.get(session_id)
        if state is not None and state.active_token is token:
            state.active_token = None

    def active_token(self, session_id: str) -> CancelToken | None:
        state = self._states.get(session_id)
        return state.active_token if state is not None else None

    def cancel(self, session_id: str) -> bool:
        token = self.active_token(session_id)
        if token is None:
            return False
        token.cancel()
        return True

    def dispose(self, session_id: str) -> None:
        """Drop all state for a deleted session, cancelling any running turn."""
        state = self._states.pop(session_id, None)
        if state is not None and state.active_token is not None:
            state.active_token.cancel()

    # ------------------------------------------------------------------
    # Todo list
    # ------------------------------------------------------------------

    def todos(self, session_id: str) -> list[TodoItem]:
        state = self._states.get(session_id)
        return list(state.todos) if state is not None else []

    def replace_todos(self, session_id: str, items: Sequence[TodoItem]) -> None:
        self.get_or_create(session_id).todos = list(items)
