"""Correlation of clarifying-question requests with answers from the display side."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Sequence

from ..tools.errors import QuestionTimeoutError
from .cancellation import CancelToken
from .errors import TurnCancelledError
from .events import TurnEventEmitter
from .types import QuestionItem, new_id

__all__ = ["PendingQuestionBroker"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _PendingQuestion:
    session_id: str
    tool_use_id: str
    future: asyncio.Future[str]


class PendingQuestionBroker:
    """Emits ``question.request`` events and waits for the matching answer.

    Answers arrive through :meth:`resolve`. A wait ends early when the owning
    turn's token is cancelled (``TurnCancelledError``) or when ``timeout``
    seconds elapse (``QuestionTimeoutError``); ``timeout=None`` waits forever.
    """

    def __init__(self, emitter: TurnEventEmitter, *, timeout: float | None = None) -> None:
        self._emitter = emitter
        self._timeout = timeout
        self._pending: Dict[str, _PendingQuestion] = {}

    async def ask(
        self,
        session_id: str,
        tool_use_id: str,
        questions: Sequence[QuestionItem],
        *,
        token: CancelToken | None = None,
    ) -> str:
        if token is not None:
            token.raise_if_cancelled()
        question_id = new_id()
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[question_id] = _PendingQuestion(session_id, tool_use_id, future)
        remove_callback = token.on_cancel(future.cancel) if token is not None else None
        self._emitter.question_request(session_id, question_id, tool_use_id, questions)
        LOGGER.debug("Waiting for answer to question %s (session %s)", question_id, session_id)
        try:
            if self._timeout is None:
                return await future
            return await asyncio.wait_for(future, self._timeout)
        except asyncio.TimeoutError as exc:
            raise QuestionTimeoutError(question_id=question_id) from exc
        except asyncio.CancelledError:
            if token is not None and token.is_cancelled:
                raise TurnCancelledError(session_id) from None
            raise
        finally:
            self._pending.pop(question_id, None)
            if remove_callback is not None:
                remove_callback()

    def resolve(self, question_id: str, answer: str) -> bool:
        """Deliver ``answer``; unknown or already-settled ids are ignored."""
        pending = self._pending.pop(question_id, None)
        if pending is None or pending.future.done():
            LOGGER.info("Question response ignored: %s", question_id)
            return False
        pending.future.set_result(answer)
        return True

    def cancel_session(self, session_id: str) -> int:
        """Cancel every pending question owned by ``session_id``."""
        cancelled = 0
        for question_id, pending in list(self._pending.items()):
            if pending.session_id != session_id:
                continue
            self._pending.pop(question_id, None)
            if not pending.future.done():
                pending.future.set_exception(TurnCancelledError(session_id))
                cancelled += 1
        return cancelled

    def pending_ids(self, session_id: str | None = None) -> tuple[str, ...]:
        return tuple(
            question_id
            for question_id, pending in self._pending.items()
            if session_id is None or pending.session_id == session_id
        )
