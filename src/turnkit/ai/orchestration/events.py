"""Normalized event emission toward the display sink."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Protocol, Sequence

from .types import Message, QuestionItem, ServerEvent, TraceStatus, TraceStep

__all__ = [
    "EventSink",
    "MessageSaver",
    "TurnEventEmitter",
    "TRACE_STEP",
    "TRACE_UPDATE",
    "STREAM_MESSAGE",
    "STREAM_PARTIAL",
    "QUESTION_REQUEST",
]

LOGGER = logging.getLogger(__name__)

TRACE_STEP = "trace.step"
TRACE_UPDATE = "trace.update"
STREAM_MESSAGE = "stream.message"
STREAM_PARTIAL = "stream.partial"
QUESTION_REQUEST = "question.request"


class EventSink(Protocol):
    def __call__(self, event: ServerEvent) -> None:
        ...


MessageSaver = Callable[[Message], None]


class TurnEventEmitter:
    """Wraps the display sink with typed helpers for each event kind.

    Sink failures are logged and never interrupt the turn.
    """

    def __init__(self, sink: EventSink | None = None, *, save_message: MessageSaver | None = None) -> None:
        self._sink = sink
        self._save_message = save_message

    def emit(self, event_type: str, payload: Mapping[str, Any]) -> None:
        if self._sink is None:
            return
        try:
            self._sink(ServerEvent(type=event_type, payload=payload))
        except Exception:  # pragma: no cover - sink isolation
            LOGGER.debug("Display sink raised for %s", event_type, exc_info=True)

    def trace_step(self, session_id: str, step: TraceStep) -> None:
        LOGGER.debug("[Trace] %s: %s", step.kind, step.title)
        self.emit(TRACE_STEP, {"sessionId": session_id, "step": step.to_dict()})

    def trace_update(
        self,
        session_id: str,
        step_id: str,
        *,
        status: TraceStatus | None = None,
        title: str | None = None,
        tool_output: str | None = None,
        is_error: bool | None = None,
    ) -> None:
        updates: dict[str, Any] = {}
        if status is not None:
            updates["status"] = status
        if title is not None:
            updates["title"] = title
        if tool_output is not None:
            updates["toolOutput"] = tool_output
        if is_error is not None:
            updates["isError"] = is_error
        LOGGER.debug("[Trace] Update step %s: %s", step_id, updates)
        self.emit(TRACE_UPDATE, {"sessionId": session_id, "stepId": step_id, "updates": updates})

    def message(self, session_id: str, message: Message) -> None:
        if self._save_message is not None:
            try:
                self._save_message(message)
            except Exception:  # pragma: no cover - persistence is external
                LOGGER.warning("Failed to persist message %s", message.id, exc_info=True)
        self.emit(STREAM_MESSAGE, {"sessionId": session_id, "message": message.to_dict()})

    def partial(self, session_id: str, delta: str) -> None:
        self.emit(STREAM_PARTIAL, {"sessionId": session_id, "delta": delta})

    def question_request(
        self,
        session_id: str,
        question_id: str,
        tool_use_id: str,
        questions: Sequence[QuestionItem],
    ) -> None:
        self.emit(
            QUESTION_REQUEST,
            {
                "questionId": question_id,
                "sessionId": session_id,
                "toolUseId": tool_use_id,
                "questions": [item.to_dict() for item in questions],
            },
        )
