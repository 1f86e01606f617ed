"""Turn Orchestrator: drives one user turn against an OpenAI-compatible backend.

A turn builds the request input from history, sends it (streamed or buffered),
runs tool rounds until the backend stops requesting tools, and publishes the
final assistant text. Every protocol quirk is handled by an ordered chain of
attempt strategies:

* input shape: typed blocks -> chat messages -> output-text blocks
* transport: streamed -> buffered
* continuation: ``previous_response_id`` -> full conversation log
* whole mode: responses -> chat messages -> prompt-only chat -> raw completion
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, AbstractSet, Callable, Literal, Mapping, Sequence

from ...services.settings import Settings
from ..client import AIClient
from ..tools.executor import ExternalToolProvider, MountRegistry, ToolExecutor
from .artifacts import ArtifactInfo, build_artifact_trace_steps, extract_artifacts
from .cancellation import CancelToken
from .compat import ErrorClassifier, IncompatibilityReason, describe_error
from .errors import (
    ALL_METHODS_FAILED_MESSAGE,
    ProtocolIncompatibilityError,
    RoundLimitExceededError,
    TurnCancelledError,
    TurnError,
)
from .events import EventSink, MessageSaver, TurnEventEmitter
from .message_builder import (
    build_chat_messages,
    build_output_messages,
    build_prompt,
    build_typed_input,
    chunk_text,
    extract_chat_text,
    extract_completion_text,
    extract_output_text,
)
from .permissions import PermissionGate, PermissionRequester
from .questions import PendingQuestionBroker
from .session_registry import SessionRegistry
from .strategies import AttemptStrategy, run_strategies
from .tool_call_parser import item_field, parse_tool_calls
from .tool_catalog import build_tool_config
from .tool_dispatcher import DispatchContext, ToolCallDispatcher
from .types import ExternalTool, Message, Session, ToolConfig, TraceStep, new_id

__all__ = [
    "TurnOrchestrator",
    "TurnOutcome",
    "TurnStatus",
    "MAX_TOOL_ROUNDS",
    "RESULTS_SHOWN_MESSAGE",
    "COMPLETION_MAX_TOKENS",
]

LOGGER = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 6
COMPLETION_MAX_TOKENS = 512
RESULTS_SHOWN_MESSAGE = "Tool execution finished; results are shown above."

TurnStatus = Literal["completed", "cancelled", "failed"]

_R = IncompatibilityReason
_INPUT_SHAPES: tuple[tuple[str, Callable[[Sequence[Message], str], list[dict[str, Any]]], AbstractSet[_R]], ...] = (
    ("typed", build_typed_input, frozenset({_R.INPUT_TEXT, _R.REFUSAL})),
    ("chat", build_chat_messages, frozenset({_R.OUTPUT_TEXT, _R.REFUSAL})),
    ("output", build_output_messages, frozenset()),
)


# -----------------------------------------------------------------------------
# Turn Outcome
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TurnOutcome:
    """Summary of a finished turn.

    Attributes:
        session_id: Owning session.
        status: ``completed``, ``cancelled`` or ``failed``.
        text: Final assistant text (artifact blocks removed).
        rounds: Completed tool rounds.
        protocol: ``responses`` or ``chat``.
        artifacts: Artifact declarations found in assistant text.
        error: Failure message when ``status == "failed"``.
    """

    session_id: str
    status: TurnStatus
    text: str = ""
    rounds: int = 0
    protocol: str = "responses"
    artifacts: tuple[ArtifactInfo, ...] = ()
    error: str | None = None


@dataclass(slots=True)
class _TurnState:
    session: Session
    token: CancelToken
    tool_config: ToolConfig = field(default_factory=ToolConfig)
    use_previous_response_id: bool = True
    rounds: int = 0
    protocol: str = "responses"
    text: str = ""
    artifacts: list[ArtifactInfo] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.session.id


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


class TurnOrchestrator:
    """Runs turns for many sessions on one backend.

    Example:
        >>> orchestrator = TurnOrchestrator(client, settings, sink=display.publish,
        ...                                 permission_requester=ask_user, executor=workspace)
        >>> outcome = await orchestrator.run(session, "Summarize README.md", history)
    """

    def __init__(
        self,
        client: AIClient,
        settings: Settings | None = None,
        *,
        sink: EventSink | None = None,
        save_message: MessageSaver | None = None,
        permission_requester: PermissionRequester | None = None,
        executor: ToolExecutor | None = None,
        external_tools: ExternalToolProvider | None = None,
        mounts: MountRegistry | None = None,
        classifier: ErrorClassifier | None = None,
        sessions: SessionRegistry | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or Settings()
        self._external_tools = external_tools
        self._mounts = mounts
        self._classifier = classifier or ErrorClassifier()
        self._sessions = sessions or SessionRegistry()
        self._emitter = TurnEventEmitter(sink, save_message=save_message)
        self._permissions = PermissionGate(
            permission_requester,
            auto_approve=self._settings.auto_approve,
            memo_scope=self._settings.permission_memo_scope,
            sessions=self._sessions,
        )
        self._questions = PendingQuestionBroker(self._emitter, timeout=self._settings.question_timeout)
        self._dispatcher = ToolCallDispatcher(
            emitter=self._emitter,
            permissions=self._permissions,
            questions=self._questions,
            sessions=self._sessions,
            executor=executor,
            external_tools=external_tools,
            mounts=mounts,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def permissions(self) -> PermissionGate:
        return self._permissions

    @property
    def questions(self) -> PendingQuestionBroker:
        return self._questions

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, session: Session, prompt: str, history: Sequence[Message] = ()) -> TurnOutcome:
        """Run one turn; failures are reported to the sink, never raised.

        ``asyncio.CancelledError`` from the surrounding task still propagates.
        """

        token = self._sessions.begin_turn(session.id)
        state = _TurnState(session=session, token=token)
        mounted = False
        thinking_id = new_id()
        self._emitter.trace_step(
            session.id,
            TraceStep(id=thinking_id, kind="thinking", status="running", title="Thinking"),
        )
        LOGGER.debug("Turn started for session %s (api_mode=%s)", session.id, self._settings.api_mode)
        try:
            state.tool_config = self._tool_config(session, prompt)
            mounted = self._register_mounts(session)
            await self._run_turn(state, prompt, history)
        except TurnCancelledError:
            LOGGER.info("Turn cancelled for session %s", session.id)
            return self._outcome(state, "cancelled")
        except Exception as exc:
            if token.is_cancelled:
                LOGGER.info("Turn cancelled for session %s", session.id)
                return self._outcome(state, "cancelled")
            message = describe_error(exc)
            LOGGER.error("Turn failed for session %s: %s", session.id, message, exc_info=not isinstance(exc, TurnError))
            self._emitter.message(session.id, Message.assistant(session.id, f"**Error**: {message}"))
            self._emitter.trace_step(
                session.id,
                TraceStep(
                    id=new_id(),
                    kind="thinking",
                    status="error",
                    title="Error occurred",
                    is_error=True,
                    content=message,
                ),
            )
            return self._outcome(state, "failed", error=message)
        finally:
            self._sessions.end_turn(session.id, token)
            if mounted and self._mounts is not None:
                self._mounts.unregister_session(session.id)

        self._emitter.trace_update(session.id, thinking_id, status="completed", title="Task completed")
        LOGGER.debug("Turn completed for session %s after %s tool round(s)", session.id, state.rounds)
        return self._outcome(state, "completed")

    def cancel(self, session_id: str) -> bool:
        """Cancel the running turn of ``session_id``; other sessions are untouched."""
        cancelled = self._sessions.cancel(session_id)
        self._questions.cancel_session(session_id)
        if cancelled:
            LOGGER.info("Cancellation requested for session %s", session_id)
        return cancelled

    def handle_question_response(self, question_id: str, answer: str) -> bool:
        return self._questions.resolve(question_id, answer)

    def dispose_session(self, session_id: str) -> None:
        """Drop retained state for a deleted session."""
        self._questions.cancel_session(session_id)
        self._sessions.dispose(session_id)

    # ------------------------------------------------------------------
    # Turn setup
    # ------------------------------------------------------------------

    def _register_mounts(self, session: Session) -> bool:
        if self._mounts is None or not session.mounted_paths:
            return False
        self._mounts.register_session(session.id, session.mounted_paths)
        return True

    def _tool_config(self, session: Session, prompt: str) -> ToolConfig:
        external: Sequence[ExternalTool] = ()
        if self._external_tools is not None:
            try:
                external = tuple(self._external_tools.list_tools())
            except Exception as exc:
                LOGGER.warning("Listing external tools failed; continuing without them: %s", exc)
        return build_tool_config(session.allowed_tools, external, prompt=prompt)

    def _outcome(self, state: _TurnState, status: TurnStatus, *, error: str | None = None) -> TurnOutcome:
        return TurnOutcome(
            session_id=state.session_id,
            status=status,
            text=state.text,
            rounds=state.rounds,
            protocol=state.protocol,
            artifacts=tuple(state.artifacts),
            error=error,
        )

    async def _run_turn(self, state: _TurnState, prompt: str, history: Sequence[Message]) -> None:
        if self._settings.api_mode == "chat":
            await self._run_chat_turn(state, prompt, history)
            return
        try:
            await self._run_responses_turn(state, prompt, history)
        except (TurnCancelledError, TurnError):
            raise
        except Exception as exc:
            if not self._settings.allow_chat_fallback:
                raise
            if not self._classifier.matches(exc, _R.INPUT_TEXT, _R.REFUSAL):
                raise
            LOGGER.warning("Responses protocol rejected (%s); falling back to chat", describe_error(exc))
            await self._run_chat_turn(state, prompt, history)

    # ------------------------------------------------------------------
    # Responses protocol
    # ------------------------------------------------------------------

    async def _run_responses_turn(self, state: _TurnState, prompt: str, history: Sequence[Message]) -> None:
        inputs = {name: builder(history, prompt) for name, builder, _ in _INPUT_SHAPES}
        strategies = [
            AttemptStrategy(
                name=f"input.{name}",
                run=partial(self._request, state, {"input": inputs[name]}),
                fallback_on=fallback_on,
            )
            for name, _, fallback_on in _INPUT_SHAPES
        ]
        result = await run_strategies(strategies, classifier=self._classifier)
        response, streamed = result.value
        conversation: list[Any] = list(inputs[result.strategy.removeprefix("input.")])

        while True:
            text = extract_output_text(response)
            calls = parse_tool_calls(item_field(response, "output"))
            await self._publish_text(state, text, streamed=streamed)
            if not calls:
                return
            if state.rounds >= MAX_TOOL_ROUNDS:
                raise RoundLimitExceededError(MAX_TOOL_ROUNDS)

            state.token.raise_if_cancelled()
            context = DispatchContext(session=state.session, tool_config=state.tool_config, token=state.token)
            outputs = await self._dispatcher.dispatch_all(context, calls)
            conversation.extend(call.to_function_call_item() for call in calls)
            conversation.extend(output.to_function_call_output_item() for output in outputs)
            state.token.raise_if_cancelled()

            try:
                response, streamed = await self._continue(state, response, outputs, conversation)
            except TurnCancelledError:
                raise
            except Exception as exc:
                if not outputs:
                    raise
                LOGGER.warning(
                    "Continuation failed after %s tool output(s); ending turn: %s",
                    len(outputs),
                    describe_error(exc),
                )
                state.text = RESULTS_SHOWN_MESSAGE
                self._emitter.message(state.session_id, Message.assistant(state.session_id, RESULTS_SHOWN_MESSAGE))
                return
            state.rounds += 1

    async def _continue(
        self,
        state: _TurnState,
        previous: Any,
        outputs: Sequence[Any],
        conversation: Sequence[Any],
    ) -> tuple[Any, bool]:
        strategies: list[AttemptStrategy[tuple[Any, bool]]] = []
        previous_id = item_field(previous, "id")
        if state.use_previous_response_id and previous_id:
            body = {
                "input": [output.to_function_call_output_item() for output in outputs],
                "previous_response_id": previous_id,
            }
            strategies.append(
                AttemptStrategy(
                    name="continuation.previous_response_id",
                    run=partial(self._request, state, body),
                    fallback_on=frozenset({_R.PREVIOUS_RESPONSE_ID}),
                )
            )
        strategies.append(
            AttemptStrategy(name="continuation.full_log", run=partial(self._request, state, {"input": list(conversation)}))
        )

        def _disable_previous_response_id(_failed: str, _next: str, _reasons: AbstractSet[_R]) -> None:
            state.use_previous_response_id = False

        result = await run_strategies(strategies, classifier=self._classifier, on_fallback=_disable_previous_response_id)
        return result.value

    async def _request(self, state: _TurnState, body: Mapping[str, Any]) -> tuple[Any, bool]:
        """Send one responses request; returns ``(response, streamed)``."""

        state.token.raise_if_cancelled()
        payload = self._response_payload(state, body)
        buffered = AttemptStrategy(
            name="buffered",
            run=lambda: state.token.guard(self._buffered(payload)),
        )
        if not self._settings.stream:
            return await buffered.run()
        streamed = AttemptStrategy(
            name="stream",
            run=lambda: state.token.guard(self._consume_stream(state, payload)),
            fallback_on=frozenset({_R.STREAM_FORMAT}),
        )
        result = await run_strategies([streamed, buffered], classifier=self._classifier)
        return result.value

    async def _buffered(self, payload: Mapping[str, Any]) -> tuple[Any, bool]:
        return await self._client.create_response(payload), False

    async def _consume_stream(self, state: _TurnState, payload: Mapping[str, Any]) -> tuple[Any, bool]:
        final: Any = None
        emitted = False
        async for event in self._client.stream_response(payload):
            if event.type == "output_text.delta" and event.content:
                state.token.raise_if_cancelled()
                self._emitter.partial(state.session_id, event.content)
                emitted = True
            elif event.type == "response.completed":
                final = event.parsed
        if final is None:
            raise TurnError("Invalid stream: no final response received")
        if emitted:
            state.token.raise_if_cancelled()
            self._emitter.partial(state.session_id, "")
        return final, emitted

    def _response_payload(self, state: _TurnState, body: Mapping[str, Any]) -> dict[str, Any]:
        payload = dict(body)
        if self._settings.instructions:
            payload.setdefault("instructions", self._settings.instructions)
        if state.tool_config.response_tools:
            payload["tools"] = [dict(tool) for tool in state.tool_config.response_tools]
        return payload

    # ------------------------------------------------------------------
    # Chat protocol (no tools)
    # ------------------------------------------------------------------

    async def _run_chat_turn(self, state: _TurnState, prompt: str, history: Sequence[Message]) -> None:
        state.protocol = "chat"
        chain_reason = frozenset({_R.CHAT_REJECTED})
        strategies: list[AttemptStrategy[str]] = [
            AttemptStrategy(
                name="chat.history",
                run=partial(self._chat_text, state, build_chat_messages(history, prompt)),
                fallback_on=chain_reason,
            )
        ]
        if prompt and prompt.strip():
            strategies.append(
                AttemptStrategy(
                    name="chat.prompt",
                    run=partial(self._chat_text, state, [{"role": "user", "content": prompt}]),
                    fallback_on=chain_reason,
                )
            )
        strategies.append(AttemptStrategy(name="completion", run=partial(self._completion_text, state, history, prompt)))
        result = await run_strategies(strategies, classifier=self._classifier)
        await self._publish_text(state, result.value, streamed=False)

    async def _chat_text(self, state: _TurnState, messages: Sequence[Mapping[str, Any]]) -> str:
        state.token.raise_if_cancelled()
        if self._settings.instructions:
            messages = [{"role": "system", "content": self._settings.instructions}, *messages]
        completion = await state.token.guard(self._client.create_chat_completion(messages))
        return extract_chat_text(completion)

    async def _completion_text(self, state: _TurnState, history: Sequence[Message], prompt: str) -> str:
        text_prompt = build_prompt(history, prompt)
        if not text_prompt:
            raise TurnError("Prompt is empty")
        state.token.raise_if_cancelled()
        try:
            completion = await state.token.guard(
                self._client.create_completion(text_prompt, max_tokens=COMPLETION_MAX_TOKENS)
            )
        except (TurnCancelledError, asyncio.CancelledError):
            raise
        except Exception as exc:
            raise ProtocolIncompatibilityError(
                ALL_METHODS_FAILED_MESSAGE,
                reasons=self._classifier.classify(exc),
                last_error=exc,
            ) from exc
        return extract_completion_text(completion)

    # ------------------------------------------------------------------
    # Output publishing
    # ------------------------------------------------------------------

    async def _publish_text(self, state: _TurnState, text: str, *, streamed: bool) -> None:
        """Send assistant text to the sink, replaying it as partials unless already streamed."""

        if not text:
            return
        clean, artifacts = extract_artifacts(text)
        if not streamed and clean:
            await self._replay_text(state, clean)
        for step in build_artifact_trace_steps(artifacts):
            self._emitter.trace_step(state.session_id, step)
        state.artifacts.extend(artifacts)
        state.text = clean
        if clean:
            self._emitter.message(state.session_id, Message.assistant(state.session_id, clean))

    async def _replay_text(self, state: _TurnState, text: str) -> None:
        delay = self._settings.typing_delay
        for chunk in chunk_text(text, self._settings.typing_chunk_size):
            state.token.raise_if_cancelled()
            self._emitter.partial(state.session_id, chunk)
            if delay > 0:
                await state.token.sleep(delay)
        state.token.raise_if_cancelled()
        self._emitter.partial(state.session_id, "")
