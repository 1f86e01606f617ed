"""Per-turn routing between the foreign CLI and the turn orchestrator."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from ..orchestration.errors import TurnCancelledError
from ..orchestration.orchestrator import TurnOrchestrator, TurnOutcome
from ..orchestration.types import Message, Session
from .cli_runner import ExternalCliError, ExternalCliRunner
from .failover import decide_failover, detect_cli_login, select_backend_route

__all__ = ["RoutedTurnRunner", "EXTERNAL_CLI_PROTOCOL"]

LOGGER = logging.getLogger(__name__)

EXTERNAL_CLI_PROTOCOL = "external-cli"


class RoutedTurnRunner:
    """Runs a turn on the CLI when it is usable, falling back to the orchestrator.

    A CLI failure is rerun on the orchestrator only when :func:`decide_failover`
    allows it; otherwise the failure is reported on the display sink.
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        cli_runner: ExternalCliRunner,
        *,
        has_cli_login: Callable[[], bool] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._cli = cli_runner
        self._has_cli_login = has_cli_login or detect_cli_login

    async def run(self, session: Session, prompt: str, history: Sequence[Message] = ()) -> TurnOutcome:
        api_key = self._orchestrator.settings.api_key or ""
        route = select_backend_route(has_cli_login=self._has_cli_login(), api_key=api_key)
        LOGGER.debug("Routing turn for session %s to %s", session.id, route)
        if route == "responses":
            return await self._orchestrator.run(session, prompt, history)

        try:
            text = await self._cli.run(session, prompt)
        except TurnCancelledError:
            return TurnOutcome(session_id=session.id, status="cancelled", protocol=EXTERNAL_CLI_PROTOCOL)
        except ExternalCliError as exc:
            decision = decide_failover(
                exc,
                has_api_key=bool(api_key.strip()),
                has_turn_output=exc.has_output,
                has_side_effects=exc.has_side_effects,
            )
            if decision.should_failover:
                LOGGER.warning("%s (%s)", decision.reason, exc.message)
                self._cli.forget_thread(session.id)
                return await self._orchestrator.run(session, prompt, history)
            if decision.category == "cancelled":
                return TurnOutcome(session_id=session.id, status="cancelled", protocol=EXTERNAL_CLI_PROTOCOL)
            LOGGER.error("External CLI turn failed for session %s: %s", session.id, exc.message)
            self._cli.report_error(session.id, exc.message)
            return TurnOutcome(
                session_id=session.id,
                status="failed",
                protocol=EXTERNAL_CLI_PROTOCOL,
                error=exc.message,
            )
        return TurnOutcome(session_id=session.id, status="completed", text=text, protocol=EXTERNAL_CLI_PROTOCOL)

    def cancel(self, session_id: str) -> bool:
        cli_cancelled = self._cli.cancel(session_id)
        return self._orchestrator.cancel(session_id) or cli_cancelled

    def handle_question_response(self, question_id: str, answer: str) -> bool:
        return self._orchestrator.handle_question_response(question_id, answer)

    def dispose_session(self, session_id: str) -> None:
        self._cli.cancel(session_id)
        self._cli.forget_thread(session_id)
        self._orchestrator.dispose_session(session_id)
