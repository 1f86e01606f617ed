"""Runs a turn through a foreign agent CLI and relays its events to the display sink.

The CLI is spawned as ``<cli> --dangerously-bypass-approvals-and-sandbox exec
--json ...``; its stdout is newline-delimited JSON consumed by
:class:`~turnkit.ai.external.event_mapper.ExternalEventMapper`. Thread ids
reported by the CLI are remembered per session so later turns resume the same
conversation.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Sequence

from ...services.settings import Settings
from ..orchestration.artifacts import build_artifact_trace_steps, extract_artifacts
from ..orchestration.errors import TurnCancelledError
from ..orchestration.events import EventSink, MessageSaver, TurnEventEmitter
from ..orchestration.message_builder import chunk_text
from ..orchestration.types import Message, Session, TraceStep, new_id
from .event_mapper import (
    AssistantMessageAction,
    ExternalEventMapper,
    MappedAction,
    ThreadStarted,
    ToolResultAction,
    ToolUseAction,
    TraceStepAction,
    TraceUpdateAction,
)

__all__ = [
    "ExternalCliRunner",
    "ExternalCliError",
    "build_cli_args",
    "parse_json_line",
    "build_exit_error_message",
    "should_retry_without_resume",
    "CLI_NOT_FOUND_MESSAGE",
    "CLI_AUTH_FAILED_MESSAGE",
    "CLI_OUTPUT_LINE_MESSAGE",
    "KILL_GRACE_SECONDS",
]

LOGGER = logging.getLogger(__name__)

CLI_NOT_FOUND_MESSAGE = (
    "Codex CLI is not installed or not found in PATH. Please install Codex CLI and run `codex auth login`."
)
CLI_AUTH_FAILED_MESSAGE = "Codex CLI authentication failed. Please run `codex auth login` and try again."
CLI_OUTPUT_LINE_MESSAGE = "Codex CLI produced an output line too long to parse."
CLI_STATE_MESSAGE = (
    "Codex CLI session state is inconsistent. Retrying usually fixes it; "
    "if repeated, run `codex auth login` and restart the app."
)
KILL_GRACE_SECONDS = 1.5
_STDERR_SNIPPET_LIMIT = 800
_STDOUT_LINE_LIMIT = 16 * 1024 * 1024
_BENIGN_STATE_NOISE = ("state db missing rollout path", "state db record_discrepancy", "codex_core::rollout::list")


class ExternalCliError(RuntimeError):
    """The CLI could not be started or exited unsuccessfully.

    ``has_output`` and ``has_side_effects`` record whether the failed run had
    already shown assistant text or started tools, which rules out a rerun on
    another backend.
    """

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        has_output: bool = False,
        has_side_effects: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.has_output = has_output
        self.has_side_effects = has_side_effects


@dataclass(slots=True)
class _RunState:
    session_id: str
    has_output: bool = False
    has_side_effects: bool = False
    last_text: str = ""


# -----------------------------------------------------------------------------
# Command line and output parsing
# -----------------------------------------------------------------------------


def build_cli_args(
    *,
    cwd: str,
    prompt: str,
    thread_id: str | None = None,
    model: str | None = None,
    overrides: Sequence[str] = (),
) -> list[str]:
    args = ["--dangerously-bypass-approvals-and-sandbox", "exec"]
    if thread_id:
        args += ["resume", "--json", "--skip-git-repo-check"]
    else:
        args += ["--json", "--skip-git-repo-check", "-C", cwd]
    if model and model.strip():
        args += ["-m", model.strip()]
    for override in overrides:
        args += ["-c", override]
    if thread_id:
        args += [thread_id, prompt]
    else:
        args.append(prompt)
    return args


def parse_json_line(line: str) -> dict[str, Any] | None:
    """Parse one stdout line; returns ``None`` for anything but a typed JSON object."""
    trimmed = line.strip()
    if not trimmed.startswith("{"):
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("type"), str):
        return None
    return parsed


def build_exit_error_message(code: int | None, stderr: str) -> str:
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    meaningful = [line for line in lines if not _is_benign_state_noise(line)]
    snippet = " ".join(meaningful).strip()[:_STDERR_SNIPPET_LIMIT]
    lowered = snippet.lower()
    code_text = str(code) if code is not None else "unknown"

    if "auth" in lowered or "login" in lowered or "unauthorized" in lowered:
        return CLI_AUTH_FAILED_MESSAGE
    if snippet:
        return f"Codex CLI exited with code {code_text}: {snippet}"
    if lines:
        return CLI_STATE_MESSAGE
    return f"Codex CLI exited with code {code_text}."


def should_retry_without_resume(message: str) -> bool:
    lowered = message.lower()
    if "state db missing rollout path" in lowered or "record_discrepancy" in lowered:
        return True
    return "resume" in lowered and "thread" in lowered


def _is_benign_state_noise(line: str) -> bool:
    lowered = line.lower()
    return any(noise in lowered for noise in _BENIGN_STATE_NOISE)


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------


class ExternalCliRunner:
    """Spawns the foreign CLI per turn and mirrors its progress on the display sink.

    Example:
        runner = ExternalCliRunner(settings, sink=display.publish)
        text = await runner.run(session, "Fix the failing test")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        sink: EventSink | None = None,
        save_message: MessageSaver | None = None,
        emitter: TurnEventEmitter | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._emitter = emitter or TurnEventEmitter(sink, save_message=save_message)
        self._environ = environ
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._threads: Dict[str, str] = {}
        self._thinking_steps: Dict[str, str] = {}
        self._cancelled: set[str] = set()
        self._kill_timers: Dict[str, asyncio.TimerHandle] = {}

    def thread_id(self, session_id: str) -> str | None:
        return self._threads.get(session_id)

    def forget_thread(self, session_id: str) -> None:
        self._threads.pop(session_id, None)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._processes

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run(self, session: Session, prompt: str) -> str:
        """Run one turn and return the last assistant text.

        Raises:
            ExternalCliError: The CLI failed (after one fresh-thread retry when
                resuming a stale thread).
            TurnCancelledError: :meth:`cancel` was called during the run.
        """

        cwd = session.cwd or (session.mounted_paths[0].real if session.mounted_paths else "") or os.getcwd()
        thread_id = self._threads.get(session.id)
        composed = self._compose_prompt(prompt)
        state = _RunState(session_id=session.id)
        self._cancelled.discard(session.id)
        LOGGER.info(
            "Starting external CLI run for session %s (cwd=%s, thread=%s, overrides=%s)",
            session.id,
            cwd,
            thread_id or "(new)",
            len(self._settings.external_cli_overrides),
        )

        try:
            await self._execute(state, cwd, self._args(cwd, composed, thread_id))
        except ExternalCliError as exc:
            if not thread_id or not should_retry_without_resume(exc.message):
                raise
            LOGGER.warning("Resume of thread %s failed for session %s; retrying with a fresh thread", thread_id, session.id)
            self._threads.pop(session.id, None)
            self._close_thinking_step(session.id, "Resume failed; starting a new thread")
            await self._execute(state, cwd, self._args(cwd, composed, None))
        return state.last_text

    def cancel(self, session_id: str) -> bool:
        """Terminate the session's CLI process, killing it if it lingers."""

        self._cancelled.add(session_id)
        process = self._processes.get(session_id)
        if process is None or process.returncode is not None:
            return False
        LOGGER.info("Cancelling external CLI run for session %s", session_id)
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        loop = asyncio.get_running_loop()
        self._kill_timers[session_id] = loop.call_later(KILL_GRACE_SECONDS, self._kill_if_running, session_id, process)
        return True

    def report_error(self, session_id: str, message: str) -> None:
        """Show a failed run: an error assistant message plus an errored thinking step."""

        self._emitter.message(session_id, Message.assistant(session_id, f"**Error**: {message}"))
        thinking_step = self._thinking_steps.pop(session_id, None)
        if thinking_step is not None:
            self._emitter.trace_update(
                session_id,
                thinking_step,
                status="error",
                title="Error occurred",
                tool_output=message,
                is_error=True,
            )
            return
        self._emitter.trace_step(
            session_id,
            TraceStep(id=new_id(), kind="thinking", status="error", title="Error occurred", content=message),
        )

    def _close_thinking_step(self, session_id: str, title: str) -> None:
        step_id = self._thinking_steps.pop(session_id, None)
        if step_id is not None:
            self._emitter.trace_update(session_id, step_id, status="completed", title=title)

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    def _args(self, cwd: str, prompt: str, thread_id: str | None) -> list[str]:
        return build_cli_args(
            cwd=cwd,
            prompt=prompt,
            thread_id=thread_id,
            model=self._settings.external_cli_model,
            overrides=self._settings.external_cli_overrides,
        )

    def _compose_prompt(self, prompt: str) -> str:
        instructions = (self._settings.instructions or "").strip()
        if not instructions:
            return prompt
        return "\n".join(["<system_instructions>", instructions, "</system_instructions>", "", prompt])

    async def _execute(self, state: _RunState, cwd: str, args: Sequence[str]) -> None:
        session_id = state.session_id
        mapper = ExternalEventMapper(cwd=cwd)
        env = dict(os.environ if self._environ is None else self._environ)
        try:
            process = await asyncio.create_subprocess_exec(
                self._settings.external_cli_path,
                *args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STDOUT_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise ExternalCliError(CLI_NOT_FOUND_MESSAGE) from exc

        self._processes[session_id] = process
        stderr_task = asyncio.ensure_future(self._drain_stderr(process))
        try:
            assert process.stdout is not None
            while True:
                try:
                    raw_line = await process.stdout.readline()
                except ValueError as exc:
                    raise ExternalCliError(
                        CLI_OUTPUT_LINE_MESSAGE,
                        has_output=state.has_output,
                        has_side_effects=state.has_side_effects,
                    ) from exc
                if not raw_line:
                    break
                await self._handle_line(state, mapper, raw_line.decode("utf-8", errors="replace"))
            code = await process.wait()
            stderr = await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            if self._processes.get(session_id) is process:
                del self._processes[session_id]
            timer = self._kill_timers.pop(session_id, None)
            if timer is not None:
                timer.cancel()

        if session_id in self._cancelled:
            self._cancelled.discard(session_id)
            raise TurnCancelledError(session_id)
        if code != 0:
            raise ExternalCliError(
                build_exit_error_message(code, stderr),
                exit_code=code,
                has_output=state.has_output,
                has_side_effects=state.has_side_effects,
            )
        self._thinking_steps.pop(session_id, None)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> str:
        assert process.stderr is not None
        # read() has no line limit, unlike readline()
        text = (await process.stderr.read()).decode("utf-8", errors="replace")
        for line in text.splitlines():
            if line.strip():
                LOGGER.warning("[external cli stderr] %s", line.strip())
        return text

    def _kill_if_running(self, session_id: str, process: asyncio.subprocess.Process) -> None:
        self._kill_timers.pop(session_id, None)
        if self._processes.get(session_id) is process and process.returncode is None:
            LOGGER.warning("External CLI for session %s ignored SIGTERM; killing", session_id)
            process.kill()

    # ------------------------------------------------------------------
    # Event relay
    # ------------------------------------------------------------------

    async def _handle_line(self, state: _RunState, mapper: ExternalEventMapper, line: str) -> None:
        event = parse_json_line(line)
        if event is None:
            if line.strip():
                LOGGER.debug("Ignoring non-JSON CLI output: %s", line.strip()[:180])
            return
        for action in mapper.map(event):
            await self._relay(state, action)

    async def _relay(self, state: _RunState, action: MappedAction) -> None:
        session_id = state.session_id
        if isinstance(action, ThreadStarted):
            self._threads[session_id] = action.thread_id
        elif isinstance(action, TraceStepAction):
            if action.step.kind == "thinking" and action.step.status == "running":
                self._thinking_steps[session_id] = action.step.id
            self._emitter.trace_step(session_id, action.step)
        elif isinstance(action, TraceUpdateAction):
            self._emitter.trace_update(
                session_id,
                action.step_id,
                status=action.status,
                title=action.title,
                tool_output=action.tool_output,
                is_error=action.is_error,
            )
            if action.status not in (None, "running") and self._thinking_steps.get(session_id) == action.step_id:
                del self._thinking_steps[session_id]
        elif isinstance(action, ToolUseAction):
            state.has_side_effects = True
            self._emitter.message(session_id, Message.tool_use(session_id, action.tool_use))
        elif isinstance(action, ToolResultAction):
            self._emitter.message(session_id, Message.tool_result(session_id, action.tool_result))
        elif isinstance(action, AssistantMessageAction):
            state.has_output = True
            await self._stream_assistant_message(state, action.text)

    async def _stream_assistant_message(self, state: _RunState, text: str) -> None:
        session_id = state.session_id
        clean, artifacts = extract_artifacts(text)
        for step in build_artifact_trace_steps(artifacts):
            self._emitter.trace_step(session_id, step)
        if not clean:
            return
        for chunk in chunk_text(clean, self._settings.typing_chunk_size):
            if session_id in self._cancelled:
                return
            self._emitter.partial(session_id, chunk)
            await asyncio.sleep(self._settings.typing_delay)
        self._emitter.partial(session_id, "")
        self._emitter.message(session_id, Message.assistant(session_id, clean))
        state.last_text = clean
