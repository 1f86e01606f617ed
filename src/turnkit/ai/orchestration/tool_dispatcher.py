"""Tool call dispatch for a single tool round.

For every parsed call the dispatcher announces intent to the display sink,
validates and gates the call, executes it against the appropriate
collaborator and reports the outcome. Every per-tool failure becomes an error
output fed back to the model; only cancellation escapes.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Sequence

from ..tools.content import FormattedResult, format_tool_result
from ..tools.errors import (
    ArgumentParseError,
    ExecutorUnavailableError,
    PermissionDeniedError,
    ToolError,
    ToolExecutionError,
    ToolInputError,
    UnsupportedToolError,
)
from ..tools.executor import ExternalToolProvider, MountRegistry, ToolExecutor
from .cancellation import CancelToken
from .errors import TurnCancelledError
from .events import TurnEventEmitter
from .permissions import PermissionGate
from .questions import PendingQuestionBroker
from .session_registry import SessionRegistry
from .types import (
    Message,
    ParsedToolCall,
    QuestionItem,
    Session,
    TodoItem,
    ToolConfig,
    ToolOutput,
    ToolResultContent,
    ToolUseContent,
    TraceStep,
    todos_to_dicts,
)

__all__ = ["DispatchContext", "ToolCallDispatcher", "resolve_command_cwd", "TRACE_PREVIEW_LIMIT"]

LOGGER = logging.getLogger(__name__)

TRACE_PREVIEW_LIMIT = 800
_WINDOWS_DRIVE = re.compile(r"^[a-zA-Z]:")

_Handler = Callable[["DispatchContext", Mapping[str, Any], str], Awaitable[str]]


@dataclass(slots=True)
class DispatchContext:
    """Per-turn inputs shared by every call in a round."""

    session: Session
    tool_config: ToolConfig
    token: CancelToken


class ToolCallDispatcher:
    """Validates, gates and executes tool calls requested by the backend.

    Example:
        dispatcher = ToolCallDispatcher(emitter=emitter, permissions=gate, questions=broker,
                                        sessions=registry, executor=executor)
        outputs = await dispatcher.dispatch_all(context, calls)
    """

    def __init__(
        self,
        *,
        emitter: TurnEventEmitter,
        permissions: PermissionGate,
        questions: PendingQuestionBroker,
        sessions: SessionRegistry,
        executor: ToolExecutor | None = None,
        external_tools: ExternalToolProvider | None = None,
        mounts: MountRegistry | None = None,
    ) -> None:
        self._emitter = emitter
        self._permissions = permissions
        self._questions = questions
        self._sessions = sessions
        self._executor = executor
        self._external_tools = external_tools
        self._mounts = mounts
        self._handlers: Dict[str, _Handler] = {
            "AskUserQuestion": self._ask_user_question,
            "TodoWrite": self._todo_write,
            "TodoRead": self._todo_read,
            "read_file": self._read_file,
            "write_file": self._write_file,
            "edit_file": self._edit_file,
            "list_directory": self._list_directory,
            "glob": self._glob,
            "grep": self._grep,
            "WebFetch": self._web_fetch,
            "WebSearch": self._web_search,
            "execute_command": self._execute_command,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch_all(self, context: DispatchContext, calls: Sequence[ParsedToolCall]) -> list[ToolOutput]:
        """Dispatch ``calls`` sequentially; outputs keep call order."""

        outputs: list[ToolOutput] = []
        for call in calls:
            context.token.raise_if_cancelled()
            outputs.append(await self.dispatch(context, call))
        return outputs

    async def dispatch(self, context: DispatchContext, call: ParsedToolCall) -> ToolOutput:
        session_id = context.session.id
        tool_use_id = call.tool_use_id
        tool_name = call.name or "unknown"
        display_input = call.display_input()

        self._emitter.message(
            session_id,
            Message.tool_use(session_id, ToolUseContent(id=tool_use_id, name=tool_name, input=display_input)),
        )
        self._emitter.trace_step(
            session_id,
            TraceStep(
                id=tool_use_id,
                kind="tool_call",
                status="running",
                title=tool_name,
                tool_name=tool_name,
                tool_input=display_input,
            ),
        )

        result: FormattedResult
        is_error = False
        try:
            result = await self._run_call(context, call, tool_name)
        except TurnCancelledError:
            raise
        except ToolError as exc:
            LOGGER.info("Tool %s failed: %s", tool_name, exc.to_dict())
            result = FormattedResult(text=exc.message)
            is_error = True
        except Exception as exc:
            LOGGER.info("Tool %s raised %s: %s", tool_name, type(exc).__name__, exc)
            result = FormattedResult(text=ToolExecutionError.from_exception(tool_name, exc).message)
            is_error = True

        output = result.text or ("Tool failed" if is_error else "OK")
        self._emitter.trace_update(
            session_id,
            tool_use_id,
            status="error" if is_error else "completed",
            tool_output=output[:TRACE_PREVIEW_LIMIT],
            is_error=is_error,
        )
        self._emitter.message(
            session_id,
            Message.tool_result(
                session_id,
                ToolResultContent(tool_use_id=tool_use_id, content=output, is_error=is_error, images=result.images),
            ),
        )
        return ToolOutput(
            call_id=call.call_id,
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            output=f"Error: {output}" if is_error else output,
            is_error=is_error,
        )

    async def _run_call(self, context: DispatchContext, call: ParsedToolCall, tool_name: str) -> FormattedResult:
        config = context.tool_config
        if not config.is_allowed(tool_name):
            raise UnsupportedToolError.not_allowed(tool_name)
        if call.parse_error is not None or call.input is None:
            raise ArgumentParseError.from_parse_error(call.parse_error or "Invalid JSON")

        tool_input = call.input
        external = config.is_external(tool_name)
        permission = await context.token.guard(
            self._permissions.request(
                context.session.id,
                call.tool_use_id,
                tool_name,
                tool_input,
                external=external,
            )
        )
        if permission == "deny":
            raise PermissionDeniedError()

        if external:
            return await context.token.guard(self._call_external(config.invoke_name(tool_name), tool_input))
        handler = self._handlers.get(config.invoke_name(tool_name))
        if handler is None:
            raise UnsupportedToolError.unknown(tool_name)
        text = await context.token.guard(handler(context, tool_input, call.tool_use_id))
        return FormattedResult(text=text)

    # ------------------------------------------------------------------
    # External tools
    # ------------------------------------------------------------------

    async def _call_external(self, native_name: str, tool_input: Mapping[str, Any]) -> FormattedResult:
        if self._external_tools is None:
            raise ExecutorUnavailableError()
        raw = await self._external_tools.call_tool(native_name, dict(tool_input))
        formatted = format_tool_result(raw)
        if isinstance(raw, Mapping) and raw.get("isError") is True:
            raise ToolExecutionError(message=formatted.text or "Tool failed", tool_name=native_name)
        return formatted

    # ------------------------------------------------------------------
    # Meta tools
    # ------------------------------------------------------------------

    async def _ask_user_question(self, context: DispatchContext, tool_input: Mapping[str, Any], tool_use_id: str) -> str:
        raw_questions = tool_input.get("questions")
        if not isinstance(raw_questions, list):
            raise ToolInputError(message="questions is required and must be an array", field_name="questions")
        questions: list[QuestionItem] = []
        for raw in raw_questions:
            if isinstance(raw, Mapping):
                item = QuestionItem.from_mapping(raw)
                if item is not None:
                    questions.append(item)
        if not questions:
            raise ToolInputError.required("questions")
        return await self._questions.ask(context.session.id, tool_use_id, questions, token=context.token)

    async def _todo_write(self, context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        raw_todos = tool_input.get("todos")
        if not isinstance(raw_todos, list):
            raise ToolInputError(message="todos is required and must be an array", field_name="todos")
        todos: list[TodoItem] = []
        for raw in raw_todos:
            if isinstance(raw, Mapping):
                item = TodoItem.from_mapping(raw)
                if item is not None:
                    todos.append(item)
        self._sessions.replace_todos(context.session.id, todos)
        return f"Todo list updated ({len(todos)} items)"

    async def _todo_read(self, context: DispatchContext, _tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        todos = self._sessions.todos(context.session.id)
        return json.dumps({"todos": todos_to_dicts(todos)}, ensure_ascii=False, separators=(",", ":"))

    # ------------------------------------------------------------------
    # Delegated tools
    # ------------------------------------------------------------------

    def _require_executor(self) -> ToolExecutor:
        if self._executor is None:
            raise ExecutorUnavailableError()
        return self._executor

    async def _read_file(self, context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        path = _required(tool_input, "path")
        return await self._require_executor().read_file(context.session.id, path)

    async def _write_file(self, context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        path = _required(tool_input, "path")
        content = _required(tool_input, "content", strip=False)
        await self._require_executor().write_file(context.session.id, path, content)
        return f"File written: {path}"

    async def _edit_file(self, context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        path = _required(tool_input, "path")
        old_string = _required(tool_input, "old_string", strip=False)
        new_string = _required(tool_input, "new_string", strip=False)
        await self._require_executor().edit_file(context.session.id, path, old_string, new_string)
        return f"File edited: {path}"

    async def _list_directory(self, context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        path = _optional(tool_input, "path") or "."
        return await self._require_executor().list_directory(context.session.id, path)

    async def _glob(self, context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        pattern = _required(tool_input, "pattern", strip=False)
        path = _optional(tool_input, "path") or "."
        return await self._require_executor().glob(context.session.id, pattern, path)

    async def _grep(self, context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        pattern = _required(tool_input, "pattern", strip=False)
        path = _optional(tool_input, "path") or "."
        return await self._require_executor().grep(context.session.id, pattern, path)

    async def _web_fetch(self, _context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        url = _required(tool_input, "url")
        return await self._require_executor().web_fetch(url)

    async def _web_search(self, _context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        query = _required(tool_input, "query")
        return await self._require_executor().web_search(query)

    async def _execute_command(self, context: DispatchContext, tool_input: Mapping[str, Any], _tool_use_id: str) -> str:
        command = tool_input.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ToolInputError.required("command")
        cwd = resolve_command_cwd(context.session, tool_input.get("cwd"), self._mounts)
        return await self._require_executor().execute_command(context.session.id, command, cwd)


def resolve_command_cwd(session: Session, raw_cwd: Any, mounts: MountRegistry | None = None) -> str:
    """Resolve the working directory requested for ``execute_command``.

    Empty values fall back to the session cwd, then the first mount, then the
    process cwd. ``/``-prefixed values are first tried as virtual workspace
    paths; absolute paths pass through; relative paths join the fallback.
    """

    mounted = list(mounts.get_mounts(session.id)) if mounts is not None else list(session.mounted_paths)
    fallback = session.cwd or (mounted[0].real if mounted else "") or os.getcwd()
    cwd = raw_cwd.strip() if isinstance(raw_cwd, str) else ""
    if not cwd:
        return fallback
    if mounts is not None and cwd.startswith("/"):
        resolved = mounts.resolve(session.id, cwd)
        if resolved:
            return resolved
    if os.path.isabs(cwd) or _WINDOWS_DRIVE.match(cwd):
        return cwd
    return os.path.normpath(os.path.join(fallback, cwd))


def _required(tool_input: Mapping[str, Any], key: str, *, strip: bool = True) -> str:
    value = tool_input.get(key)
    text = value if isinstance(value, str) else ""
    if strip:
        text = text.strip()
    if not text:
        raise ToolInputError.required(key)
    return text


def _optional(tool_input: Mapping[str, Any], key: str) -> str:
    value = tool_input.get(key)
    return value.strip() if isinstance(value, str) else ""
