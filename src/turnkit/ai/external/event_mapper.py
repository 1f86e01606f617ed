"""Translation of a foreign agent CLI's JSON event stream into display actions.

The CLI (``codex exec --json``) prints one event per line::

    {"type": "item.started", "item": {"id": "item_1", "type": "command_execution", ...}}

:class:`ExternalEventMapper` keeps the in-flight tool contexts keyed by item id
and turns each event into zero or more :data:`MappedAction` values that the
runner forwards to the display sink.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Mapping, Union

from ..ai_types import TodoItem, new_id, now_ms
from ..orchestration.types import ToolResultContent, ToolUseContent, TraceStatus, TraceStep
from ..tools.content import FormattedResult, format_tool_result, stable_stringify

__all__ = [
    "ThreadStarted",
    "TraceStepAction",
    "TraceUpdateAction",
    "ToolUseAction",
    "ToolResultAction",
    "AssistantMessageAction",
    "MappedAction",
    "ExternalEventMapper",
    "map_todo_items",
    "SCREENSHOT_TOOL_SUFFIX",
    "SCREENSHOT_DEDUP_WINDOW_MS",
]

LOGGER = logging.getLogger(__name__)

SCREENSHOT_TOOL_SUFFIX = "__screenshot_for_display"
SCREENSHOT_DEDUP_WINDOW_MS = 90_000
_PREVIEW_LIMIT = 800
_TODO_STATUSES = ("completed", "in_progress", "cancelled", "pending")


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ThreadStarted:
    thread_id: str


@dataclass(slots=True, frozen=True)
class TraceStepAction:
    step: TraceStep


@dataclass(slots=True, frozen=True)
class TraceUpdateAction:
    step_id: str
    status: TraceStatus | None = None
    title: str | None = None
    tool_output: str | None = None
    is_error: bool | None = None


@dataclass(slots=True, frozen=True)
class ToolUseAction:
    tool_use: ToolUseContent


@dataclass(slots=True, frozen=True)
class ToolResultAction:
    tool_result: ToolResultContent


@dataclass(slots=True, frozen=True)
class AssistantMessageAction:
    text: str


MappedAction = Union[
    ThreadStarted,
    TraceStepAction,
    TraceUpdateAction,
    ToolUseAction,
    ToolResultAction,
    AssistantMessageAction,
]


@dataclass(slots=True, frozen=True)
class _ToolContext:
    tool_use_id: str
    name: str
    input: Mapping[str, Any]


@dataclass(slots=True, frozen=True)
class _ScreenshotCall:
    at: int
    item_id: str


# -----------------------------------------------------------------------------
# Mapper
# -----------------------------------------------------------------------------


class ExternalEventMapper:
    """Stateful mapper for one CLI process.

    Args:
        cwd: Working directory reported as the input of command executions.
        now: Epoch-millisecond clock, injectable for tests.
        id_factory: Source of ids for steps and id-less items.
    """

    def __init__(
        self,
        *,
        cwd: str | None = None,
        now: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._cwd = cwd or "."
        self._now = now
        self._id_factory = id_factory
        self._thinking_step_id: str | None = None
        self._contexts: Dict[str, _ToolContext] = {}
        self._suppressed: set[str] = set()
        self._recent_screenshots: Dict[str, _ScreenshotCall] = {}

    def map(self, event: Mapping[str, Any]) -> list[MappedAction]:
        event_type = event.get("type")
        if event_type == "thread.started":
            thread_id = event.get("thread_id")
            return [ThreadStarted(thread_id)] if isinstance(thread_id, str) else []
        if event_type == "turn.started":
            return self._turn_started()
        if event_type == "turn.completed":
            return self._turn_completed()
        if event_type in ("item.started", "item.completed"):
            item = event.get("item")
            if isinstance(item, Mapping):
                phase: Literal["started", "completed"] = "started" if event_type == "item.started" else "completed"
                return self._map_item(item, phase)
        return []

    # ------------------------------------------------------------------
    # Turn events
    # ------------------------------------------------------------------

    def _turn_started(self) -> list[MappedAction]:
        step_id = self._id_factory()
        self._thinking_step_id = step_id
        step = TraceStep(id=step_id, kind="thinking", status="running", title="Thinking", timestamp=self._now())
        return [TraceStepAction(step)]

    def _turn_completed(self) -> list[MappedAction]:
        if self._thinking_step_id is None:
            return []
        step_id, self._thinking_step_id = self._thinking_step_id, None
        return [TraceUpdateAction(step_id, status="completed", title="Task completed")]

    # ------------------------------------------------------------------
    # Item events
    # ------------------------------------------------------------------

    def _map_item(self, item: Mapping[str, Any], phase: Literal["started", "completed"]) -> list[MappedAction]:
        item_type = item.get("type")
        raw_id = item.get("id")
        item_id = raw_id if isinstance(raw_id, str) else self._id_factory()
        actions: list[MappedAction] = []

        if item_type == "command_execution":
            command = item.get("command")
            tool_input = {"command": command if isinstance(command, str) else "", "cwd": self._cwd}
            context = self._ensure_context(actions, item_id, "execute_command", tool_input)
            if phase == "completed":
                exit_code = _exit_code(item)
                is_error = exit_code is not None and exit_code != 0
                self._close_context(actions, item_id, context, FormattedResult(_command_output(item)), is_error)
            return actions

        if item_type == "mcp_tool_call":
            tool_name = _mcp_tool_name(item)
            arguments = item.get("arguments")
            tool_input = dict(arguments) if isinstance(arguments, Mapping) else {}
            if self._suppress_duplicate_screenshot(item_id, tool_name, tool_input, phase):
                LOGGER.debug("Suppressed duplicate %s call %s", tool_name, item_id)
                return actions
            context = self._ensure_context(actions, item_id, tool_name, tool_input)
            if phase == "completed":
                error = item.get("error")
                has_error = isinstance(error, str) and bool(error.strip())
                result = FormattedResult(error) if has_error else format_tool_result(item.get("result"))
                self._close_context(actions, item_id, context, result, has_error)
            return actions

        if item_type == "todo_list":
            todos = map_todo_items(item.get("items"))
            tool_input = {"todos": [todo.to_dict() for todo in todos]}
            context = self._ensure_context(actions, item_id, "TodoWrite", tool_input)
            if phase == "completed":
                output = f"Todo list updated ({len(todos)} items)"
                self._close_context(actions, item_id, context, FormattedResult(output), False)
            return actions

        if item_type == "agent_message" and phase == "completed":
            text = item.get("text")
            text = text.strip() if isinstance(text, str) else ""
            if text:
                actions.append(AssistantMessageAction(text))
        return actions

    def _ensure_context(
        self,
        actions: list[MappedAction],
        item_id: str,
        tool_name: str,
        tool_input: Mapping[str, Any],
    ) -> _ToolContext:
        existing = self._contexts.get(item_id)
        if existing is not None:
            return existing
        tool_use_id = item_id or self._id_factory()
        context = _ToolContext(tool_use_id=tool_use_id, name=tool_name, input=tool_input)
        self._contexts[item_id] = context
        actions.append(ToolUseAction(ToolUseContent(id=tool_use_id, name=tool_name, input=tool_input)))
        actions.append(
            TraceStepAction(
                TraceStep(
                    id=tool_use_id,
                    kind="tool_call",
                    status="running",
                    title=tool_name,
                    tool_name=tool_name,
                    tool_input=tool_input,
                    timestamp=self._now(),
                )
            )
        )
        return context

    def _close_context(
        self,
        actions: list[MappedAction],
        item_id: str,
        context: _ToolContext,
        result: FormattedResult,
        is_error: bool,
    ) -> None:
        actions.append(
            TraceUpdateAction(
                context.tool_use_id,
                status="error" if is_error else "completed",
                tool_output=result.text[:_PREVIEW_LIMIT],
                is_error=is_error,
            )
        )
        actions.append(
            ToolResultAction(
                ToolResultContent(
                    tool_use_id=context.tool_use_id,
                    content=result.text,
                    is_error=is_error,
                    images=result.images,
                )
            )
        )
        self._contexts.pop(item_id, None)

    def _suppress_duplicate_screenshot(
        self,
        item_id: str,
        tool_name: str,
        tool_input: Mapping[str, Any],
        phase: Literal["started", "completed"],
    ) -> bool:
        """Hide a repeated screenshot call with identical arguments.

        The first call keeps its full started/completed lifecycle; a later call
        with the same signature and a different item id inside the window is
        hidden for both of its events.
        """

        if not tool_name.endswith(SCREENSHOT_TOOL_SUFFIX):
            return False
        if item_id in self._suppressed:
            return True

        signature = f"{tool_name}:{stable_stringify(tool_input)}"
        now = self._now()
        last = self._recent_screenshots.get(signature)

        if phase == "completed" and item_id in self._contexts:
            return False
        if last is not None and last.item_id != item_id and now - last.at < SCREENSHOT_DEDUP_WINDOW_MS:
            self._suppressed.add(item_id)
            return True
        if phase == "started":
            self._recent_screenshots[signature] = _ScreenshotCall(at=now, item_id=item_id)
        return False


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def map_todo_items(raw_items: Any) -> list[TodoItem]:
    """Normalize the CLI's todo entries (``text``/``completed``) into :class:`TodoItem`."""

    if not isinstance(raw_items, list):
        return []
    todos: list[TodoItem] = []
    for index, raw in enumerate(raw_items):
        item = raw if isinstance(raw, Mapping) else {}
        text = item.get("text")
        item_id = item.get("id")
        active_form = item.get("activeForm")
        todos.append(
            TodoItem(
                content=text if isinstance(text, str) else f"Task {index + 1}",
                status=_todo_status(item.get("completed"), item.get("status")),
                id=item_id if isinstance(item_id, str) else "",
                active_form=active_form if isinstance(active_form, str) else "",
            )
        )
    return todos


def _todo_status(completed: Any, status: Any) -> Any:
    if isinstance(status, str) and status.lower() in _TODO_STATUSES:
        return status.lower()
    if completed is True:
        return "completed"
    return "pending"


def _mcp_tool_name(item: Mapping[str, Any]) -> str:
    server = item.get("server")
    tool = item.get("tool")
    return f"mcp__{server if isinstance(server, str) else 'MCP'}__{tool if isinstance(tool, str) else 'unknown'}"


def _exit_code(item: Mapping[str, Any]) -> int | None:
    exit_code = item.get("exit_code")
    if isinstance(exit_code, bool) or not isinstance(exit_code, int):
        return None
    return exit_code


def _command_output(item: Mapping[str, Any]) -> str:
    output = item.get("aggregated_output")
    output = output if isinstance(output, str) else ""
    if output.strip():
        return output
    exit_code = _exit_code(item)
    if exit_code is None:
        return "Command finished."
    return f"Command exited with code {exit_code}"
