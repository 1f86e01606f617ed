"""Tests for mapping foreign CLI events onto display actions."""

from __future__ import annotations

import itertools

import pytest

from turnkit.ai.external.event_mapper import (
    SCREENSHOT_DEDUP_WINDOW_MS,
    AssistantMessageAction,
    ExternalEventMapper,
    ThreadStarted,
    ToolResultAction,
    ToolUseAction,
    TraceStepAction,
    TraceUpdateAction,
    map_todo_items,
)


class Clock:
    def __init__(self, start: int = 1_000) -> None:
        self.value = start

    def __call__(self) -> int:
        return self.value


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def mapper(clock: Clock) -> ExternalEventMapper:
    ids = itertools.count(1)
    return ExternalEventMapper(cwd="/repo", now=clock, id_factory=lambda: f"gen-{next(ids)}")


def _item(phase: str, **item: object) -> dict[str, object]:
    return {"type": f"item.{phase}", "item": item}


def _screenshot(phase: str, item_id: str) -> dict[str, object]:
    return _item(
        phase,
        id=item_id,
        type="mcp_tool_call",
        server="chrome",
        tool="page__screenshot_for_display",
        arguments={"fullPage": True},
        result={"content": [{"type": "text", "text": "captured"}]},
    )


def test_thread_and_turn_events(mapper: ExternalEventMapper) -> None:
    assert mapper.map({"type": "thread.started", "thread_id": "th_1"}) == [ThreadStarted("th_1")]
    assert mapper.map({"type": "thread.started"}) == []

    (started,) = mapper.map({"type": "turn.started"})
    assert isinstance(started, TraceStepAction)
    assert started.step.id == "gen-1"
    assert started.step.title == "Thinking"

    assert mapper.map({"type": "turn.completed"}) == [
        TraceUpdateAction("gen-1", status="completed", title="Task completed")
    ]
    assert mapper.map({"type": "turn.completed"}) == []
    assert mapper.map({"type": "unknown.event"}) == []


def test_command_execution_lifecycle(mapper: ExternalEventMapper) -> None:
    started = mapper.map(_item("started", id="cmd_1", type="command_execution", command="ls"))

    assert isinstance(started[0], ToolUseAction)
    assert started[0].tool_use.name == "execute_command"
    assert started[0].tool_use.input == {"command": "ls", "cwd": "/repo"}
    assert isinstance(started[1], TraceStepAction)
    assert started[1].step.status == "running"

    completed = mapper.map(
        _item("completed", id="cmd_1", type="command_execution", command="ls", aggregated_output="a\nb", exit_code=0)
    )

    assert completed == [
        TraceUpdateAction("cmd_1", status="completed", tool_output="a\nb", is_error=False),
        completed[1],
    ]
    assert isinstance(completed[1], ToolResultAction)
    assert completed[1].tool_result.content == "a\nb"


def test_completed_without_started_opens_and_closes(mapper: ExternalEventMapper) -> None:
    actions = mapper.map(_item("completed", id="cmd_2", type="command_execution", command="false", exit_code=1))

    assert [type(action) for action in actions] == [ToolUseAction, TraceStepAction, TraceUpdateAction, ToolResultAction]
    update = actions[2]
    assert isinstance(update, TraceUpdateAction)
    assert update.is_error is True
    assert update.tool_output == "Command exited with code 1"


@pytest.mark.parametrize(
    ("exit_code", "output", "is_error"),
    [
        (None, "Command finished.", False),
        (True, "Command finished.", False),
        (2, "Command exited with code 2", True),
    ],
)
def test_command_exit_codes(mapper: ExternalEventMapper, exit_code, output, is_error) -> None:
    actions = mapper.map(_item("completed", id="cmd", type="command_execution", command="x", exit_code=exit_code))

    result = actions[-1]
    assert isinstance(result, ToolResultAction)
    assert result.tool_result.content == output
    assert result.tool_result.is_error is is_error


def test_mcp_tool_call_result_and_error(mapper: ExternalEventMapper) -> None:
    mapper.map(_item("started", id="m1", type="mcp_tool_call", server="docs", tool="search", arguments={"q": "x"}))
    ok = mapper.map(
        _item(
            "completed",
            id="m1",
            type="mcp_tool_call",
            server="docs",
            tool="search",
            result={"content": [{"type": "text", "text": "hit"}]},
        )
    )
    failed = mapper.map(_item("completed", id="m2", type="mcp_tool_call", tool="search", error="boom"))

    assert isinstance(ok[-1], ToolResultAction)
    assert ok[-1].tool_result.content == "hit"
    assert isinstance(failed[0], ToolUseAction)
    assert failed[0].tool_use.name == "mcp__MCP__search"
    assert isinstance(failed[-1], ToolResultAction)
    assert failed[-1].tool_result.content == "boom"
    assert failed[-1].tool_result.is_error is True


def test_duplicate_screenshot_is_suppressed_within_window(mapper: ExternalEventMapper, clock: Clock) -> None:
    first_started = mapper.map(_screenshot("started", "shot_1"))
    first_completed = mapper.map(_screenshot("completed", "shot_1"))
    assert len(first_started) == 2
    assert len(first_completed) == 2

    clock.value += 1_000
    assert mapper.map(_screenshot("started", "shot_2")) == []
    assert mapper.map(_screenshot("completed", "shot_2")) == []

    clock.value += SCREENSHOT_DEDUP_WINDOW_MS
    assert len(mapper.map(_screenshot("started", "shot_3"))) == 2


def test_interleaved_duplicate_screenshot_keeps_original_lifecycle(mapper: ExternalEventMapper, clock: Clock) -> None:
    first_started = mapper.map(_screenshot("started", "shot_1"))
    clock.value += 500
    duplicate_started = mapper.map(_screenshot("started", "shot_2"))
    clock.value += 500
    first_completed = mapper.map(_screenshot("completed", "shot_1"))
    duplicate_completed = mapper.map(_screenshot("completed", "shot_2"))

    assert [type(action) for action in first_started] == [ToolUseAction, TraceStepAction]
    assert duplicate_started == []
    assert [type(action) for action in first_completed] == [TraceUpdateAction, ToolResultAction]
    assert isinstance(first_completed[-1], ToolResultAction)
    assert first_completed[-1].tool_result.tool_use_id == "shot_1"
    assert duplicate_completed == []


def test_todo_list_items(mapper: ExternalEventMapper) -> None:
    actions = mapper.map(
        _item("completed", id="todo_1", type="todo_list", items=[{"text": "Fix bug", "completed": True}, "junk"])
    )

    use = actions[0]
    assert isinstance(use, ToolUseAction)
    assert use.tool_use.name == "TodoWrite"
    assert use.tool_use.input == {
        "todos": [
            {"content": "Fix bug", "status": "completed", "id": "", "activeForm": ""},
            {"content": "Task 2", "status": "pending", "id": "", "activeForm": ""},
        ]
    }
    result = actions[-1]
    assert isinstance(result, ToolResultAction)
    assert result.tool_result.content == "Todo list updated (2 items)"


def test_map_todo_items_prefers_explicit_status() -> None:
    (item,) = map_todo_items([{"text": "Ship", "completed": True, "status": "IN_PROGRESS", "id": "t1"}])

    assert item.status == "in_progress"
    assert item.id == "t1"
    assert map_todo_items(None) == []


def test_agent_message(mapper: ExternalEventMapper) -> None:
    assert mapper.map(_item("completed", id="msg", type="agent_message", text="  Done.  ")) == [
        AssistantMessageAction("Done.")
    ]
    assert mapper.map(_item("started", id="msg2", type="agent_message", text="partial")) == []
    assert mapper.map(_item("completed", id="msg3", type="agent_message", text="   ")) == []


def test_items_without_id_get_generated_ids(mapper: ExternalEventMapper) -> None:
    actions = mapper.map(_item("started", type="command_execution", command="pwd"))

    assert isinstance(actions[0], ToolUseAction)
    assert actions[0].tool_use.id == "gen-1"
