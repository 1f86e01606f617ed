"""Tests for the foreign CLI runner.

Process tests drive a small ``/bin/sh`` script standing in for the CLI.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

import turnkit.ai.external.cli_runner as cli_runner_module
from turnkit.ai.external.cli_runner import (
    CLI_AUTH_FAILED_MESSAGE,
    CLI_NOT_FOUND_MESSAGE,
    CLI_OUTPUT_LINE_MESSAGE,
    CLI_STATE_MESSAGE,
    ExternalCliError,
    ExternalCliRunner,
    build_cli_args,
    build_exit_error_message,
    parse_json_line,
    should_retry_without_resume,
)
from turnkit.ai.orchestration.errors import TurnCancelledError
from turnkit.ai.orchestration.types import ServerEvent, Session
from turnkit.services.settings import Settings

from tests.helpers import RecordingSink

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake CLI is a POSIX shell script")

THREAD_STARTED = """printf '%s\\n' '{"type":"thread.started","thread_id":"th_1"}'\n"""
AGENT_MESSAGE = """printf '%s\\n' '{"type":"item.completed","item":{"id":"msg_1","type":"agent_message","text":"All done."}}'\n"""


def _write_cli(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake-cli"
    script.write_text("#!/bin/sh\n" + f'printf \'%s\\n\' "$*" >> "{tmp_path / "args.log"}"\n' + body, encoding="utf-8")
    script.chmod(0o755)
    return str(script)


def _logged_args(tmp_path: Path) -> str:
    return (tmp_path / "args.log").read_text(encoding="utf-8")


def _runner(tmp_path: Path, body: str, sink: RecordingSink, **settings: object) -> ExternalCliRunner:
    return ExternalCliRunner(Settings(external_cli_path=_write_cli(tmp_path, body), **settings), sink=sink)


# -----------------------------------------------------------------------------
# Pure helpers
# -----------------------------------------------------------------------------


def test_build_cli_args_for_new_thread() -> None:
    args = build_cli_args(cwd="/repo", prompt="hi", model=" gpt-5 ", overrides=["sandbox=off"])

    assert args == [
        "--dangerously-bypass-approvals-and-sandbox",
        "exec",
        "--json",
        "--skip-git-repo-check",
        "-C",
        "/repo",
        "-m",
        "gpt-5",
        "-c",
        "sandbox=off",
        "hi",
    ]


def test_build_cli_args_for_resume() -> None:
    args = build_cli_args(cwd="/repo", prompt="hi", thread_id="th_1", model="  ")

    assert args == [
        "--dangerously-bypass-approvals-and-sandbox",
        "exec",
        "resume",
        "--json",
        "--skip-git-repo-check",
        "th_1",
        "hi",
    ]


def test_parse_json_line() -> None:
    assert parse_json_line(' {"type": "turn.started"} \n') == {"type": "turn.started"}
    assert parse_json_line("warning: something") is None
    assert parse_json_line("{broken") is None
    assert parse_json_line('{"no_type": 1}') is None


@pytest.mark.parametrize(
    ("code", "stderr", "expected"),
    [
        (2, "", "Codex CLI exited with code 2."),
        (None, "", "Codex CLI exited with code unknown."),
        (1, "fatal: bad flag\n  \nmore detail\n", "Codex CLI exited with code 1: fatal: bad flag more detail"),
        (1, "ERROR codex_core::rollout::list: state db missing rollout path\n", CLI_STATE_MESSAGE),
        (1, "Please login first", CLI_AUTH_FAILED_MESSAGE),
    ],
)
def test_build_exit_error_message(code, stderr, expected) -> None:
    assert build_exit_error_message(code, stderr) == expected


def test_should_retry_without_resume() -> None:
    assert should_retry_without_resume("state db missing rollout path")
    assert should_retry_without_resume("Cannot resume thread th_1")
    assert not should_retry_without_resume("Codex CLI exited with code 2.")


# -----------------------------------------------------------------------------
# Process runs
# -----------------------------------------------------------------------------


@posix_only
@pytest.mark.asyncio
async def test_successful_run_relays_events(tmp_path: Path, sink: RecordingSink) -> None:
    body = (
        THREAD_STARTED
        + """printf '%s\\n' '{"type":"turn.started"}'\n"""
        + "echo 'not json'\n"
        + AGENT_MESSAGE
        + """printf '%s\\n' '{"type":"turn.completed"}'\n"""
    )
    runner = _runner(tmp_path, body, sink)
    session = Session(id="s-1", cwd=str(tmp_path))

    text = await runner.run(session, "hi")

    assert text == "All done."
    assert runner.thread_id("s-1") == "th_1"
    assert not runner.is_running("s-1")
    assert sink.assistant_texts() == ["All done."]
    assert sink.partials() == ["All done.", ""]
    assert sink.of_type("trace.update")[-1]["updates"] == {"status": "completed", "title": "Task completed"}
    assert f"-C {tmp_path}" in _logged_args(tmp_path)


@posix_only
@pytest.mark.asyncio
async def test_instructions_are_prepended(tmp_path: Path, sink: RecordingSink) -> None:
    runner = _runner(tmp_path, AGENT_MESSAGE, sink, instructions="Stay in the repo.")

    await runner.run(Session(id="s-1", cwd=str(tmp_path)), "hi")

    logged = _logged_args(tmp_path)
    assert "<system_instructions>\nStay in the repo.\n</system_instructions>\n\nhi" in logged


@posix_only
@pytest.mark.asyncio
async def test_nonzero_exit_raises_with_stderr(tmp_path: Path, sink: RecordingSink) -> None:
    body = (
        """printf '%s\\n' '{"type":"item.started","item":{"id":"c1","type":"command_execution","command":"ls"}}'\n"""
        + "echo 'boom' >&2\nexit 3\n"
    )
    runner = _runner(tmp_path, body, sink)

    with pytest.raises(ExternalCliError) as excinfo:
        await runner.run(Session(id="s-1", cwd=str(tmp_path)), "hi")

    error = excinfo.value
    assert error.message == "Codex CLI exited with code 3: boom"
    assert error.exit_code == 3
    assert error.has_side_effects is True
    assert error.has_output is False


@posix_only
@pytest.mark.asyncio
async def test_stale_thread_is_retried_fresh(tmp_path: Path, sink: RecordingSink) -> None:
    body = (
        'case "$*" in\n'
        "  *resume*) echo 'could not resume thread' >&2; exit 1 ;;\n"
        "esac\n" + THREAD_STARTED + AGENT_MESSAGE
    )
    runner = _runner(tmp_path, body, sink)
    session = Session(id="s-1", cwd=str(tmp_path))

    await runner.run(session, "first")
    text = await runner.run(session, "second")

    assert text == "All done."
    invocations = [line for line in _logged_args(tmp_path).splitlines() if line.startswith("--")]
    assert len(invocations) == 3
    assert "resume" in invocations[1] and invocations[1].endswith("th_1 second")
    assert "resume" not in invocations[2]


@posix_only
@pytest.mark.asyncio
async def test_typing_replay_uses_configured_chunk_size(tmp_path: Path, sink: RecordingSink) -> None:
    runner = _runner(tmp_path, AGENT_MESSAGE, sink, typing_chunk_size=4, typing_delay=0.0)

    await runner.run(Session(id="s-1", cwd=str(tmp_path)), "hi")

    assert sink.partials() == ["All ", "done", ".", ""]


@posix_only
@pytest.mark.asyncio
async def test_failed_resume_closes_its_thinking_step(tmp_path: Path, sink: RecordingSink) -> None:
    body = (
        'case "$*" in\n'
        "  *resume*)\n"
        """    printf '%s\\n' '{"type":"turn.started"}'\n"""
        "    echo 'could not resume thread' >&2; exit 1 ;;\n"
        "esac\n" + THREAD_STARTED + AGENT_MESSAGE
    )
    runner = _runner(tmp_path, body, sink)
    session = Session(id="s-1", cwd=str(tmp_path))
    await runner.run(session, "first")
    sink.events.clear()

    await runner.run(session, "second")

    (thinking,) = [payload["step"] for payload in sink.of_type("trace.step") if payload["step"]["type"] == "thinking"]
    updates = [payload for payload in sink.of_type("trace.update") if payload["stepId"] == thinking["id"]]
    assert updates == [
        {
            "sessionId": "s-1",
            "stepId": thinking["id"],
            "updates": {"status": "completed", "title": "Resume failed; starting a new thread"},
        }
    ]


@posix_only
@pytest.mark.asyncio
async def test_overlong_output_line_is_a_cli_error(
    tmp_path: Path, sink: RecordingSink, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(cli_runner_module, "_STDOUT_LINE_LIMIT", 64)
    runner = _runner(tmp_path, "head -c 300 /dev/zero | tr '\\000' x\necho\n", sink)

    with pytest.raises(ExternalCliError) as excinfo:
        await runner.run(Session(id="s-1", cwd=str(tmp_path)), "hi")

    assert excinfo.value.message == CLI_OUTPUT_LINE_MESSAGE
    assert not runner.is_running("s-1")


@pytest.mark.asyncio
async def test_missing_binary(tmp_path: Path, sink: RecordingSink) -> None:
    runner = ExternalCliRunner(Settings(external_cli_path=str(tmp_path / "missing-cli")), sink=sink)

    with pytest.raises(ExternalCliError) as excinfo:
        await runner.run(Session(id="s-1", cwd=str(tmp_path)), "hi")

    assert excinfo.value.message == CLI_NOT_FOUND_MESSAGE


@posix_only
@pytest.mark.asyncio
async def test_cancel_terminates_process(tmp_path: Path, sink: RecordingSink) -> None:
    runner = _runner(tmp_path, "exec sleep 30\n", sink)
    session = Session(id="s-1", cwd=str(tmp_path))

    task = asyncio.ensure_future(runner.run(session, "hi"))
    for _ in range(500):
        if runner.is_running("s-1"):
            break
        await asyncio.sleep(0.01)

    assert runner.cancel("s-1") is True
    with pytest.raises(TurnCancelledError):
        await asyncio.wait_for(task, timeout=10)
    assert not runner.is_running("s-1")


def test_cancel_without_process_is_a_no_op(sink: RecordingSink) -> None:
    assert ExternalCliRunner(sink=sink).cancel("s-1") is False


def test_report_error_emits_message_and_step(sink: RecordingSink) -> None:
    runner = ExternalCliRunner(sink=sink)

    runner.report_error("s-1", "Codex CLI exited with code 2.")

    assert sink.assistant_texts() == ["**Error**: Codex CLI exited with code 2."]
    (step,) = sink.of_type("trace.step")
    assert step["step"]["status"] == "error"
    assert step["step"]["content"] == "Codex CLI exited with code 2."


@posix_only
@pytest.mark.asyncio
async def test_cancel_during_typing_replay_stops_partials(tmp_path: Path, sink: RecordingSink) -> None:
    holder: dict[str, ExternalCliRunner] = {}

    def cancelling_sink(event: ServerEvent) -> None:
        sink(event)
        if event.type == "stream.partial":
            holder["runner"].cancel("s-1")

    settings = Settings(
        external_cli_path=_write_cli(tmp_path, AGENT_MESSAGE + "exec sleep 30\n"),
        typing_chunk_size=4,
        typing_delay=0.0,
    )
    runner = ExternalCliRunner(settings, sink=cancelling_sink)
    holder["runner"] = runner

    with pytest.raises(TurnCancelledError):
        await asyncio.wait_for(runner.run(Session(id="s-1", cwd=str(tmp_path)), "hi"), timeout=10)

    assert sink.partials() == ["All "]
    assert sink.assistant_texts() == []
    assert not runner.is_running("s-1")
