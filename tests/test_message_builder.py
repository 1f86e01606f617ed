"""Tests for request-input builders and text extractors."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from turnkit.ai.orchestration.message_builder import (
    ARTIFACT_INSTRUCTION,
    build_chat_messages,
    build_output_messages,
    build_prompt,
    build_typed_input,
    chunk_text,
    conversation_pairs,
    extract_chat_text,
    extract_completion_text,
    extract_output_text,
)
from turnkit.ai.orchestration.types import Message, TextContent

from tests.helpers import chat_completion, make_response, text_completion


@pytest.fixture
def history() -> list[Message]:
    return [
        Message(id="m1", session_id="s-1", role="system", content=(TextContent("Be brief."),)),
        Message.user("s-1", "hello"),
        Message.assistant("s-1", "hi there"),
        Message(id="m4", session_id="s-1", role="assistant", content=()),
    ]


def test_pairs_skip_empty_messages_and_append_prompt(history: list[Message]) -> None:
    pairs = conversation_pairs(history, "  list files  ", artifact_instruction=False)

    assert pairs == [("system", "Be brief."), ("user", "hello"), ("assistant", "hi there"), ("user", "list files")]


def test_prompt_repeating_last_user_text_is_not_duplicated() -> None:
    pairs = conversation_pairs([Message.user("s-1", "run tests")], "run tests", artifact_instruction=False)

    assert pairs == [("user", "run tests")]


def test_artifact_instruction_goes_on_last_user_entry(history: list[Message]) -> None:
    pairs = conversation_pairs(history, "list files")

    assert pairs[-1] == ("user", "list files" + ARTIFACT_INSTRUCTION)
    assert pairs[1] == ("user", "hello")


def test_artifact_instruction_not_repeated() -> None:
    prompt = 'make it\n```artifact\n{"path":"a"}\n```'

    pairs = conversation_pairs([], prompt)

    assert pairs == [("user", prompt)]


def test_typed_input_shapes(history: list[Message]) -> None:
    items = build_typed_input(history, "go")

    assert items[0] == {"role": "system", "content": [{"type": "input_text", "text": "Be brief."}]}
    assert items[2] == {"role": "assistant", "content": [{"type": "output_text", "text": "hi there"}]}
    assert items[-1]["content"][0]["type"] == "input_text"


def test_chat_and_output_shapes(history: list[Message]) -> None:
    chat = build_chat_messages(history, "go")
    output = build_output_messages(history, "go")

    assert chat[1] == {"role": "user", "content": "hello"}
    assert output[1] == {"role": "user", "content": [{"type": "output_text", "text": "hello"}]}
    assert len(chat) == len(output) == 4


def test_flat_prompt_has_no_instruction(history: list[Message]) -> None:
    assert build_prompt(history, "go") == "SYSTEM: Be brief.\nUSER: hello\nASSISTANT: hi there\nUSER: go"


def test_extract_output_text_prefers_shortcut() -> None:
    assert extract_output_text(make_response("  answer  ")) == "answer"


def test_extract_output_text_walks_output_items() -> None:
    response = {
        "output": [
            {"type": "message", "content": [{"type": "output_text", "text": "Hello "}, {"type": "refusal"}]},
            {"type": "output_text", "text": "world"},
            {"type": "function_call", "name": "x"},
        ]
    }

    assert extract_output_text(response) == "Hello world"


def test_extract_chat_text_variants() -> None:
    assert extract_chat_text(chat_completion(" hi ")) == "hi"
    blocks = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=[{"text": "a"}, {"text": "b"}]))])
    assert extract_chat_text(blocks) == "ab"
    assert extract_chat_text(SimpleNamespace(choices=[])) == ""


def test_extract_completion_text() -> None:
    assert extract_completion_text(text_completion("\nok\n")) == "ok"
    assert extract_completion_text({"choices": []}) == ""


def test_chunk_text() -> None:
    assert chunk_text("abcdefg", 3) == ["abc", "def", "g"]
    assert chunk_text("") == []
    with pytest.raises(ValueError):
        chunk_text("abc", 0)
