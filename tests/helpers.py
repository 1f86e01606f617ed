"""Shared test helpers and stub classes.

Import from here instead of duplicating these fakes in individual test files.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Iterable, Mapping, Sequence

from turnkit.ai.client import AIStreamEvent
from turnkit.ai.orchestration.types import ServerEvent


def _next(queue: list[Any], label: str) -> Any:
    if not queue:
        raise AssertionError(f"Unexpected {label} call")
    item = queue.pop(0)
    if isinstance(item, BaseException):
        raise item
    return item


def function_call(name: str, arguments: Any = None, *, call_id: str = "call_1", item_id: str | None = None) -> SimpleNamespace:
    """Build a ``function_call`` output item; mappings are JSON-encoded."""
    if isinstance(arguments, Mapping):
        arguments = json.dumps(arguments)
    return SimpleNamespace(
        type="function_call",
        id=item_id or f"fc_{call_id}",
        call_id=call_id,
        name=name,
        arguments=arguments or "",
    )


def make_response(text: str = "", calls: Sequence[SimpleNamespace] = (), *, response_id: str = "resp_1") -> SimpleNamespace:
    output: list[Any] = []
    if text:
        output.append(
            SimpleNamespace(type="message", content=[SimpleNamespace(type="output_text", text=text)])
        )
    output.extend(calls)
    return SimpleNamespace(id=response_id, output_text=text, output=output)


@dataclass
class StreamScript:
    deltas: Sequence[str]
    final: Any


class FakeBackend:
    """Scripted stand-in for :class:`turnkit.ai.client.AIClient`.

    Each queue holds results (or exceptions to raise) consumed in call order.

    Example:
        backend = FakeBackend(responses=[make_response("hi")])
        orchestrator = TurnOrchestrator(cast(AIClient, backend), settings)
    """

    def __init__(
        self,
        *,
        responses: Iterable[Any] = (),
        streams: Iterable[Any] = (),
        chats: Iterable[Any] = (),
        completions: Iterable[Any] = (),
    ) -> None:
        self.responses = list(responses)
        self.streams = list(streams)
        self.chats = list(chats)
        self.completions = list(completions)
        self.response_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []
        self.chat_calls: list[list[dict[str, Any]]] = []
        self.completion_calls: list[tuple[str, int]] = []

    async def create_response(self, body: Mapping[str, Any]) -> Any:
        self.response_calls.append(dict(body))
        return _next(self.responses, "create_response")

    async def stream_response(self, body: Mapping[str, Any]):
        self.stream_calls.append(dict(body))
        script = _next(self.streams, "stream_response")
        for delta in script.deltas:
            yield AIStreamEvent(type="output_text.delta", content=delta)
        yield AIStreamEvent(type="response.completed", parsed=script.final)

    async def create_chat_completion(self, messages: Sequence[Mapping[str, Any]]) -> Any:
        self.chat_calls.append([dict(message) for message in messages])
        return _next(self.chats, "create_chat_completion")

    async def create_completion(self, prompt: str, *, max_tokens: int = 512) -> Any:
        self.completion_calls.append((prompt, max_tokens))
        return _next(self.completions, "create_completion")


def chat_completion(text: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def text_completion(text: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(text=text)])


class BackendRejection(Exception):
    """Mimics an SDK status error carrying ``status_code`` and a JSON ``body``."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = {"error": {"message": message}}


@dataclass
class RecordingSink:
    """Display sink that records every event."""

    events: list[ServerEvent] = field(default_factory=list)

    def __call__(self, event: ServerEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[Mapping[str, Any]]:
        return [event.payload for event in self.events if event.type == event_type]

    def partials(self) -> list[str]:
        return [payload["delta"] for payload in self.of_type("stream.partial")]

    def messages(self) -> list[Mapping[str, Any]]:
        return [payload["message"] for payload in self.of_type("stream.message")]

    def assistant_texts(self) -> list[str]:
        texts = []
        for message in self.messages():
            for block in message["content"]:
                if block["type"] == "text":
                    texts.append(block["text"])
        return texts

    def tool_results(self) -> list[Mapping[str, Any]]:
        return [
            block
            for message in self.messages()
            for block in message["content"]
            if block["type"] == "tool_result"
        ]


class FakeExecutor:
    """Records delegated tool calls; ``fail_with`` makes every call raise."""

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_with = fail_with

    async def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.fail_with is not None:
            raise self.fail_with

    async def read_file(self, session_id: str, path: str) -> str:
        await self._record("read_file", session_id, path)
        return f"contents of {path}"

    async def write_file(self, session_id: str, path: str, content: str) -> None:
        await self._record("write_file", session_id, path, content)

    async def edit_file(self, session_id: str, path: str, old_string: str, new_string: str) -> None:
        await self._record("edit_file", session_id, path, old_string, new_string)

    async def list_directory(self, session_id: str, path: str) -> str:
        await self._record("list_directory", session_id, path)
        return "a.txt\nb.txt"

    async def glob(self, session_id: str, pattern: str, path: str) -> str:
        await self._record("glob", session_id, pattern, path)
        return "a.txt"

    async def grep(self, session_id: str, pattern: str, path: str) -> str:
        await self._record("grep", session_id, pattern, path)
        return "a.txt:1:match"

    async def web_fetch(self, url: str) -> str:
        await self._record("web_fetch", url)
        return "<html></html>"

    async def web_search(self, query: str) -> str:
        await self._record("web_search", query)
        return "results"

    async def execute_command(self, session_id: str, command: str, cwd: str) -> str:
        await self._record("execute_command", session_id, command, cwd)
        return ""


class FakeToolProvider:
    def __init__(self, tools: Sequence[Any] = (), results: Mapping[str, Any] | None = None) -> None:
        self.tools = list(tools)
        self.results = dict(results or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def list_tools(self) -> Sequence[Any]:
        return self.tools

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        self.calls.append((name, dict(arguments)))
        result = self.results.get(name, "done")
        if isinstance(result, BaseException):
            raise result
        return result


class FakeMounts:
    def __init__(self, resolved: Mapping[str, str] | None = None, *, fail_with: Exception | None = None) -> None:
        self.resolved = dict(resolved or {})
        self.fail_with = fail_with
        self.registered: dict[str, tuple[Any, ...]] = {}
        self.unregistered: list[str] = []

    def register_session(self, session_id: str, mounts: Sequence[Any]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.registered[session_id] = tuple(mounts)

    def unregister_session(self, session_id: str) -> None:
        self.unregistered.append(session_id)
        self.registered.pop(session_id, None)

    def get_mounts(self, session_id: str) -> Sequence[Any]:
        return self.registered.get(session_id, ())

    def resolve(self, session_id: str, virtual_path: str) -> str | None:
        return self.resolved.get(virtual_path)
