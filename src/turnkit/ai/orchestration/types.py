"""Core type definitions for the turn orchestration pipeline.

The dataclasses here are immutable and flow between the catalog builder, the
dispatcher, the orchestrator and the display sink. ``to_dict`` methods produce
the camelCase wire shape the display sink consumes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence, Union

from ..ai_types import (
    ExternalTool,
    MountedPath,
    PermissionResult,
    QuestionItem,
    QuestionOption,
    Session,
    TodoItem,
    new_id,
    now_ms,
)
from ..tools.content import ToolImage

__all__ = [
    # Re-exported shared contracts
    "Session",
    "MountedPath",
    "ExternalTool",
    "TodoItem",
    "QuestionItem",
    "QuestionOption",
    "PermissionResult",
    # Messages
    "MessageRole",
    "TextContent",
    "ToolUseContent",
    "ToolResultContent",
    "ContentBlock",
    "Message",
    # Tools
    "ToolSpec",
    "ToolConfig",
    "ParsedToolCall",
    "ToolOutput",
    # Trace / events
    "TraceKind",
    "TraceStatus",
    "TraceStep",
    "ServerEvent",
    "todos_to_dicts",
]


# -----------------------------------------------------------------------------
# Message Types
# -----------------------------------------------------------------------------

MessageRole = Literal["user", "assistant", "system"]


@dataclass(slots=True, frozen=True)
class TextContent:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(slots=True, frozen=True)
class ToolUseContent:
    id: str
    name: str
    input: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": dict(self.input)}


@dataclass(slots=True, frozen=True)
class ToolResultContent:
    tool_use_id: str
    content: str
    is_error: bool = False
    images: tuple[ToolImage, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "tool_result",
            "toolUseId": self.tool_use_id,
            "content": self.content,
            "isError": self.is_error,
        }
        if self.images:
            data["images"] = [image.to_dict() for image in self.images]
        return data


ContentBlock = Union[TextContent, ToolUseContent, ToolResultContent]


@dataclass(slots=True, frozen=True)
class Message:
    """A chat message as stored in session history and sent to the display sink.

    Attributes:
        id: Unique message identifier.
        session_id: Owning session.
        role: Sender role.
        content: Ordered content blocks.
        timestamp: Epoch milliseconds.
    """

    id: str
    session_id: str
    role: MessageRole
    content: tuple[ContentBlock, ...]
    timestamp: int = field(default_factory=now_ms)

    def text(self) -> str:
        """Return the newline-joined text blocks, trimmed."""
        parts = [block.text for block in self.content if isinstance(block, TextContent)]
        return "\n".join(parts).strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "role": self.role,
            "content": [block.to_dict() for block in self.content],
            "timestamp": self.timestamp,
        }

    @classmethod
    def user(cls, session_id: str, text: str) -> Message:
        return cls(id=new_id(), session_id=session_id, role="user", content=(TextContent(text),))

    @classmethod
    def assistant(cls, session_id: str, text: str) -> Message:
        return cls(id=new_id(), session_id=session_id, role="assistant", content=(TextContent(text),))

    @classmethod
    def tool_use(cls, session_id: str, tool_use: ToolUseContent) -> Message:
        return cls(id=new_id(), session_id=session_id, role="assistant", content=(tool_use,))

    @classmethod
    def tool_result(cls, session_id: str, result: ToolResultContent) -> Message:
        return cls(id=new_id(), session_id=session_id, role="assistant", content=(result,))


# -----------------------------------------------------------------------------
# Tool Types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """A tool declaration: name, description and JSON-Schema parameter contract."""

    name: str
    description: str
    parameters: Mapping[str, Any]
    strict: bool = True

    def to_response_tool(self, name: str | None = None) -> dict[str, Any]:
        return {
            "type": "function",
            "name": name or self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
            "strict": self.strict,
        }

    def to_chat_tool(self, name: str | None = None) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": name or self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }


@dataclass(slots=True, frozen=True)
class ToolConfig:
    """Per-turn tool configuration derived from the session and live external tools.

    Attributes:
        response_tools: Declarations for the responses protocol.
        chat_tools: Declarations for the chat protocol.
        allowed_names: Display names the model may call.
        invoke_names: Display name to the name used when invoking the tool.
        external_names: Display names that belong to externally-registered tools.
    """

    response_tools: tuple[Mapping[str, Any], ...] = ()
    chat_tools: tuple[Mapping[str, Any], ...] = ()
    allowed_names: frozenset[str] = frozenset()
    invoke_names: Mapping[str, str] = field(default_factory=dict)
    external_names: frozenset[str] = frozenset()

    def is_allowed(self, name: str) -> bool:
        return name in self.allowed_names

    def is_external(self, name: str) -> bool:
        return name in self.external_names

    def invoke_name(self, name: str) -> str:
        return self.invoke_names.get(name, name)


@dataclass(slots=True, frozen=True)
class ParsedToolCall:
    """A tool call requested by the backend, with its arguments parsed.

    ``input`` is ``None`` exactly when ``parse_error`` is set.
    """

    tool_use_id: str
    call_id: str
    name: str
    arguments: str
    input: Mapping[str, Any] | None
    parse_error: str | None = None

    def to_function_call_item(self) -> dict[str, Any]:
        return {
            "type": "function_call",
            "call_id": self.call_id,
            "name": self.name,
            "arguments": self.arguments,
        }

    def display_input(self) -> dict[str, Any]:
        if self.input is not None:
            return dict(self.input)
        return {"raw": self.arguments, "error": self.parse_error or "Invalid arguments"}


@dataclass(slots=True, frozen=True)
class ToolOutput:
    call_id: str
    tool_use_id: str
    tool_name: str
    output: str
    is_error: bool = False

    def to_function_call_output_item(self) -> dict[str, Any]:
        return {"type": "function_call_output", "call_id": self.call_id, "output": self.output}


# -----------------------------------------------------------------------------
# Trace / Event Types
# -----------------------------------------------------------------------------

TraceKind = Literal["thinking", "text", "tool_call", "tool_result"]
TraceStatus = Literal["pending", "running", "completed", "error"]


@dataclass(slots=True, frozen=True)
class TraceStep:
    """Display-only record describing a thinking segment or tool invocation."""

    id: str
    kind: TraceKind
    status: TraceStatus
    title: str
    tool_name: str | None = None
    tool_input: Mapping[str, Any] | None = None
    tool_output: str | None = None
    is_error: bool | None = None
    content: str | None = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.kind,
            "status": self.status,
            "title": self.title,
            "timestamp": self.timestamp,
        }
        if self.tool_name is not None:
            data["toolName"] = self.tool_name
        if self.tool_input is not None:
            data["toolInput"] = dict(self.tool_input)
        if self.tool_output is not None:
            data["toolOutput"] = self.tool_output
        if self.is_error is not None:
            data["isError"] = self.is_error
        if self.content is not None:
            data["content"] = self.content
        return data


@dataclass(slots=True, frozen=True)
class ServerEvent:
    """Envelope delivered to the display sink."""

    type: str
    payload: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": dict(self.payload)}


def todos_to_dicts(items: Sequence[TodoItem]) -> list[dict[str, Any]]:
    return [item.to_dict() for item in items]
