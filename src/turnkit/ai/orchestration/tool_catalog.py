"""Resolution of a session's tool list into a per-turn :class:`ToolConfig`.

Static tools come from a fixed table keyed by canonical name; externally
registered tools are added under a display name that satisfies the backend's
function-name pattern. Display names are allocated deterministically so the
same tool set always yields the same configuration.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Iterable, Mapping, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from .types import ExternalTool, ToolConfig, ToolSpec

__all__ = [
    "STATIC_TOOL_SPECS",
    "TOOL_ALIASES",
    "META_TOOLS",
    "WEB_TOOLS",
    "TOOL_NAME_PATTERN",
    "MAX_TOOL_NAME_LENGTH",
    "normalize_allowed_tools",
    "sanitize_tool_name",
    "allocate_display_name",
    "normalize_input_schema",
    "suggests_browser_intent",
    "build_tool_config",
]

LOGGER = logging.getLogger(__name__)

TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
MAX_TOOL_NAME_LENGTH = 64
_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]+")
_UNDERSCORE_RUNS = re.compile(r"_+")
_HASH_LENGTH = 8

META_TOOLS: frozenset[str] = frozenset({"AskUserQuestion", "TodoWrite", "TodoRead"})
WEB_TOOLS: frozenset[str] = frozenset({"WebFetch", "WebSearch"})

_BROWSER_INTENT = re.compile(
    r"\b(browser|chrome|playwright|mcp|screenshot|navigate|click|web\s*page|open\s+(the\s+)?(site|page|url))\b"
    r"|浏览器|网页|截图",
    re.IGNORECASE,
)
_BROWSER_TOOL_HINTS: tuple[str, ...] = ("browser", "chrome", "playwright")

_PERMISSIVE_SCHEMA: Mapping[str, Any] = {"type": "object", "properties": {}}
_WORKSPACE_PATH = "Path to the file. Relative paths are resolved from the workspace root."
_SEARCH_ROOT = 'Search root inside the workspace. Use "." for the workspace root.'


def _object(properties: Mapping[str, Any], required: Sequence[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": dict(properties),
        "required": list(required),
        "additionalProperties": False,
    }


def _string(description: str | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "string"}
    if description:
        schema["description"] = description
    return schema


_QUESTION_OPTION = _object(
    {"label": _string(), "description": _string()},
    ["label", "description"],
)
_QUESTION_ITEM = _object(
    {
        "question": _string(),
        "header": _string(),
        "options": {"type": "array", "items": _QUESTION_OPTION},
        "multiSelect": {"type": "boolean"},
    },
    ["question", "header", "options", "multiSelect"],
)
_TODO_ITEM = _object(
    {
        "content": _string(),
        "status": {"type": "string", "enum": ["pending", "in_progress", "completed", "cancelled"]},
        "id": _string(),
        "activeForm": _string(),
    },
    ["content", "status", "id", "activeForm"],
)

STATIC_TOOL_SPECS: Mapping[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            "AskUserQuestion",
            "Ask the user a question and wait for their response.",
            _object({"questions": {"type": "array", "items": _QUESTION_ITEM}}, ["questions"]),
        ),
        ToolSpec(
            "TodoWrite",
            "Update the task list for this session. Use empty strings for id/activeForm if not needed.",
            _object(
                {"todos": {"type": "array", "description": "List of todo items.", "items": _TODO_ITEM}},
                ["todos"],
            ),
        ),
        ToolSpec("TodoRead", "Read the current task list for this session.", _object({}, [])),
        ToolSpec(
            "WebFetch",
            "Fetch a URL and return text content.",
            _object({"url": _string("URL to fetch.")}, ["url"]),
        ),
        ToolSpec(
            "WebSearch",
            "Search the web and return summarized results.",
            _object({"query": _string("Search query.")}, ["query"]),
        ),
        ToolSpec(
            "read_file",
            "Read a file from the workspace.",
            _object({"path": _string(_WORKSPACE_PATH)}, ["path"]),
        ),
        ToolSpec(
            "write_file",
            "Write a file to the workspace, creating parent directories if needed.",
            _object(
                {"path": _string(_WORKSPACE_PATH), "content": _string("File contents to write.")},
                ["path", "content"],
            ),
        ),
        ToolSpec(
            "edit_file",
            "Edit a file by replacing the first occurrence of a string.",
            _object(
                {
                    "path": _string(_WORKSPACE_PATH),
                    "old_string": _string("Text to replace."),
                    "new_string": _string("Replacement text."),
                },
                ["path", "old_string", "new_string"],
            ),
        ),
        ToolSpec(
            "list_directory",
            "List directory contents under a path.",
            _object({"path": _string('Directory path to list. Use "." for the workspace root.')}, ["path"]),
        ),
        ToolSpec(
            "glob",
            "Find files by glob pattern under a path.",
            _object(
                {"pattern": _string('Glob pattern, e.g. "**/*.ts".'), "path": _string(_SEARCH_ROOT)},
                ["pattern", "path"],
            ),
        ),
        ToolSpec(
            "grep",
            "Search file contents using a regex pattern.",
            _object(
                {"pattern": _string("Regex pattern to search for."), "path": _string(_SEARCH_ROOT)},
                ["pattern", "path"],
            ),
        ),
        ToolSpec(
            "execute_command",
            "Run a shell command inside the workspace.",
            _object(
                {
                    "command": _string("Shell command to run."),
                    "cwd": _string('Working directory inside the workspace. Use "." for the workspace root.'),
                },
                ["command", "cwd"],
            ),
        ),
    )
}

TOOL_ALIASES: Mapping[str, str] = {
    "askuserquestion": "AskUserQuestion",
    "todowrite": "TodoWrite",
    "todoread": "TodoRead",
    "webfetch": "WebFetch",
    "websearch": "WebSearch",
    "read": "read_file",
    "write": "write_file",
    "edit": "edit_file",
    "bash": "execute_command",
    "ls": "list_directory",
}


# -----------------------------------------------------------------------------
# Name handling
# -----------------------------------------------------------------------------


def normalize_allowed_tools(allowed_tools: Iterable[str] | None) -> list[str]:
    """Map a session's tool list onto canonical static tool names, keeping order."""

    resolved: list[str] = []
    for raw in allowed_tools or ():
        if not isinstance(raw, str):
            continue
        normalized = raw.strip().lower()
        if not normalized:
            continue
        mapped = TOOL_ALIASES.get(normalized, normalized)
        if mapped in STATIC_TOOL_SPECS and mapped not in resolved:
            resolved.append(mapped)
    return resolved


def sanitize_tool_name(name: str) -> str:
    cleaned = _INVALID_NAME_CHARS.sub("_", name or "")
    cleaned = _UNDERSCORE_RUNS.sub("_", cleaned).strip("_")
    return cleaned or "tool"


def allocate_display_name(native_name: str, taken: Iterable[str]) -> str:
    """Pick a backend-safe display name for ``native_name`` not present in ``taken``.

    Valid, free names are used as-is. Otherwise the sanitized name is tried,
    then the sanitized name plus an 8-hex SHA-1 digest of the native name,
    then a numeric counter after the digest. The base is truncated so the
    suffix always fits within the length limit.
    """

    taken_set = set(taken)
    if TOOL_NAME_PATTERN.match(native_name) and native_name not in taken_set:
        return native_name

    base = sanitize_tool_name(native_name)
    if len(base) <= MAX_TOOL_NAME_LENGTH and base not in taken_set:
        return base

    digest = hashlib.sha1(native_name.encode("utf-8")).hexdigest()[:_HASH_LENGTH]
    candidate = _with_suffix(base, f"_{digest}")
    counter = 2
    while candidate in taken_set:
        candidate = _with_suffix(base, f"_{digest}_{counter}")
        counter += 1
    return candidate


def _with_suffix(base: str, suffix: str) -> str:
    return base[: MAX_TOOL_NAME_LENGTH - len(suffix)] + suffix


def normalize_input_schema(tool: ExternalTool) -> dict[str, Any]:
    """Return a declarable parameter schema for an external tool.

    Schemas that fail the JSON-Schema meta-schema check are replaced by a
    permissive object schema so one provider cannot break the whole request.
    """

    schema = tool.input_schema
    if not isinstance(schema, Mapping) or not schema:
        return dict(_PERMISSIVE_SCHEMA)
    candidate = dict(schema)
    candidate.setdefault("type", "object")
    try:
        validator_for(candidate, default=Draft202012Validator).check_schema(candidate)
    except SchemaError as exc:
        LOGGER.warning("External tool %s has an invalid input schema (%s); declaring it permissively", tool.name, exc.message)
        return dict(_PERMISSIVE_SCHEMA)
    except (AttributeError, TypeError, ValueError) as exc:
        # malformed "$schema" values break meta-schema lookup itself
        LOGGER.warning("External tool %s input schema cannot be checked (%s); declaring it permissively", tool.name, exc)
        return dict(_PERMISSIVE_SCHEMA)
    if candidate.get("type") != "object":
        LOGGER.warning("External tool %s input schema is not an object schema; declaring it permissively", tool.name)
        return dict(_PERMISSIVE_SCHEMA)
    return candidate


def suggests_browser_intent(prompt: str | None) -> bool:
    return bool(prompt) and _BROWSER_INTENT.search(prompt or "") is not None


def _is_browser_tool(tool: ExternalTool) -> bool:
    haystack = f"{tool.name} {tool.server_name or ''}".lower()
    return any(hint in haystack for hint in _BROWSER_TOOL_HINTS)


# -----------------------------------------------------------------------------
# Builder
# -----------------------------------------------------------------------------


def build_tool_config(
    allowed_tools: Iterable[str] | None,
    external_tools: Sequence[ExternalTool] = (),
    *,
    prompt: str | None = None,
) -> ToolConfig:
    """Build the tool configuration for one turn.

    Args:
        allowed_tools: The session's allowed static tool names (aliases accepted).
        external_tools: Externally-registered tools currently available.
        prompt: The triggering prompt, used for the browser-intent heuristic.
    """

    static_names = normalize_allowed_tools(allowed_tools)
    if external_tools and suggests_browser_intent(prompt) and any(_is_browser_tool(tool) for tool in external_tools):
        suppressed = [name for name in static_names if name in WEB_TOOLS]
        if suppressed:
            LOGGER.debug("Browser intent detected; suppressing %s", suppressed)
        static_names = [name for name in static_names if name not in WEB_TOOLS]

    response_tools: list[Mapping[str, Any]] = []
    chat_tools: list[Mapping[str, Any]] = []
    invoke_names: dict[str, str] = {}
    for name in static_names:
        spec = STATIC_TOOL_SPECS[name]
        response_tools.append(spec.to_response_tool())
        chat_tools.append(spec.to_chat_tool())
        invoke_names[name] = name

    taken: set[str] = set(static_names)
    external_names: set[str] = set()
    for tool in external_tools:
        display_name = allocate_display_name(tool.name, taken)
        taken.add(display_name)
        external_names.add(display_name)
        invoke_names[display_name] = tool.name
        spec = ToolSpec(
            name=display_name,
            description=tool.description or f"External tool {tool.name}",
            parameters=normalize_input_schema(tool),
            strict=False,
        )
        response_tools.append(spec.to_response_tool())
        chat_tools.append(spec.to_chat_tool())
        if display_name != tool.name:
            LOGGER.debug("External tool %s declared as %s", tool.name, display_name)

    return ToolConfig(
        response_tools=tuple(response_tools),
        chat_tools=tuple(chat_tools),
        allowed_names=frozenset(taken),
        invoke_names=invoke_names,
        external_names=frozenset(external_names),
    )
