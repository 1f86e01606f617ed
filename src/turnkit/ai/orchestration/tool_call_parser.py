"""Extraction of function-call requests from backend responses.

Response output items may be SDK model objects or plain mappings; both are
read through :func:`item_field`.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Iterable, Mapping

from .types import ParsedToolCall

__all__ = [
    "item_field",
    "parse_tool_calls",
    "parsed_tool_call_id",
    "try_parse_json_object",
    "NON_OBJECT_ARGUMENTS",
]

NON_OBJECT_ARGUMENTS = "Arguments must be an object"


def item_field(item: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a mapping or attribute-style object."""
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


def parse_tool_calls(output: Iterable[Any] | None) -> list[ParsedToolCall]:
    """Return the ``function_call`` items of a response output, in order.

    Empty argument strings parse to an empty object; invalid JSON or a
    non-object payload yields ``input=None`` and a parse error message.
    """

    if output is None:
        return []
    calls: list[ParsedToolCall] = []
    for index, item in enumerate(output):
        if item is None or item_field(item, "type") != "function_call":
            continue
        name = item_field(item, "name") or "unknown"
        raw_arguments = item_field(item, "arguments")
        arguments = raw_arguments if isinstance(raw_arguments, str) else ""
        item_id = item_field(item, "id") or None
        call_id = item_field(item, "call_id") or item_id or parsed_tool_call_id(name, index)
        tool_use_id = item_id or call_id

        if arguments:
            parsed, parse_error = try_parse_json_object(arguments)
        else:
            parsed, parse_error = {}, None

        calls.append(
            ParsedToolCall(
                tool_use_id=tool_use_id,
                call_id=call_id,
                name=name,
                arguments=arguments,
                input=parsed,
                parse_error=parse_error,
            )
        )
    return calls


def parsed_tool_call_id(name: str, index: int) -> str:
    """Generate a unique tool call ID for calls the backend left unidentified."""
    return f"parsed_{name}_{index}_{uuid.uuid4().hex[:8]}"


def try_parse_json_object(text: str) -> tuple[dict[str, Any] | None, str | None]:
    """Parse ``text`` as a JSON object, returning ``(object, None)`` or ``(None, error)``."""
    try:
        result = json.loads(text)
    except json.JSONDecodeError as exc:
        return None, str(exc) or "Invalid JSON"
    if not isinstance(result, dict):
        return None, NON_OBJECT_ARGUMENTS
    return result, None
