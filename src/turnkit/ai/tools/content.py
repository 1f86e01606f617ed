"""Normalization of loosely-typed tool results into display text and images."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

__all__ = [
    "ToolImage",
    "FormattedResult",
    "DEFAULT_COMPLETION_LABEL",
    "format_tool_result",
    "parse_image_block",
    "stable_stringify",
]

DEFAULT_COMPLETION_LABEL = "MCP tool call completed"
_DEFAULT_IMAGE_MIME = "image/png"


@dataclass(slots=True, frozen=True)
class ToolImage:
    data: str
    mime_type: str = _DEFAULT_IMAGE_MIME

    def to_dict(self) -> dict[str, str]:
        return {"data": self.data, "mimeType": self.mime_type}


@dataclass(slots=True, frozen=True)
class FormattedResult:
    text: str
    images: tuple[ToolImage, ...] = field(default_factory=tuple)


def format_tool_result(result: Any, *, label: str = DEFAULT_COMPLETION_LABEL) -> FormattedResult:
    """Render an external tool result.

    Strings pass through. Mappings with a ``content`` list contribute their text
    blocks (newline-joined) and image blocks; an image-only result gets a short
    summary line. Other mappings are pretty-printed JSON. Anything else collapses
    to ``label``.
    """

    if isinstance(result, str):
        return FormattedResult(text=result)
    if not isinstance(result, Mapping):
        return FormattedResult(text=label)

    content = result.get("content")
    if isinstance(content, list):
        text_parts: list[str] = []
        images: list[ToolImage] = []
        for block in content:
            if not isinstance(block, Mapping):
                continue
            text = block.get("text")
            if isinstance(text, str):
                text_parts.append(text)
            elif block.get("type") == "image":
                image = parse_image_block(block)
                if image is not None:
                    images.append(image)
        if not text_parts and images:
            plural = "s" if len(images) > 1 else ""
            text_parts.append(f"{label} ({len(images)} image{plural})")
        return FormattedResult(text="\n".join(text_parts), images=tuple(images))

    try:
        return FormattedResult(text=json.dumps(result, indent=2, ensure_ascii=False))
    except (TypeError, ValueError):
        return FormattedResult(text=label)


def parse_image_block(block: Mapping[str, Any]) -> ToolImage | None:
    """Extract base64 data and media type from a nested ``source`` or top-level fields."""

    source = block.get("source")
    source = source if isinstance(source, Mapping) else None
    source_data = _stripped(source.get("data")) if source else ""
    data = source_data or _stripped(block.get("data"))
    if not data:
        return None

    source_mime = _stripped(source.get("media_type")) if source else ""
    direct_mime = block.get("mimeType")
    direct_mime = _stripped(direct_mime) if isinstance(direct_mime, str) else _stripped(block.get("media_type"))
    return ToolImage(data=data, mime_type=source_mime or direct_mime or _DEFAULT_IMAGE_MIME)


def stable_stringify(value: Any) -> str:
    """Serialize ``value`` with recursively sorted keys so equal payloads compare equal."""

    if value is None:
        return ""
    if isinstance(value, Mapping):
        keys = sorted(value, key=str)
        return "{" + ",".join(f"{json.dumps(str(key))}:{stable_stringify(value[key])}" for key in keys) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(item) for item in value) + "]"
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return json.dumps(str(value))


def _stripped(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""
