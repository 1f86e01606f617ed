"""Request-input builders and response-text extractors.

History messages are reduced to ``(role, text)`` pairs and then rendered into
one of the input shapes OpenAI-compatible backends accept:

* typed content blocks (``input_text`` / ``output_text``),
* role + plain string (chat messages),
* role + ``output_text`` blocks,
* a flat ``ROLE: text`` prompt for completion-style endpoints.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from .tool_call_parser import item_field
from .types import Message

__all__ = [
    "ARTIFACT_INSTRUCTION",
    "ARTIFACT_FENCE",
    "conversation_pairs",
    "build_typed_input",
    "build_chat_messages",
    "build_output_messages",
    "build_prompt",
    "extract_output_text",
    "extract_chat_text",
    "extract_completion_text",
    "chunk_text",
]

ARTIFACT_FENCE = "```artifact"
ARTIFACT_INSTRUCTION = (
    "\n\nIf you produce a final deliverable file, declare it once using this exact block "
    "so the app can show it as the final artifact:\n\n"
    "```artifact\n"
    '{"path":"/workspace/path/to/file.ext","name":"optional display name","type":"optional type"}\n'
    "```\n"
)


def _role_of(message: Message) -> str:
    if message.role in ("system", "assistant"):
        return message.role
    return "user"


def conversation_pairs(
    history: Sequence[Message],
    prompt: str,
    *,
    artifact_instruction: bool = True,
) -> list[tuple[str, str]]:
    """Reduce ``history`` plus ``prompt`` to ordered ``(role, text)`` pairs.

    Messages without text are skipped. ``prompt`` is appended unless it repeats
    the last user text. The artifact instruction is added to the last user
    entry unless that entry already declares an artifact block.
    """

    pairs: list[tuple[str, str]] = []
    for message in history:
        text = message.text()
        if text:
            pairs.append((_role_of(message), text))

    prompt = prompt.strip() if prompt else ""
    if prompt:
        last_user = next((text for role, text in reversed(pairs) if role == "user"), None)
        if last_user != prompt:
            pairs.append(("user", prompt))

    if artifact_instruction:
        for index in range(len(pairs) - 1, -1, -1):
            role, text = pairs[index]
            if role != "user":
                continue
            if ARTIFACT_FENCE not in text:
                pairs[index] = (role, text + ARTIFACT_INSTRUCTION)
            break
    return pairs


def build_typed_input(history: Sequence[Message], prompt: str) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for role, text in conversation_pairs(history, prompt):
        block_type = "output_text" if role == "assistant" else "input_text"
        items.append({"role": role, "content": [{"type": block_type, "text": text}]})
    return items


def build_chat_messages(history: Sequence[Message], prompt: str) -> list[dict[str, Any]]:
    return [{"role": role, "content": text} for role, text in conversation_pairs(history, prompt)]


def build_output_messages(history: Sequence[Message], prompt: str) -> list[dict[str, Any]]:
    return [
        {"role": role, "content": [{"type": "output_text", "text": text}]}
        for role, text in conversation_pairs(history, prompt)
    ]


def build_prompt(history: Sequence[Message], prompt: str) -> str:
    pairs = conversation_pairs(history, prompt, artifact_instruction=False)
    return "\n".join(f"{role.upper()}: {text}" for role, text in pairs)


# ---------------------------------------------------------------------------
# Response text
# ---------------------------------------------------------------------------


def extract_output_text(response: Any) -> str:
    """Return the assistant text of a responses-API result, trimmed."""

    shortcut = item_field(response, "output_text")
    if isinstance(shortcut, str) and shortcut.strip():
        return shortcut.strip()

    parts: list[str] = []
    for item in item_field(response, "output") or ():
        item_type = item_field(item, "type")
        if item_type == "output_text":
            text = item_field(item, "text")
            if isinstance(text, str):
                parts.append(text)
        elif item_type == "message":
            for block in item_field(item, "content") or ():
                if item_field(block, "type") == "output_text":
                    text = item_field(block, "text")
                    if isinstance(text, str):
                        parts.append(text)
    return "".join(parts).strip()


def extract_chat_text(completion: Any) -> str:
    choices = item_field(completion, "choices") or ()
    if not choices:
        return ""
    message = item_field(choices[0], "message")
    content = item_field(message, "content") if message is not None else None
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, Iterable):
        texts = [item_field(block, "text") for block in content]
        return "".join(text for text in texts if isinstance(text, str)).strip()
    return ""


def extract_completion_text(completion: Any) -> str:
    choices = item_field(completion, "choices") or ()
    if not choices:
        return ""
    text = item_field(choices[0], "text")
    return text.strip() if isinstance(text, str) else ""


def chunk_text(text: str, size: int = 30) -> list[str]:
    """Split ``text`` into ``size``-character pieces for simulated typing."""
    if size <= 0:
        raise ValueError("size must be positive")
    return [text[index : index + size] for index in range(0, len(text), size)]
