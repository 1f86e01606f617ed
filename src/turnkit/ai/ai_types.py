"""Shared data contracts used by both the tool layer and the orchestration core."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

__all__ = [
    "PermissionResult",
    "TodoStatus",
    "TODO_STATUSES",
    "MountedPath",
    "Session",
    "ExternalTool",
    "TodoItem",
    "QuestionOption",
    "QuestionItem",
    "now_ms",
    "new_id",
]

PermissionResult = Literal["allow", "deny", "allow_always"]
TodoStatus = Literal["pending", "in_progress", "completed", "cancelled"]
TODO_STATUSES: tuple[str, ...] = ("pending", "in_progress", "completed", "cancelled")


def now_ms() -> int:
    """Return the current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True, frozen=True)
class MountedPath:
    """A real directory exposed to the model under a virtual workspace path."""

    real: str
    virtual: str


@dataclass(slots=True, frozen=True)
class Session:
    """The slice of a chat session the orchestration core reads.

    ``allowed_tools`` is ``None`` when the session never configured a tool list,
    which resolves to no static tools at all.
    """

    id: str
    cwd: str | None = None
    mounted_paths: tuple[MountedPath, ...] = ()
    allowed_tools: tuple[str, ...] | None = None


@dataclass(slots=True, frozen=True)
class ExternalTool:
    """A tool supplied at runtime by an external provider."""

    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)
    server_name: str | None = None


@dataclass(slots=True, frozen=True)
class TodoItem:
    content: str
    status: TodoStatus = "pending"
    id: str | None = None
    active_form: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"content": self.content, "status": self.status}
        if self.id is not None:
            data["id"] = self.id
        if self.active_form is not None:
            data["activeForm"] = self.active_form
        return data

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> TodoItem | None:
        """Normalize a loosely-typed todo record; ``None`` when it has no content."""
        content = payload.get("content")
        content = content.strip() if isinstance(content, str) else ""
        if not content:
            return None
        status = payload.get("status")
        if not isinstance(status, str) or status not in TODO_STATUSES:
            status = "pending"
        item_id = payload.get("id")
        active_form = payload.get("activeForm")
        return cls(
            content=content,
            status=status,  # type: ignore[arg-type]
            id=item_id if isinstance(item_id, str) else None,
            active_form=active_form if isinstance(active_form, str) else None,
        )


@dataclass(slots=True, frozen=True)
class QuestionOption:
    label: str
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"label": self.label}
        if self.description is not None:
            data["description"] = self.description
        return data


@dataclass(slots=True, frozen=True)
class QuestionItem:
    """One structured clarifying question shown to the user."""

    question: str
    header: str = ""
    options: tuple[QuestionOption, ...] = ()
    multi_select: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "header": self.header,
            "options": [option.to_dict() for option in self.options],
            "multiSelect": self.multi_select,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> QuestionItem | None:
        question = payload.get("question")
        question = question.strip() if isinstance(question, str) else ""
        if not question:
            return None
        header = payload.get("header")
        multi_select = payload.get("multiSelect")
        raw_options = payload.get("options")
        options: list[QuestionOption] = []
        for raw in raw_options if isinstance(raw_options, list) else []:
            if not isinstance(raw, Mapping):
                continue
            label = raw.get("label")
            label = label.strip() if isinstance(label, str) else ""
            if not label:
                continue
            description = raw.get("description")
            options.append(
                QuestionOption(label=label, description=description if isinstance(description, str) else None)
            )
        return cls(
            question=question,
            header=header if isinstance(header, str) else "",
            options=tuple(options),
            multi_select=multi_select if isinstance(multi_select, bool) else False,
        )
