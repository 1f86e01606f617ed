"""Extraction of fenced ``artifact`` declarations from assistant text."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from .types import TraceStep, new_id, now_ms

__all__ = ["ArtifactInfo", "extract_artifacts", "build_artifact_trace_steps", "ARTIFACT_BLOCK_PATTERN"]

LOGGER = logging.getLogger(__name__)

ARTIFACT_BLOCK_PATTERN = re.compile(r"```artifact\s*([\s\S]*?)```")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass(slots=True, frozen=True)
class ArtifactInfo:
    path: str
    name: str | None = None
    type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"path": self.path}
        if self.name is not None:
            data["name"] = self.name
        if self.type is not None:
            data["type"] = self.type
        return data

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ArtifactInfo | None:
        path = data.get("path")
        if not isinstance(path, str) or not path:
            return None
        name = data.get("name")
        kind = data.get("type")
        return cls(
            path=path,
            name=name if isinstance(name, str) else None,
            type=kind if isinstance(kind, str) else None,
        )


def extract_artifacts(text: str) -> tuple[str, list[ArtifactInfo]]:
    """Strip artifact blocks from ``text`` and return ``(clean_text, artifacts)``."""

    if not text:
        return "", []
    artifacts: list[ArtifactInfo] = []
    for match in ARTIFACT_BLOCK_PATTERN.finditer(text):
        body = match.group(1).strip()
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            LOGGER.debug("Ignoring unparsable artifact block")
            continue
        candidates = parsed if isinstance(parsed, list) else [parsed]
        for candidate in candidates:
            if isinstance(candidate, Mapping):
                artifact = ArtifactInfo.from_mapping(candidate)
                if artifact is not None:
                    artifacts.append(artifact)
    clean = ARTIFACT_BLOCK_PATTERN.sub("", text)
    clean = _EXCESS_NEWLINES.sub("\n\n", clean).rstrip()
    return clean, artifacts


def build_artifact_trace_steps(
    artifacts: Sequence[ArtifactInfo],
    *,
    now: Callable[[], int] = now_ms,
    next_id: Callable[[], str] = new_id,
) -> list[TraceStep]:
    return [
        TraceStep(
            id=next_id(),
            kind="tool_result",
            status="completed",
            title="artifact",
            tool_name="artifact",
            tool_output=json.dumps(artifact.to_dict(), ensure_ascii=False, separators=(",", ":")),
            timestamp=now(),
        )
        for artifact in artifacts
    ]
