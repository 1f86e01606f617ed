"""Interfaces of the capability collaborators that tools delegate to.

The orchestration core never touches the filesystem, shell or network itself:
filesystem/shell/web tools go to a :class:`ToolExecutor`, externally-registered
tools go to an :class:`ExternalToolProvider`, and virtual workspace paths are
resolved through a :class:`MountRegistry`.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..ai_types import ExternalTool, MountedPath

__all__ = ["ToolExecutor", "ExternalToolProvider", "MountRegistry"]


@runtime_checkable
class ToolExecutor(Protocol):
    """Filesystem, shell and web capabilities scoped to a session's workspace."""

    async def read_file(self, session_id: str, path: str) -> str:
        ...

    async def write_file(self, session_id: str, path: str, content: str) -> None:
        ...

    async def edit_file(self, session_id: str, path: str, old_string: str, new_string: str) -> None:
        ...

    async def list_directory(self, session_id: str, path: str) -> str:
        ...

    async def glob(self, session_id: str, pattern: str, path: str) -> str:
        ...

    async def grep(self, session_id: str, pattern: str, path: str) -> str:
        ...

    async def web_fetch(self, url: str) -> str:
        ...

    async def web_search(self, query: str) -> str:
        ...

    async def execute_command(self, session_id: str, command: str, cwd: str) -> str:
        ...


@runtime_checkable
class ExternalToolProvider(Protocol):
    """Pluggable source of externally-registered tools (e.g. MCP servers)."""

    def list_tools(self) -> Sequence[ExternalTool]:
        ...

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        """Invoke ``name`` (the tool's native name) and return its raw result."""
        ...


@runtime_checkable
class MountRegistry(Protocol):
    """Maps a session's virtual workspace paths onto real directories."""

    def register_session(self, session_id: str, mounts: Sequence[MountedPath]) -> None:
        ...

    def unregister_session(self, session_id: str) -> None:
        ...

    def get_mounts(self, session_id: str) -> Sequence[MountedPath]:
        ...

    def resolve(self, session_id: str, virtual_path: str) -> str | None:
        ...
