"""Permission gating for tool execution."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping

from .session_registry import SessionRegistry
from .tool_catalog import META_TOOLS
from .types import PermissionResult

__all__ = [
    "PermissionRequester",
    "PermissionGate",
    "permission_category",
    "EXTERNAL_CATEGORY",
]

LOGGER = logging.getLogger(__name__)

PermissionRequester = Callable[[str, str, str, Mapping[str, Any]], Awaitable[PermissionResult]]

EXTERNAL_CATEGORY = "external"
_CATEGORIES: Mapping[str, str] = {
    "write_file": "write",
    "edit_file": "edit",
    "execute_command": "bash",
    "read_file": "read",
    "list_directory": "read",
    "WebFetch": "webFetch",
    "WebSearch": "webSearch",
}
_VALID_RESULTS = frozenset({"allow", "deny", "allow_always"})


def permission_category(tool_name: str, *, external: bool = False) -> str:
    """Return the coarse category used to memoize decisions for ``tool_name``."""
    if external:
        return EXTERNAL_CATEGORY
    return _CATEGORIES.get(tool_name, tool_name)


class PermissionGate:
    """Brokers allow/deny decisions and remembers ``allow_always`` grants.

    Args:
        requester: Async collaborator asked for a decision. When absent every
            call is allowed.
        auto_approve: Allow everything without consulting the requester.
        memo_scope: ``"instance"`` shares always-allow grants across sessions;
            ``"session"`` keeps them per session.
        sessions: Registry holding session-scoped grants.
    """

    def __init__(
        self,
        requester: PermissionRequester | None = None,
        *,
        auto_approve: bool = False,
        memo_scope: str = "instance",
        sessions: SessionRegistry | None = None,
    ) -> None:
        if memo_scope not in ("instance", "session"):
            raise ValueError(f"Unknown permission memo scope: {memo_scope}")
        self._requester = requester
        self._auto_approve = auto_approve
        self._memo_scope = memo_scope
        self._sessions = sessions or SessionRegistry()
        self._always_allow: set[str] = set()

    @property
    def memo_scope(self) -> str:
        return self._memo_scope

    def always_allowed(self, session_id: str | None = None) -> frozenset[str]:
        return frozenset(self._memo(session_id))

    def clear(self, session_id: str | None = None) -> None:
        self._memo(session_id).clear()

    async def request(
        self,
        session_id: str,
        tool_use_id: str,
        tool_name: str,
        tool_input: Mapping[str, Any],
        *,
        external: bool = False,
    ) -> PermissionResult:
        if tool_name in META_TOOLS and not external:
            return "allow"
        if self._auto_approve or self._requester is None:
            return "allow"

        category = permission_category(tool_name, external=external)
        memo = self._memo(session_id)
        if category in memo:
            return "allow"

        result = await self._requester(session_id, tool_use_id, category, tool_input)
        if result not in _VALID_RESULTS:
            LOGGER.warning("Permission requester returned %r for %s; treating as deny", result, category)
            return "deny"
        if result == "allow_always":
            memo.add(category)
            LOGGER.debug("Category %s is now always allowed (%s scope)", category, self._memo_scope)
        return result

    def _memo(self, session_id: str | None) -> set[str]:
        if self._memo_scope == "instance" or session_id is None:
            return self._always_allow
        return self._sessions.get_or_create(session_id).always_allow
