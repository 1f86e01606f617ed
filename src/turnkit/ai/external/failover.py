"""Backend routing between the foreign CLI and the in-process turn orchestrator."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

__all__ = [
    "BackendRoute",
    "FailoverCategory",
    "FailoverDecision",
    "classify_cli_failure",
    "decide_failover",
    "default_cli_auth_path",
    "detect_cli_login",
    "select_backend_route",
]

LOGGER = logging.getLogger(__name__)

BackendRoute = Literal["external-cli", "responses"]
FailoverCategory = Literal[
    "cancelled",
    "turn-already-executed",
    "cli-unavailable",
    "cli-auth",
    "cli-resume-state",
    "cli-runtime",
    "non-recoverable",
]

_CANCEL_SIGNALS = ("aborterror", "aborted", "cancelled", "canceled")
_UNAVAILABLE_SIGNALS = ("codex cli is not installed", "not found in path", "spawn codex", "enoent")
_AUTH_EXPLICIT_SIGNALS = ("codex cli authentication failed", "codex auth login")
_CLI_CONTEXT_SIGNALS = ("codex cli", "spawn codex", "backend-api/codex", "chatgpt.com/backend-api/codex")
_AUTH_SIGNALS = ("unauthorized", "forbidden", "401", "403", "invalid token", "auth")
_RESUME_SIGNALS = ("state db missing rollout path", "record_discrepancy")
_RUNTIME_SIGNALS = ("codex cli exited with code", "codex cli produced an output line")
_TOKEN_KEYS = ("access_token", "accessToken", "token")

_REASONS: dict[str, str] = {
    "cli-unavailable": "External CLI unavailable; using the responses backend for this turn.",
    "cli-auth": "External CLI auth/session invalid; using the responses backend for this turn.",
    "cli-resume-state": "External CLI resume state is inconsistent; using the responses backend for this turn.",
    "cli-runtime": "External CLI runtime error; using the responses backend for this turn.",
}


@dataclass(slots=True, frozen=True)
class FailoverDecision:
    should_failover: bool
    category: FailoverCategory
    reason: str


def decide_failover(
    error: BaseException | str | None,
    *,
    has_api_key: bool,
    already_on_fallback: bool = False,
    has_turn_output: bool = False,
    has_side_effects: bool = False,
) -> FailoverDecision:
    """Decide whether a failed CLI turn should be rerun on the responses backend.

    A turn that already produced output or ran tools is never rerun.
    """

    if not has_api_key:
        return FailoverDecision(False, "non-recoverable", "No API key configured for the responses backend.")
    if already_on_fallback:
        return FailoverDecision(False, "non-recoverable", "Already running on the responses backend.")

    message = _error_message(error).lower()
    if any(signal in message for signal in _CANCEL_SIGNALS):
        return FailoverDecision(False, "cancelled", "Session was cancelled by user.")
    if has_turn_output or has_side_effects:
        return FailoverDecision(
            False,
            "turn-already-executed",
            "Turn already produced output or side effects; skip fallback rerun.",
        )

    category = classify_cli_failure(message)
    if category == "non-recoverable":
        return FailoverDecision(False, category, "Error is not a recoverable external CLI failure.")
    LOGGER.debug("CLI failure classified as %s", category)
    return FailoverDecision(True, category, _REASONS[category])


def classify_cli_failure(message: str) -> FailoverCategory:
    message = message.lower()
    if not message:
        return "cli-runtime"
    if any(signal in message for signal in _UNAVAILABLE_SIGNALS):
        return "cli-unavailable"
    if _is_auth_failure(message):
        return "cli-auth"
    if any(signal in message for signal in _RESUME_SIGNALS) or ("resume" in message and "thread" in message):
        return "cli-resume-state"
    if any(signal in message for signal in _RUNTIME_SIGNALS):
        return "cli-runtime"
    return "non-recoverable"


def select_backend_route(*, has_cli_login: bool, api_key: str | None = None) -> BackendRoute:
    """Prefer the CLI when it is logged in; otherwise use the responses backend if a key exists."""
    if has_cli_login:
        return "external-cli"
    if api_key and api_key.strip():
        return "responses"
    return "external-cli"


def _is_auth_failure(message: str) -> bool:
    if any(signal in message for signal in _AUTH_EXPLICIT_SIGNALS):
        return True
    has_context = any(signal in message for signal in _CLI_CONTEXT_SIGNALS)
    return has_context and any(signal in message for signal in _AUTH_SIGNALS)


def _error_message(error: BaseException | str | None) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    return str(error)


# -----------------------------------------------------------------------------
# CLI login detection
# -----------------------------------------------------------------------------


def default_cli_auth_path() -> Path:
    return Path.home() / ".codex" / "auth.json"


def detect_cli_login(auth_path: Path | str | None = None) -> bool:
    """Return ``True`` when the CLI's auth file holds an access token.

    Tokens are accepted at the top level, under ``tokens`` or inside any entry
    of ``profiles``. A missing or unreadable file means no login.
    """

    path = Path(auth_path) if auth_path is not None else default_cli_auth_path()
    try:
        payload = json.loads(path.expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return False
    except (OSError, ValueError) as exc:
        LOGGER.warning("Unable to read CLI auth file %s: %s", path, exc)
        return False
    if not isinstance(payload, dict):
        return False
    candidates: list[Any] = [payload, payload.get("tokens")]
    profiles = payload.get("profiles")
    if isinstance(profiles, dict):
        for profile in profiles.values():
            candidates.append(profile)
            if isinstance(profile, dict):
                candidates.append(profile.get("tokens"))
    return any(_holds_token(candidate) for candidate in candidates)


def _holds_token(candidate: Any) -> bool:
    if not isinstance(candidate, dict):
        return False
    return any(isinstance(candidate.get(key), str) and candidate[key].strip() for key in _TOKEN_KEYS)
