"""Runtime settings for the turn orchestrator and its backends."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Literal, Mapping

from ..ai.client import ClientSettings

__all__ = [
    "Settings",
    "ApiMode",
    "MemoScope",
    "API_MODE_CHOICES",
    "MEMO_SCOPE_CHOICES",
    "load_settings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

ApiMode = Literal["responses", "chat"]
MemoScope = Literal["instance", "session"]
API_MODE_CHOICES: tuple[str, ...] = ("responses", "chat")
MEMO_SCOPE_CHOICES: tuple[str, ...] = ("instance", "session")

_ENV_OVERRIDES: Mapping[str, str] = {
    "OPENAI_API_KEY": "api_key",
    "OPENAI_BASE_URL": "base_url",
    "OPENAI_MODEL": "model",
    "OPENAI_ORGANIZATION": "organization",
    "OPENAI_API_MODE": "api_mode",
    "TURNKIT_PERMISSION_SCOPE": "permission_memo_scope",
    "TURNKIT_INSTRUCTIONS": "instructions",
    "TURNKIT_EXTERNAL_CLI": "external_cli_path",
    "TURNKIT_EXTERNAL_CLI_MODEL": "external_cli_model",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "OPENAI_STREAM": "stream",
    "TURNKIT_ALLOW_CHAT_FALLBACK": "allow_chat_fallback",
    "TURNKIT_AUTO_APPROVE": "auto_approve",
    "TURNKIT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TURNKIT_REQUEST_TIMEOUT": "request_timeout",
    "TURNKIT_QUESTION_TIMEOUT": "question_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "TURNKIT_MAX_RETRIES": "max_retries",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(slots=True)
class Settings:
    """Configuration consumed by the orchestrator, the backend client and the CLI runner."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o"
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    api_mode: ApiMode = "responses"
    stream: bool = True
    allow_chat_fallback: bool = True
    auto_approve: bool = False
    permission_memo_scope: MemoScope = "instance"
    question_timeout: float | None = None
    instructions: str | None = None
    typing_chunk_size: int = 30
    typing_delay: float = 0.012
    external_cli_path: str = "codex"
    external_cli_model: str | None = None
    external_cli_overrides: list[str] = field(default_factory=list)
    debug_logging: bool = False
    log_dir: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def client_settings(self) -> ClientSettings:
        """Project the subset of settings required by :class:`~turnkit.ai.client.AIClient`."""

        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            metadata={str(key): str(value) for key, value in self.metadata.items()} or None,
            debug_logging=self.debug_logging,
        )


def load_settings(
    *,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build settings from defaults, then CLI overrides, then environment overrides."""

    env = os.environ if environ is None else environ
    settings = Settings()
    if overrides:
        settings = _apply_overrides(settings, overrides, source="CLI")
    settings = _apply_env_overrides(settings, env)
    settings = _normalize_choices(settings)
    LOGGER.debug(
        "Settings resolved: model=%s base_url=%s api_mode=%s stream=%s api_key=%s",
        settings.model,
        settings.base_url,
        settings.api_mode,
        settings.stream,
        redact_secret(settings.api_key),
    )
    return settings


def _apply_overrides(
    settings: Settings,
    overrides: Mapping[str, Any],
    *,
    source: str = "runtime",
) -> Settings:
    allowed = {item.name for item in fields(Settings)}
    filtered: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in allowed or value is None:
            continue
        filtered[key] = value
    metadata_override = filtered.get("metadata")
    if isinstance(metadata_override, Mapping):
        merged_metadata = dict(settings.metadata or {})
        merged_metadata.update(metadata_override)
        filtered["metadata"] = merged_metadata
    if filtered:
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
        settings = replace(settings, **filtered)
    return settings


def _apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None and value.strip():
            overrides[field_name] = value.strip()
    for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        flag = _parse_bool(value)
        if flag is None:
            LOGGER.warning("Environment override %s=%s is not a valid boolean", env_name, value)
            continue
        overrides[field_name] = flag
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning(
                "Environment override %s=%s is not a valid integer",
                env_name,
                value,
            )
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning(
                "Environment override %s=%s is not a valid float", env_name, value
            )
    if overrides:
        settings = _apply_overrides(settings, overrides, source="environment")
    return settings


def _normalize_choices(settings: Settings) -> Settings:
    updates: Dict[str, Any] = {}
    mode = str(settings.api_mode or "").strip().lower()
    if mode not in API_MODE_CHOICES:
        LOGGER.warning("Unknown api_mode %r; using 'responses'", settings.api_mode)
        mode = "responses"
    if mode != settings.api_mode:
        updates["api_mode"] = mode
    scope = str(settings.permission_memo_scope or "").strip().lower()
    if scope not in MEMO_SCOPE_CHOICES:
        LOGGER.warning("Unknown permission_memo_scope %r; using 'instance'", settings.permission_memo_scope)
        scope = "instance"
    if scope != settings.permission_memo_scope:
        updates["permission_memo_scope"] = scope
    if settings.question_timeout is not None and settings.question_timeout <= 0:
        updates["question_timeout"] = None
    if settings.typing_chunk_size < 1:
        updates["typing_chunk_size"] = 1
    return replace(settings, **updates) if updates else settings


def _parse_bool(value: str) -> bool | None:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
