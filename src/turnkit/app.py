"""Bootstrap helpers and the ``turnkit`` console entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient
from .ai.external.cli_runner import ExternalCliRunner
from .ai.external.router import RoutedTurnRunner
from .ai.orchestration.events import EventSink, MessageSaver
from .ai.orchestration.orchestrator import TurnOrchestrator, TurnOutcome
from .ai.orchestration.permissions import PermissionRequester
from .ai.orchestration.types import ServerEvent, Session
from .ai.tools.executor import ExternalToolProvider, MountRegistry, ToolExecutor
from .services.settings import Settings, load_settings, redact_secret
from .utils import logging as logging_utils

__all__ = ["TurnRuntime", "ConsoleSink", "configure_logging", "build_runtime", "main"]

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(settings: Settings | None = None, *, debug: bool = False, force: bool = False) -> Path:
    """Configure logging from settings; ``debug`` forces DEBUG level and console output."""

    enabled = debug or bool(settings is not None and settings.debug_logging)
    level = logging.DEBUG if enabled else logging.INFO
    log_dir = settings.log_dir if settings is not None else None
    log_path = logging_utils.setup_logging(level, log_dir=log_dir, console=enabled, force=force)
    _LOGGER.debug("Logging configured (level=%s, path=%s)", logging.getLevelName(level), log_path)
    return log_path


# -----------------------------------------------------------------------------
# Runtime wiring
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class TurnRuntime:
    """Backends wired to one display sink."""

    client: AIClient
    orchestrator: TurnOrchestrator
    cli_runner: ExternalCliRunner
    router: RoutedTurnRunner

    async def run(self, session: Session, prompt: str) -> TurnOutcome:
        return await self.router.run(session, prompt)

    async def aclose(self) -> None:
        await self.client.aclose()


def build_runtime(
    settings: Settings,
    *,
    sink: EventSink | None = None,
    save_message: MessageSaver | None = None,
    permission_requester: PermissionRequester | None = None,
    executor: ToolExecutor | None = None,
    external_tools: ExternalToolProvider | None = None,
    mounts: MountRegistry | None = None,
    has_cli_login: Callable[[], bool] | None = None,
    client: AIClient | None = None,
) -> TurnRuntime:
    """Construct the client, orchestrator, CLI runner and router for ``settings``."""

    ai_client = client or AIClient(settings.client_settings())
    orchestrator = TurnOrchestrator(
        ai_client,
        settings,
        sink=sink,
        save_message=save_message,
        permission_requester=permission_requester,
        executor=executor,
        external_tools=external_tools,
        mounts=mounts,
    )
    cli_runner = ExternalCliRunner(settings, sink=sink, save_message=save_message)
    router = RoutedTurnRunner(orchestrator, cli_runner, has_cli_login=has_cli_login)
    return TurnRuntime(client=ai_client, orchestrator=orchestrator, cli_runner=cli_runner, router=router)


class ConsoleSink:
    """Writes assistant text to a stream as it arrives; other events go to the log."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout

    def __call__(self, event: ServerEvent) -> None:
        if event.type == "stream.partial":
            delta = event.payload.get("delta", "")
            self._stream.write(delta if delta else "\n")
            self._stream.flush()
            return
        _LOGGER.debug("%s %s", event.type, json.dumps(dict(event.payload), default=str)[:400])


# -----------------------------------------------------------------------------
# Console entry point
# -----------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``turnkit`` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(overrides=overrides or None)
    configure_logging(settings, debug=args.debug, force=True)

    if args.dump_settings:
        _dump_settings(settings, overrides=overrides)
        return 0
    prompt = " ".join(args.prompt).strip()
    if not prompt:
        parser.error("a prompt is required unless --dump-settings is given")

    session = Session(
        id=args.session_id,
        cwd=args.cwd or os.getcwd(),
        allowed_tools=tuple(args.allowed_tools) if args.allowed_tools else None,
    )
    outcome = asyncio.run(_run_once(settings, session, prompt))
    _LOGGER.info("Turn finished with status %s via %s", outcome.status, outcome.protocol)
    return 0 if outcome.status == "completed" else 1


async def _run_once(settings: Settings, session: Session, prompt: str) -> TurnOutcome:
    runtime = build_runtime(settings, sink=ConsoleSink())
    try:
        return await runtime.run(session, prompt)
    finally:
        await runtime.aclose()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="turnkit",
        description="Run one assistant turn against the configured backend.",
    )
    parser.add_argument("prompt", nargs="*", help="Prompt text for the turn.")
    parser.add_argument("--cwd", metavar="PATH", help="Working directory for tools (defaults to the current one).")
    parser.add_argument("--session-id", default="cli", help="Session id used for routing and cancellation.")
    parser.add_argument(
        "--allow",
        dest="allowed_tools",
        metavar="TOOL",
        action="append",
        default=[],
        help="Allow a static tool for this turn (repeatable; aliases accepted).",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a setting before the turn (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level to the console and the log file.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings (with secrets redacted) and exit.",
    )
    return parser


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    known = {item.name: item for item in fields(Settings)}
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in known:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, known[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    if raw_value.lower() in {"none", "null"} and type(None) in get_args(annotation):
        return None
    target = _resolve_annotation(annotation)
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target in (list, dict):
        try:
            value = json.loads(raw_value or ("[]" if target is list else "{}"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{target.__name__} overrides must be valid JSON") from exc
        if not isinstance(value, target):
            raise ValueError(f"Expected a JSON {target.__name__}")
        return value
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in (list, dict):
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if len(args) == 1:
        return _resolve_annotation(args[0])
    # Literal choices are plain strings
    return str


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(settings: Settings, *, overrides: Mapping[str, Any], stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    output = {
        "settings": payload,
        "meta": {
            "cli_overrides": sorted(overrides),
            "log_path": str(logging_utils.get_log_path() or ""),
        },
    }
    json.dump(output, destination, indent=2, default=str)
    destination.write("\n")
