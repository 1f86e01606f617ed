"""Foreign agent CLI backend: event mapping, process runner and failover routing."""

from .cli_runner import ExternalCliError, ExternalCliRunner, build_cli_args, parse_json_line
from .event_mapper import ExternalEventMapper, MappedAction, map_todo_items
from .failover import FailoverDecision, decide_failover, select_backend_route
from .router import RoutedTurnRunner

__all__ = [
    "ExternalCliError",
    "ExternalCliRunner",
    "build_cli_args",
    "parse_json_line",
    "ExternalEventMapper",
    "MappedAction",
    "map_todo_items",
    "FailoverDecision",
    "decide_failover",
    "select_backend_route",
    "RoutedTurnRunner",
]
