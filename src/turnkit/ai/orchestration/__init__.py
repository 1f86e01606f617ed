"""Turn orchestration: tool catalog, dispatch, fallbacks and the turn loop."""

# Core types
from .types import (
    ExternalTool,
    Message,
    MountedPath,
    ParsedToolCall,
    PermissionResult,
    QuestionItem,
    QuestionOption,
    ServerEvent,
    Session,
    TextContent,
    TodoItem,
    ToolConfig,
    ToolOutput,
    ToolResultContent,
    ToolSpec,
    ToolUseContent,
    TraceStep,
)

# Errors and compatibility classification
from .errors import (
    ProtocolIncompatibilityError,
    RoundLimitExceededError,
    TurnCancelledError,
    TurnError,
)
from .compat import ErrorClassifier, IncompatibilityReason
from .strategies import AttemptStrategy, AttemptResult, run_strategies

# Collaborators owned by the orchestrator
from .cancellation import CancelToken
from .events import EventSink, TurnEventEmitter
from .permissions import PermissionGate, PermissionRequester
from .questions import PendingQuestionBroker
from .session_registry import SessionRegistry, SessionState

# Tool handling
from .tool_catalog import STATIC_TOOL_SPECS, build_tool_config
from .tool_call_parser import parse_tool_calls
from .tool_dispatcher import DispatchContext, ToolCallDispatcher, resolve_command_cwd

# Turn loop
from .artifacts import ArtifactInfo, extract_artifacts
from .orchestrator import MAX_TOOL_ROUNDS, TurnOrchestrator, TurnOutcome

__all__ = [
    "ExternalTool",
    "Message",
    "MountedPath",
    "ParsedToolCall",
    "PermissionResult",
    "QuestionItem",
    "QuestionOption",
    "ServerEvent",
    "Session",
    "TextContent",
    "TodoItem",
    "ToolConfig",
    "ToolOutput",
    "ToolResultContent",
    "ToolSpec",
    "ToolUseContent",
    "TraceStep",
    "ProtocolIncompatibilityError",
    "RoundLimitExceededError",
    "TurnCancelledError",
    "TurnError",
    "ErrorClassifier",
    "IncompatibilityReason",
    "AttemptStrategy",
    "AttemptResult",
    "run_strategies",
    "CancelToken",
    "EventSink",
    "TurnEventEmitter",
    "PermissionGate",
    "PermissionRequester",
    "PendingQuestionBroker",
    "SessionRegistry",
    "SessionState",
    "STATIC_TOOL_SPECS",
    "build_tool_config",
    "parse_tool_calls",
    "DispatchContext",
    "ToolCallDispatcher",
    "resolve_command_cwd",
    "ArtifactInfo",
    "extract_artifacts",
    "MAX_TOOL_ROUNDS",
    "TurnOrchestrator",
    "TurnOutcome",
]
