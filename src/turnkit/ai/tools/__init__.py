"""Tool contracts: error taxonomy, capability protocols and result formatting."""

from .content import FormattedResult, ToolImage, format_tool_result, parse_image_block, stable_stringify
from .errors import (
    ArgumentParseError,
    ErrorCode,
    ExecutorUnavailableError,
    PermissionDeniedError,
    QuestionTimeoutError,
    ToolError,
    ToolExecutionError,
    ToolInputError,
    UnsupportedToolError,
)
from .executor import ExternalToolProvider, MountRegistry, ToolExecutor

__all__ = [
    "ErrorCode",
    "ToolError",
    "ArgumentParseError",
    "UnsupportedToolError",
    "ToolInputError",
    "PermissionDeniedError",
    "ExecutorUnavailableError",
    "ToolExecutionError",
    "QuestionTimeoutError",
    "ToolExecutor",
    "ExternalToolProvider",
    "MountRegistry",
    "FormattedResult",
    "ToolImage",
    "format_tool_result",
    "parse_image_block",
    "stable_stringify",
]
