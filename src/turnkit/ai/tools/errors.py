"""Standardized error types for tool dispatch.

Every per-tool failure is represented by a :class:`ToolError` subclass with a
machine-readable code. The dispatcher absorbs these into error tool outputs so
the model can adapt; none of them ends a turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool responses."""

    # Call validation
    INVALID_ARGUMENTS = "invalid_arguments"
    INVALID_INPUT = "invalid_input"
    TOOL_NOT_ALLOWED = "tool_not_allowed"
    UNSUPPORTED_TOOL = "unsupported_tool"

    # Gating
    PERMISSION_DENIED = "permission_denied"

    # Execution
    EXECUTOR_UNAVAILABLE = "executor_unavailable"
    EXECUTION_FAILED = "execution_failed"

    # Human input
    QUESTION_TIMEOUT = "question_timeout"
    OPERATION_CANCELLED = "operation_cancelled"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Base exception class for all tool errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description; this is the text fed back
            to the model.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for structured logging."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Call Validation Errors
# -----------------------------------------------------------------------------

@dataclass
class ArgumentParseError(ToolError):
    """Raised when tool-call arguments are malformed JSON or not a JSON object."""

    error_code: str = field(default=ErrorCode.INVALID_ARGUMENTS)
    message: str = field(default="Invalid tool arguments")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Send the arguments as a single JSON object")

    parse_error: str | None = field(default=None)

    @classmethod
    def from_parse_error(cls, parse_error: str) -> "ArgumentParseError":
        return cls(message=f"Invalid tool arguments: {parse_error}", parse_error=parse_error)


@dataclass
class UnsupportedToolError(ToolError):
    """Raised when the requested tool is not in the resolved allow-set."""

    error_code: str = field(default=ErrorCode.TOOL_NOT_ALLOWED)
    message: str = field(default="Tool not allowed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    tool_name: str | None = field(default=None)

    @classmethod
    def not_allowed(cls, tool_name: str) -> "UnsupportedToolError":
        return cls(message=f"Tool not allowed: {tool_name}", tool_name=tool_name)

    @classmethod
    def unknown(cls, tool_name: str) -> "UnsupportedToolError":
        return cls(
            error_code=ErrorCode.UNSUPPORTED_TOOL,
            message=f"Unsupported tool: {tool_name}",
            tool_name=tool_name,
        )


@dataclass
class ToolInputError(ToolError):
    """Raised when a required tool field is missing or has the wrong shape."""

    error_code: str = field(default=ErrorCode.INVALID_INPUT)
    message: str = field(default="Invalid tool input")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    field_name: str | None = field(default=None)

    @classmethod
    def required(cls, field_name: str) -> "ToolInputError":
        return cls(message=f"{field_name} is required", field_name=field_name)


# -----------------------------------------------------------------------------
# Gating / Execution Errors
# -----------------------------------------------------------------------------

@dataclass
class PermissionDeniedError(ToolError):
    """Raised when the permission requester denies a tool call."""

    error_code: str = field(default=ErrorCode.PERMISSION_DENIED)
    message: str = field(default="Permission denied")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")


@dataclass
class ExecutorUnavailableError(ToolError):
    """Raised when no capability collaborator is wired for a delegated tool."""

    error_code: str = field(default=ErrorCode.EXECUTOR_UNAVAILABLE)
    message: str = field(default="Tool executor unavailable")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")


@dataclass
class ToolExecutionError(ToolError):
    """Wraps a failure raised by the capability layer."""

    error_code: str = field(default=ErrorCode.EXECUTION_FAILED)
    message: str = field(default="Tool failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    tool_name: str | None = field(default=None)

    @classmethod
    def from_exception(cls, tool_name: str, exc: BaseException) -> "ToolExecutionError":
        message = exc.message if isinstance(exc, ToolError) else str(exc)
        return cls(
            message=message or "Tool failed",
            tool_name=tool_name,
            details={"exception": type(exc).__name__},
        )


@dataclass
class QuestionTimeoutError(ToolError):
    """Raised when a clarifying question is not answered in time."""

    error_code: str = field(default=ErrorCode.QUESTION_TIMEOUT)
    message: str = field(default="Question timed out waiting for an answer")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Proceed with a reasonable assumption or ask again")

    question_id: str | None = field(default=None)


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
]
