"""Classification of backend errors into typed protocol-incompatibility reasons.

OpenAI-compatible providers reject unsupported request shapes with free-form
error text. Each known quirk is one rule here, matched against the lower-cased
combination of the exception text and the provider's ``error.message``.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from .errors import TurnCancelledError

__all__ = [
    "IncompatibilityReason",
    "ErrorSignal",
    "ClassifierRule",
    "ErrorClassifier",
    "DEFAULT_RULES",
    "error_signal",
    "describe_error",
]

LOGGER = logging.getLogger(__name__)


class IncompatibilityReason(str, enum.Enum):
    """Why a backend rejected a request shape."""

    INPUT_TEXT = "input_text"
    OUTPUT_TEXT = "output_text"
    REFUSAL = "refusal"
    PREVIOUS_RESPONSE_ID = "previous_response_id"
    STREAM_FORMAT = "stream_format"
    CHAT_REJECTED = "chat_rejected"


@dataclass(slots=True, frozen=True)
class ErrorSignal:
    """The parts of an exception the rules look at."""

    text: str
    status: int | None
    error: BaseException


@dataclass(slots=True, frozen=True)
class ClassifierRule:
    reason: IncompatibilityReason
    matches: Callable[[ErrorSignal], bool]
    label: str = ""


def _contains(*needles: str) -> Callable[[ErrorSignal], bool]:
    return lambda signal: any(needle in signal.text for needle in needles)


def _refusal_unsupported(signal: ErrorSignal) -> bool:
    return "supported values" in signal.text and "refusal" in signal.text


def _stream_format(signal: ErrorSignal) -> bool:
    if isinstance(signal.error, json.JSONDecodeError):
        return True
    if any(needle in signal.text for needle in ("unexpected token", "not valid json", "invalid json", "http/1.1")):
        return True
    if "stream" not in signal.text:
        return False
    return any(needle in signal.text for needle in ("not supported", "unsupported", "invalid", "parse"))


def _chat_rejected(signal: ErrorSignal) -> bool:
    if signal.status == 422:
        return True
    return any(needle in signal.text for needle in ("context", "上下文", "messages", "invalid"))


DEFAULT_RULES: tuple[ClassifierRule, ...] = (
    ClassifierRule(IncompatibilityReason.INPUT_TEXT, _contains("input_text"), "input_text content type rejected"),
    ClassifierRule(IncompatibilityReason.OUTPUT_TEXT, _contains("output_text"), "output_text content type rejected"),
    ClassifierRule(IncompatibilityReason.REFUSAL, _refusal_unsupported, "refusal listed among supported values"),
    ClassifierRule(
        IncompatibilityReason.PREVIOUS_RESPONSE_ID,
        _contains("previous_response_id", "unsupported parameter"),
        "previous_response_id unsupported",
    ),
    ClassifierRule(IncompatibilityReason.STREAM_FORMAT, _stream_format, "streaming payload unparsable"),
    ClassifierRule(IncompatibilityReason.CHAT_REJECTED, _chat_rejected, "chat messages rejected"),
)


class ErrorClassifier:
    """Maps an exception to the set of incompatibility reasons it signals.

    Cancellation is never an incompatibility and always classifies as empty.
    """

    def __init__(self, rules: Iterable[ClassifierRule] | None = None) -> None:
        self._rules: tuple[ClassifierRule, ...] = tuple(rules) if rules is not None else DEFAULT_RULES

    def classify(self, error: BaseException) -> frozenset[IncompatibilityReason]:
        if isinstance(error, (asyncio.CancelledError, TurnCancelledError)):
            return frozenset()
        signal = error_signal(error)
        reasons = frozenset(rule.reason for rule in self._rules if rule.matches(signal))
        if reasons:
            LOGGER.debug("Classified %s as %s", type(error).__name__, sorted(reason.value for reason in reasons))
        return reasons

    def matches(self, error: BaseException, *reasons: IncompatibilityReason) -> bool:
        return bool(self.classify(error) & set(reasons))


def error_signal(error: BaseException) -> ErrorSignal:
    api_message = _api_message(getattr(error, "body", None))
    text = f"{error} {api_message}".lower()
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return ErrorSignal(text=text, status=status if isinstance(status, int) else None, error=error)


def describe_error(error: BaseException) -> str:
    """Return the human-facing message for an exception."""
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) or type(error).__name__


def _api_message(body: Any) -> str:
    if not isinstance(body, Mapping):
        return ""
    nested = body.get("error")
    if isinstance(nested, Mapping) and isinstance(nested.get("message"), str):
        return nested["message"]
    message = body.get("message")
    return message if isinstance(message, str) else ""
