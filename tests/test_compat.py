"""Tests for backend error classification."""

from __future__ import annotations

import asyncio
import json

import pytest

from turnkit.ai.orchestration.compat import (
    ErrorClassifier,
    IncompatibilityReason,
    describe_error,
    error_signal,
)
from turnkit.ai.orchestration.errors import TurnCancelledError

from tests.helpers import BackendRejection

Reason = IncompatibilityReason


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier()


def test_input_text_rejection(classifier: ErrorClassifier) -> None:
    error = BackendRejection("Invalid value: 'input_text'. Supported values are: 'text'.")

    assert Reason.INPUT_TEXT in classifier.classify(error)


def test_output_text_rejection(classifier: ErrorClassifier) -> None:
    error = BackendRejection("content type output_text is not allowed for role assistant")

    assert Reason.OUTPUT_TEXT in classifier.classify(error)


def test_refusal_rejection(classifier: ErrorClassifier) -> None:
    error = BackendRejection("Supported values are: 'output_text' and 'refusal'.")

    reasons = classifier.classify(error)
    assert Reason.REFUSAL in reasons
    assert Reason.OUTPUT_TEXT in reasons


def test_previous_response_id_rejection(classifier: ErrorClassifier) -> None:
    assert classifier.matches(BackendRejection("Unsupported parameter: 'previous_response_id'"), Reason.PREVIOUS_RESPONSE_ID)


def test_stream_format_from_message(classifier: ErrorClassifier) -> None:
    assert classifier.matches(RuntimeError("stream mode is not supported by this model"), Reason.STREAM_FORMAT)
    assert classifier.matches(RuntimeError("Unexpected token < in JSON at position 0"), Reason.STREAM_FORMAT)


def test_stream_format_from_json_error(classifier: ErrorClassifier) -> None:
    error = json.JSONDecodeError("Expecting value", "data: <html>", 0)

    assert Reason.STREAM_FORMAT in classifier.classify(error)


def test_chat_rejected_by_status(classifier: ErrorClassifier) -> None:
    error = BackendRejection("Unprocessable entity", status_code=422)

    assert classifier.classify(error) == frozenset({Reason.CHAT_REJECTED})


def test_chat_rejected_by_message(classifier: ErrorClassifier) -> None:
    assert classifier.matches(BackendRejection("context length exceeded"), Reason.CHAT_REJECTED)
    assert classifier.matches(BackendRejection("上下文过长"), Reason.CHAT_REJECTED)


def test_provider_body_message_is_considered(classifier: ErrorClassifier) -> None:
    error = BackendRejection("Bad request")
    error.body = {"error": {"message": "unknown field input_text"}}

    assert Reason.INPUT_TEXT in classifier.classify(error)


def test_unrelated_errors_classify_empty(classifier: ErrorClassifier) -> None:
    assert classifier.classify(RuntimeError("connection reset by peer")) == frozenset()


def test_cancellation_is_never_an_incompatibility(classifier: ErrorClassifier) -> None:
    assert classifier.classify(TurnCancelledError("s-1")) == frozenset()
    assert classifier.classify(asyncio.CancelledError()) == frozenset()


def test_error_signal_reads_status_and_lowercases() -> None:
    signal = error_signal(BackendRejection("Input_Text Rejected", status_code=400))

    assert signal.status == 400
    assert "input_text rejected" in signal.text


def test_describe_error_prefers_message_attribute() -> None:
    assert describe_error(BackendRejection("provider said no")) == "provider said no"
    assert describe_error(RuntimeError("plain")) == "plain"
    assert describe_error(RuntimeError()) == "RuntimeError"
