"""Tests for clarifying-question correlation."""

from __future__ import annotations

import asyncio

import pytest

from turnkit.ai.orchestration.cancellation import CancelToken
from turnkit.ai.orchestration.errors import TurnCancelledError
from turnkit.ai.orchestration.events import TurnEventEmitter
from turnkit.ai.orchestration.questions import PendingQuestionBroker
from turnkit.ai.orchestration.types import QuestionItem, QuestionOption
from turnkit.ai.tools.errors import QuestionTimeoutError

from tests.helpers import RecordingSink

QUESTIONS = (QuestionItem(question="Which file?", header="File", options=(QuestionOption("a.py"),)),)


def _broker(sink: RecordingSink, **kwargs) -> PendingQuestionBroker:
    return PendingQuestionBroker(TurnEventEmitter(sink), **kwargs)


@pytest.mark.asyncio
async def test_answer_resolves_pending_question(sink: RecordingSink) -> None:
    broker = _broker(sink)

    task = asyncio.ensure_future(broker.ask("s-1", "tu-1", QUESTIONS))
    await asyncio.sleep(0)

    (request,) = sink.of_type("question.request")
    assert request["sessionId"] == "s-1"
    assert request["toolUseId"] == "tu-1"
    assert request["questions"][0]["options"] == [{"label": "a.py"}]
    assert broker.pending_ids("s-1") == (request["questionId"],)

    assert broker.resolve(request["questionId"], "a.py") is True
    assert await task == "a.py"
    assert broker.pending_ids() == ()


def test_unknown_question_is_ignored(sink: RecordingSink) -> None:
    assert _broker(sink).resolve("missing", "answer") is False


@pytest.mark.asyncio
async def test_timeout_raises_question_timeout(sink: RecordingSink) -> None:
    broker = _broker(sink, timeout=0.01)

    with pytest.raises(QuestionTimeoutError):
        await broker.ask("s-1", "tu-1", QUESTIONS)
    assert broker.pending_ids() == ()


@pytest.mark.asyncio
async def test_token_cancellation_ends_the_wait(sink: RecordingSink) -> None:
    broker = _broker(sink)
    token = CancelToken("s-1")

    task = asyncio.ensure_future(broker.ask("s-1", "tu-1", QUESTIONS, token=token))
    await asyncio.sleep(0)
    token.cancel()

    with pytest.raises(TurnCancelledError):
        await task
    assert broker.pending_ids() == ()


@pytest.mark.asyncio
async def test_cancel_session_only_touches_that_session(sink: RecordingSink) -> None:
    broker = _broker(sink)
    first = asyncio.ensure_future(broker.ask("s-1", "tu-1", QUESTIONS))
    second = asyncio.ensure_future(broker.ask("s-2", "tu-2", QUESTIONS))
    await asyncio.sleep(0)

    assert broker.cancel_session("s-1") == 1

    with pytest.raises(TurnCancelledError):
        await first
    assert not second.done()

    (other_id,) = broker.pending_ids("s-2")
    broker.resolve(other_id, "ok")
    assert await second == "ok"
