"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Sequence

import httpx
from openai import APIConnectionError, AsyncOpenAI, InternalServerError, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "TRANSIENT_ERRORS"]

LOGGER = logging.getLogger(__name__)

# Only failures that can succeed on a verbatim resend are retried here.
# Request rejections (4xx) are left to the protocol fallback chain.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming events.

    ``type`` is ``"output_text.delta"`` for incremental text (``content`` holds the
    delta) or ``"response.completed"`` once the stream is finalized (``parsed``
    holds the full response object).
    """

    type: str
    content: str | None = None
    parsed: Any | None = None


class AIClient:
    """Async client exposing the request variants the orchestrator falls back across."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    # ------------------------------------------------------------------
    # Responses protocol
    # ------------------------------------------------------------------

    async def create_response(self, body: Mapping[str, Any]) -> Any:
        """Issue a buffered responses request and return the full response object."""

        payload = self._build_response_payload(body)
        LOGGER.debug(
            "Creating buffered response via %s (previous_response_id=%s)",
            payload["model"],
            payload.get("previous_response_id"),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async for attempt in self._retrying():
            with attempt:
                return await self._client.responses.create(**payload)
        raise RuntimeError("Retry loop exited without a result")  # pragma: no cover

    async def stream_response(self, body: Mapping[str, Any]) -> AsyncIterator[AIStreamEvent]:
        """Stream a responses request, yielding text deltas then the final response.

        Streams are not retried: deltas may already have reached the display.
        """

        payload = self._build_response_payload(body)
        LOGGER.debug("Starting streamed response via %s", payload["model"])
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async with self._client.responses.stream(**payload) as stream:
            async for event in stream:
                normalized = self._normalize_stream_event(event)
                if normalized is not None:
                    yield normalized
            final = await stream.get_final_response()
        yield AIStreamEvent(type="response.completed", parsed=final)

    # ------------------------------------------------------------------
    # Chat and completions protocols
    # ------------------------------------------------------------------

    async def create_chat_completion(self, messages: Sequence[Mapping[str, Any]]) -> Any:
        """Issue a plain chat completion without tool declarations."""

        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [dict(message) for message in messages],
        }
        LOGGER.debug(
            "Creating chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async for attempt in self._retrying():
            with attempt:
                return await self._client.chat.completions.create(**payload)
        raise RuntimeError("Retry loop exited without a result")  # pragma: no cover

    async def create_completion(self, prompt: str, *, max_tokens: int = 512) -> Any:
        """Issue a raw text completion, the last resort for chat-incompatible backends."""

        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "prompt": prompt,
            "max_tokens": max_tokens,
        }
        LOGGER.debug("Creating text completion via %s", payload["model"])
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async for attempt in self._retrying():
            with attempt:
                return await self._client.completions.create(**payload)
        raise RuntimeError("Retry loop exited without a result")  # pragma: no cover

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
        )

    def _build_response_payload(self, body: Mapping[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self._settings.model}
        payload.update(body)
        if self._settings.metadata and "metadata" not in payload:
            payload["metadata"] = dict(self._settings.metadata)
        return payload

    def _normalize_stream_event(self, event: Any) -> AIStreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type == "response.output_text.delta":
            delta = getattr(event, "delta", None)
            if isinstance(delta, str):
                return AIStreamEvent(type="output_text.delta", content=delta)
        return None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI request payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI request payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result
