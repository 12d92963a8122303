"""Async HTTP client for the OpenAI-compatible chat-completions gateway.

Two call shapes are used per chat request:

* ``complete`` — a buffered, non-streamed call with tools enabled.  The
  reply is either text or a list of tool calls, which is only known once
  the whole body has arrived.
* ``open_stream`` — a streamed call whose Server-Sent Events body is read
  frame by frame through ``UpstreamStream.frames``.

Both retry timeouts, connection failures and 5xx answers with exponential
backoff, never retry 429/402, and are bounded by a wall-clock budget after
which ``ServiceUnavailableError`` is raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from clinic_agent.config import (
    COMPLETION_API_KEY,
    COMPLETION_BASE_URL,
    COMPLETION_MAX_TOKENS,
    COMPLETION_TIMEOUT_SECONDS,
    MODEL_NAME,
    STREAM_READ_TIMEOUT_SECONDS,
)
from clinic_agent.services.completion_errors import (
    CompletionServiceError,
    QuotaExceededError,
    RateLimitedError,
    ServiceUnavailableError,
    StreamTruncatedError,
)
from clinic_agent.services.metrics import metrics
from clinic_agent.services.sse import FrameDecoder

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
CONNECT_TIMEOUT_SECONDS = 10.0

COMPLETIONS_PATH = "/chat/completions"


# ── Reply types ──────────────────────────────────────────────────────


@dataclass
class ToolCall:
    """One tool invocation requested by the model.

    ``arguments`` is the raw JSON text the model produced; decoding it is
    the dispatcher's job so a malformed call can be answered in-dialogue.
    """

    id: str
    name: str
    arguments: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class AssistantReply:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_message(self) -> dict[str, Any]:
        """The assistant turn to append to the history before tool results."""
        message: dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        return message


def parse_reply(data: dict[str, Any]) -> AssistantReply:
    """Extract text and tool calls from a chat-completions response body."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise CompletionServiceError(f"Malformed completion response: {exc!r}") from exc

    calls: list[ToolCall] = []
    for index, raw in enumerate(message.get("tool_calls") or []):
        function = raw.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        calls.append(
            ToolCall(
                id=raw.get("id") or f"call_{index}",
                name=function.get("name", ""),
                arguments=arguments,
            )
        )
    return AssistantReply(content=message.get("content") or "", tool_calls=calls)


def _status_error(status_code: int, body: str) -> CompletionServiceError:
    message = f"Completion gateway returned {status_code}: {body[:500]}"
    if status_code == 429:
        return RateLimitedError(message, upstream_status=status_code)
    if status_code == 402:
        return QuotaExceededError(message, upstream_status=status_code)
    return CompletionServiceError(message, upstream_status=status_code)


# ── Streaming response wrapper ───────────────────────────────────────


class UpstreamStream:
    """An open streamed completion response.

    ``frames()`` yields decoded frames until ``[DONE]``; the connection is
    released as soon as iteration stops for any reason, including the
    consumer closing the iterator early.
    """

    def __init__(self, response: httpx.Response, *, deadline: float, started: float):
        self._response = response
        self._deadline = deadline
        self._started = started
        self._closed = False

    async def frames(self) -> AsyncIterator[dict[str, Any]]:
        decoder = FrameDecoder()
        loop = asyncio.get_running_loop()
        try:
            async for chunk in self._response.aiter_text():
                for frame in decoder.feed(chunk):
                    yield frame
                if decoder.done:
                    break
                if loop.time() > self._deadline:
                    raise ServiceUnavailableError(
                        "The completion stream exceeded its time budget."
                    )
            decoder.close()
        except httpx.TimeoutException as exc:
            self._record_failure(exc)
            raise ServiceUnavailableError(f"Completion stream timed out: {exc}") from exc
        except httpx.TransportError as exc:
            self._record_failure(exc)
            raise StreamTruncatedError(f"Completion stream broke off: {exc}") from exc
        except CompletionServiceError as exc:
            self._record_failure(exc)
            raise
        else:
            elapsed = (time.perf_counter() - self._started) * 1000
            metrics.record_success("completion", "stream", latency_ms=elapsed)
        finally:
            await self.aclose()

    def _record_failure(self, exc: Exception) -> None:
        elapsed = (time.perf_counter() - self._started) * 1000
        metrics.record_failure(
            "completion", "stream", error_type=type(exc).__name__, latency_ms=elapsed,
        )

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._response.aclose()

    @property
    def closed(self) -> bool:
        return self._closed


# ── Client ───────────────────────────────────────────────────────────


class CompletionClient:
    """Thin wrapper around ``POST /chat/completions`` with retries and budgets."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        *,
        timeout_seconds: float = COMPLETION_TIMEOUT_SECONDS,
        read_timeout_seconds: float = STREAM_READ_TIMEOUT_SECONDS,
        max_tokens: int = COMPLETION_MAX_TOKENS,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._model = model or MODEL_NAME
        self._timeout = timeout_seconds
        self._max_tokens = max_tokens
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url or COMPLETION_BASE_URL,
            headers={
                "Authorization": f"Bearer {api_key or COMPLETION_API_KEY}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(read_timeout_seconds, connect=CONNECT_TIMEOUT_SECONDS),
        )

    @property
    def model(self) -> str:
        return self._model

    def _payload(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "max_tokens": self._max_tokens,
            "stream": stream,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def _send(self, payload: dict[str, Any], *, stream: bool) -> httpx.Response:
        """POST *payload* with exponential-backoff retries.

        Returns a successful response (still open when *stream* is true).
        """
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            request = self._client.build_request("POST", COMPLETIONS_PATH, json=payload)
            try:
                response = await self._client.send(request, stream=stream)
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "Completion attempt %d/%d failed (%s).",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            else:
                if response.status_code < 400:
                    return response
                try:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                finally:
                    await response.aclose()
                error = _status_error(response.status_code, body)
                if response.status_code < 500:
                    raise error  # 4xx errors are not retried
                last_error = error
                logger.warning(
                    "Completion gateway error %d on attempt %d/%d.",
                    response.status_code, attempt, MAX_RETRIES,
                )

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise ServiceUnavailableError(
            f"Completion request failed after {MAX_RETRIES} attempts: {last_error}"
        )

    async def _send_before_deadline(self, payload: dict[str, Any], *, stream: bool) -> httpx.Response:
        """Run ``_send`` under the wall-clock budget.

        A response that lands after the budget is spent is closed, not
        leaked, and ``TimeoutError`` is raised.
        """
        task = asyncio.ensure_future(self._send(payload, stream=stream))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._timeout)
        finally:
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()

        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is None:
            logger.warning("Completion response arrived after the deadline; closing it")
            await task.result().aclose()
        raise TimeoutError

    async def _send_within_budget(self, payload: dict[str, Any], *, stream: bool, operation: str):
        t0 = time.perf_counter()
        try:
            response = await self._send_before_deadline(payload, stream=stream)
        except TimeoutError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure("completion", operation, "Timeout", latency_ms=elapsed)
            raise ServiceUnavailableError(
                f"Completion {operation} exceeded {self._timeout:.0f}s"
            ) from exc
        except CompletionServiceError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "completion", operation, type(exc).__name__, latency_ms=elapsed,
            )
            raise
        return response, t0

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AssistantReply:
        """Buffered completion with tool use enabled."""
        response, t0 = await self._send_within_budget(
            self._payload(messages, tools=tools), stream=False, operation="dispatch",
        )
        try:
            data = response.json()
        except ValueError as exc:
            metrics.record_failure("completion", "dispatch", "MalformedResponse")
            raise CompletionServiceError("Completion gateway returned invalid JSON") from exc

        reply = parse_reply(data)
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("completion", "dispatch", latency_ms=elapsed)
        logger.debug(
            "Dispatch completion in %.0fms: %d tool call(s), %d chars",
            elapsed, len(reply.tool_calls), len(reply.content),
        )
        return reply

    async def open_stream(self, messages: list[dict[str, Any]]) -> UpstreamStream:
        """Start a streamed completion and return it once headers are in."""
        started_loop = asyncio.get_running_loop().time()
        response, t0 = await self._send_within_budget(
            self._payload(messages, stream=True), stream=True, operation="stream",
        )
        return UpstreamStream(response, deadline=started_loop + self._timeout, started=t0)

    async def aclose(self) -> None:
        await self._client.aclose()
