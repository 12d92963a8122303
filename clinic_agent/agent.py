"""Streaming dialogue orchestrator for the booking assistant.

Architecture:
  Each chat request is handled independently; the caller resubmits the full
  conversation every time and the server keeps no dialogue state.

    1. **dispatch**  — the history plus the tool schemas go to the completion
                       gateway in one buffered call, because whether the
                       reply is text or tool calls is only known at the end.
    2. **branch A**  — no tool calls: the same history is re-requested in
                       streaming mode and relayed to the caller.
    3. **branch B**  — tool calls: the dispatcher runs each of them (in a
                       worker thread, the store is synchronous), the
                       assistant's tool-call turn and one ``tool`` turn per
                       result are appended, and the extended history is
                       streamed back to the caller.

  Upstream failures before streaming starts raise from ``prepare`` so the
  HTTP layer can answer with the right status.  Failures after streaming
  has started are reported as a final in-band error frame.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from clinic_agent.db.session import SessionFactory
from clinic_agent.prompts import get_system_prompt
from clinic_agent.services.booking import BookingService
from clinic_agent.services.completion_client import CompletionClient, UpstreamStream
from clinic_agent.services.completion_errors import CompletionServiceError
from clinic_agent.services.sse import DONE_FRAME, delta_text, encode_frame
from clinic_agent.tools.booking import ToolDispatcher, ToolResult, build_booking_tools

logger = logging.getLogger(__name__)

# Roles a client may submit; the server owns the system prompt and the
# tool turns.
CLIENT_ROLES = frozenset({"user", "assistant"})


def build_history(messages: list[dict[str, Any]], system_prompt: str) -> list[dict[str, Any]]:
    """Prefix the server's system prompt and keep only client-owned turns."""
    history: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for message in messages:
        role = message.get("role")
        if role not in CLIENT_ROLES:
            logger.debug("Dropping client-supplied %r turn", role)
            continue
        history.append({"role": role, "content": message.get("content") or ""})
    return history


class RelayStream:
    """Relays one upstream completion stream to the caller as SSE text.

    Iterate it to receive ``data: …\\n\\n`` frames ending with
    ``data: [DONE]``, or with an ``{"error": …}`` frame if the upstream
    fails part-way.  Stopping iteration early closes the upstream connection.
    """

    def __init__(self, upstream: UpstreamStream, *, tool_results: list[ToolResult] | None = None):
        self._upstream = upstream
        self.tool_results = tool_results or []
        self.error: Exception | None = None
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        """Assistant text relayed so far."""
        return "".join(self._parts)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._events()

    async def _events(self) -> AsyncIterator[str]:
        frames = self._upstream.frames()
        try:
            async for frame in frames:
                self._parts.append(delta_text(frame))
                yield encode_frame(frame)
            yield DONE_FRAME
        except CompletionServiceError as exc:
            self.error = exc
            logger.error("Upstream stream failed: %s", exc)
            yield encode_frame({"error": exc.public_message, "type": type(exc).__name__})
        except Exception as exc:
            self.error = exc
            logger.exception("Unexpected error while relaying the stream")
            yield encode_frame({"error": "An internal error occurred.", "type": "InternalError"})
        finally:
            await frames.aclose()
            await self.aclose()

    async def aclose(self) -> None:
        await self._upstream.aclose()


class BookingAgent:
    """Runs the dispatch → tools → stream exchange for one request at a time."""

    def __init__(
        self,
        completion_client: CompletionClient,
        dispatcher: ToolDispatcher,
        *,
        system_prompt: Callable[[], str] | None = None,
    ):
        self._client = completion_client
        self._dispatcher = dispatcher
        self._system_prompt = system_prompt or get_system_prompt

    @property
    def model(self) -> str:
        return self._client.model

    async def aclose(self) -> None:
        await self._client.aclose()

    async def prepare(self, messages: list[dict[str, Any]]) -> RelayStream:
        """Run the dispatch phase (and any tools) and open the streamed answer.

        Raises:
            CompletionServiceError: the gateway failed before streaming began.
        """
        history = build_history(messages, self._system_prompt())
        reply = await self._client.complete(history, self._dispatcher.schemas)

        if not reply.tool_calls:
            logger.debug("No tool calls; streaming a direct answer")
            return RelayStream(await self._client.open_stream(history))

        logger.info(
            "Model requested %d tool call(s): %s",
            len(reply.tool_calls), ", ".join(c.name for c in reply.tool_calls),
        )
        results = await asyncio.to_thread(self._dispatcher.dispatch_all, reply.tool_calls)

        history.append(reply.to_message())
        history.extend(result.to_message() for result in results)
        upstream = await self._client.open_stream(history)
        return RelayStream(upstream, tool_results=results)

    async def run(self, messages: list[dict[str, Any]]) -> str:
        """Prepare, drain the stream and return the full assistant text."""
        relay = await self.prepare(messages)
        async for _ in relay:
            pass
        if relay.error is not None:
            raise relay.error
        return relay.text


def create_booking_agent(
    session_factory: SessionFactory,
    *,
    notifier=None,
    completion_client: CompletionClient | None = None,
) -> BookingAgent:
    """Wire the booking service, its tools and the completion client together.

    Returns an agent that can be used as:
        relay = await agent.prepare([{"role": "user", "content": "..."}])
        async for frame in relay:
            ...
    """
    booking = BookingService(session_factory, notifier=notifier)
    dispatcher = ToolDispatcher(build_booking_tools(booking))
    agent = BookingAgent(completion_client or CompletionClient(), dispatcher)
    logger.debug(
        "Booking agent ready — model: %s, tools: %s",
        agent.model, ", ".join(dispatcher.names),
    )
    return agent
