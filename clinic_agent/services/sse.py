"""Incremental decoder for the completion gateway's Server-Sent Events stream.

The gateway sends one JSON object per ``data:`` line and ends with
``data: [DONE]``.  Transport chunks can split a line (or a JSON object)
anywhere, so ``FrameDecoder`` keeps the incomplete tail between calls and
only parses complete lines.  A payload that does not parse yet is pushed
back and retried together with the next data that arrives.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from typing import Any

from clinic_agent.services.completion_errors import StreamTruncatedError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DONE_FRAME = f"data: {DONE_SENTINEL}\n\n"

# A pushed-back payload that grows past this is malformed, not partial
MAX_PENDING_BYTES = 256 * 1024


class FrameDecoder:
    """Partial-frame accumulator: feed raw text chunks, get parsed frames."""

    def __init__(self) -> None:
        self._buffer = ""
        self._pending = ""
        self.done = False

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        """Consume *chunk* and return every frame it completes, in order."""
        if self.done:
            return []
        self._buffer += chunk
        frames: list[dict[str, Any]] = []

        while not self.done:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]

            if line.endswith("\r"):
                line = line[:-1]
            if not line.strip() or line.startswith(":"):
                continue
            if not line.startswith("data:"):
                continue

            # One optional space follows the colon; the rest may be the middle
            # of a JSON string split across lines, so it is kept verbatim.
            payload = line[5:]
            if payload.startswith(" "):
                payload = payload[1:]
            if payload.strip() == DONE_SENTINEL:
                if self._pending:
                    logger.warning(
                        "Dropping %d bytes of unparsed stream data at [DONE]",
                        len(self._pending),
                    )
                    self._pending = ""
                self.done = True
                break

            frame = self._parse(payload)
            if frame is not None:
                frames.append(frame)

        return frames

    def _parse(self, payload: str) -> dict[str, Any] | None:
        candidate = self._pending + payload
        try:
            frame = json.loads(candidate)
        except json.JSONDecodeError:
            if self._pending:
                # The pushed-back fragment may be junk; the new line may
                # still stand on its own.
                try:
                    frame = json.loads(payload)
                except json.JSONDecodeError:
                    pass
                else:
                    logger.warning(
                        "Dropping %d bytes of unparsable stream data", len(self._pending),
                    )
                    self._pending = ""
                    return frame if isinstance(frame, dict) else None

            if len(candidate) > MAX_PENDING_BYTES:
                logger.warning(
                    "Dropping %d bytes of unparsable stream data", len(candidate),
                )
                self._pending = ""
            else:
                self._pending = candidate
            return None

        self._pending = ""
        if not isinstance(frame, dict):
            logger.debug("Ignoring non-object stream frame: %r", frame)
            return None
        return frame

    def close(self) -> None:
        """Signal end of input.  Raises ``StreamTruncatedError`` without ``[DONE]``."""
        if not self.done:
            raise StreamTruncatedError(
                "The completion stream ended before the [DONE] sentinel."
            )


def iter_frames(chunks: Iterable[str]) -> Iterator[dict[str, Any]]:
    """Yield parsed frames from an iterable of raw text chunks."""
    decoder = FrameDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
        if decoder.done:
            return
    decoder.close()


def encode_frame(obj: Any) -> str:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n"


def delta_text(frame: dict[str, Any]) -> str:
    """Return ``choices[0].delta.content`` of a streamed frame, or ``""``."""
    try:
        return frame["choices"][0]["delta"].get("content") or ""
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""
