"""Server-Sent Events encoding and incremental decoding.

Every frame is a single ``data: <json>\\n\\n`` event. The decoder is
fed raw network reads of any size: a read may end mid-line, mid-frame
or even inside a multi-byte UTF-8 sequence.
"""
from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def encode_event(payload: dict[str, Any]) -> bytes:
    """Serialize one payload as a complete SSE frame.

    json.dumps escapes newlines, so the payload always fits one
    ``data:`` line.
    """
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


class SSEDecoder:
    """Line-buffered SSE parser yielding decoded JSON payloads.

    Consecutive ``data:`` lines are joined with ``\\n`` into one
    payload; a blank line ends the event. Comments and the ``event``,
    ``id`` and ``retry`` fields are ignored. Frames whose payload is
    not a JSON object are logged and skipped.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._data: list[str] = []
        self.skipped = 0

    def feed(self, data: bytes | str) -> list[dict[str, Any]]:
        text = self._utf8.decode(data) if isinstance(data, bytes) else data
        self._buffer += text
        events: list[dict[str, Any]] = []
        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            if line.endswith("\r"):
                line = line[:-1]
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[dict[str, Any]]:
        """Emit whatever is buffered once the stream has ended."""
        self._buffer += self._utf8.decode(b"", final=True)
        events: list[dict[str, Any]] = []
        if self._buffer:
            line, self._buffer = self._buffer.rstrip("\r"), ""
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> dict[str, Any] | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> dict[str, Any] | None:
        if not self._data:
            return None
        payload = "\n".join(self._data)
        self._data = []
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            self.skipped += 1
            logger.warning("Skipping malformed SSE frame (%s): %.200s", exc, payload)
            return None
        if not isinstance(event, dict):
            self.skipped += 1
            logger.warning("Skipping non-object SSE frame: %.200s", payload)
            return None
        return event


async def iter_sse_events(
    chunks: AsyncIterable[bytes],
) -> AsyncIterator[dict[str, Any]]:
    """Decode an async byte stream (e.g. ``response.content.iter_any()``)."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.flush():
        yield event
