"""Turns raw agent events into ordered, self-contained chunk updates.

One reducer lives for exactly one question. It tolerates duplicated
and re-sent part updates: for text and reasoning parts only the part
of the text not yet emitted for that id is sent, and tool states only
move forward.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import replace

from btca.adapters.chunks import (
    Chunk,
    ChunkAdded,
    ChunkUpdate,
    ChunkUpdated,
    FileChunk,
    ReasoningChunk,
    TextChunk,
    ToolChunk,
)
from btca.adapters.events import (
    AgentEvent,
    FilePartUpdated,
    MessageUpdated,
    ReasoningPartUpdated,
    SessionError,
    SessionIdle,
    TextPartUpdated,
    ToolPartUpdated,
)
from btca.engine.errors import AgentError

logger = logging.getLogger(__name__)

_TOOL_STATE_RANK = {"pending": 0, "running": 1, "completed": 2}
# opencode reports failed tool calls as "error"; for display that is
# a finished call.
_TOOL_STATUS_MAP = {
    "pending": "pending",
    "running": "running",
    "completed": "completed",
    "error": "completed",
}

STREAMING = "streaming"
COMPLETED = "completed"
CANCELED = "canceled"
FAILED = "failed"


class StreamReducer:
    """Stateful reducer for a single question's event stream."""

    def __init__(self) -> None:
        # Part ids in first-seen order, per logical stream
        self._order: dict[str, list[str]] = {"text": [], "reasoning": []}
        self._texts: dict[str, str] = {}
        self._tool_states: dict[str, str] = {}
        self._chunks: list[Chunk] = []
        self._by_id: dict[str, Chunk] = {}
        self._user_messages: set[str] = set()
        self.status = STREAMING
        self.error: AgentError | None = None

    @property
    def finished(self) -> bool:
        return self.status != STREAMING

    def chunks(self) -> list[Chunk]:
        """Snapshot of every chunk emitted so far."""
        return [replace(c) for c in self._chunks]

    def answer(self) -> str:
        return "".join(self._texts.get(pid, "") for pid in self._order["text"])

    def tool_calls(self) -> list[ToolChunk]:
        return [replace(c) for c in self._chunks if isinstance(c, ToolChunk)]

    def cancel(self) -> None:
        """Stop accepting events; what was emitted so far is kept."""
        if not self.finished:
            self.status = CANCELED

    def apply(self, event: AgentEvent) -> list[ChunkUpdate]:
        """Fold one raw event into the state.

        Returns the updates to emit, in order. Raises AgentError for a
        session error.
        """
        if self.finished:
            return []

        if isinstance(event, MessageUpdated):
            if event.role == "user" and event.message_id:
                self._user_messages.add(event.message_id)
            return []

        if isinstance(event, (TextPartUpdated, ReasoningPartUpdated, ToolPartUpdated, FilePartUpdated)):
            if event.message_id and event.message_id in self._user_messages:
                # The prompt echoed back as a part of the user message.
                return []

        if isinstance(event, TextPartUpdated):
            return self._apply_text("text", TextChunk, event.part_id, event.text, event.delta)
        if isinstance(event, ReasoningPartUpdated):
            return self._apply_text("reasoning", ReasoningChunk, event.part_id, event.text, event.delta)
        if isinstance(event, ToolPartUpdated):
            return self._apply_tool(event)
        if isinstance(event, FilePartUpdated):
            chunk = FileChunk(id=event.part_id, path=event.path)
            self._chunks.append(chunk)
            return [ChunkAdded(chunk=replace(chunk))]
        if isinstance(event, SessionIdle):
            self.status = COMPLETED
            return []
        if isinstance(event, SessionError):
            self.status = FAILED
            self.error = AgentError(
                event.message or event.error_name, error_name=event.error_name,
            )
            raise self.error

        logger.debug("Ignoring agent event %s", event.event_type)
        return []

    def _apply_text(
        self,
        stream: str,
        chunk_cls: type[TextChunk] | type[ReasoningChunk],
        part_id: str,
        text: str | None,
        delta: str | None,
    ) -> list[ChunkUpdate]:
        previous = self._texts.get(part_id)
        if text is not None:
            new_text = text
        elif delta:
            new_text = (previous or "") + delta
        else:
            new_text = previous or ""

        if previous is None:
            self._order[stream].append(part_id)
            self._texts[part_id] = new_text
            chunk = chunk_cls(id=part_id, text=new_text)
            self._chunks.append(chunk)
            self._by_id[part_id] = chunk
            return [ChunkAdded(chunk=replace(chunk))]

        if new_text == previous:
            return []
        if new_text.startswith(previous):
            effective, reset = new_text[len(previous):], False
        else:
            # Not an extension of what was sent: the consumer must
            # replace the text for this id rather than append.
            effective, reset = new_text, True
        self._texts[part_id] = new_text
        chunk = self._by_id[part_id]
        chunk.text = new_text
        return [ChunkUpdated(id=part_id, delta=effective, reset=reset)]

    def _apply_tool(self, event: ToolPartUpdated) -> list[ChunkUpdate]:
        state = _TOOL_STATUS_MAP.get(event.status)
        if state is None:
            logger.debug("Unknown tool status %r for call %s", event.status, event.call_id)
            return []
        call_id = event.call_id
        previous = self._tool_states.get(call_id)
        if previous is None:
            self._tool_states[call_id] = state
            chunk = ToolChunk(id=call_id, tool_name=event.tool_name, state=state)
            self._chunks.append(chunk)
            self._by_id[call_id] = chunk
            return [ChunkAdded(chunk=replace(chunk))]
        if _TOOL_STATE_RANK[state] <= _TOOL_STATE_RANK[previous]:
            return []
        self._tool_states[call_id] = state
        chunk = self._by_id[call_id]
        chunk.state = state
        return [ChunkUpdated(id=call_id, state=state)]

    async def run(
        self,
        session,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ChunkUpdate]:
        """Consume ``session.events()`` until idle, error or cancel.

        Waits only on the next event or the cancel signal. On cancel
        the session is closed and the reducer ends with status
        ``canceled``. A stream that ends before the session goes idle
        is an AgentError.
        """
        events = session.events().__aiter__()
        cancel_wait = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        next_event: asyncio.Future | None = None
        try:
            while not self.finished:
                if cancel is not None and cancel.is_set():
                    break
                next_event = asyncio.ensure_future(events.__anext__())
                waiters = {next_event}
                if cancel_wait is not None:
                    waiters.add(cancel_wait)
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                if cancel is not None and cancel.is_set():
                    break
                try:
                    event = next_event.result()
                except StopAsyncIteration:
                    self.status = FAILED
                    self.error = AgentError(
                        "Agent event stream ended before the session finished"
                    )
                    raise self.error from None
                except AgentError as exc:
                    self.status = FAILED
                    self.error = exc
                    raise
                except Exception as exc:
                    self.status = FAILED
                    self.error = AgentError(f"Agent event stream error: {exc}")
                    raise self.error from exc
                finally:
                    next_event = None
                for update in self.apply(event):
                    yield update

            if cancel is not None and cancel.is_set() and not self.finished:
                await _discard(next_event)
                next_event = None
                self.cancel()
                logger.info("Stream canceled after %d chunks", len(self._chunks))
                await session.close()
        finally:
            await _discard(next_event)
            await _discard(cancel_wait)


async def _discard(future: asyncio.Future | None) -> None:
    if future is not None and not future.done():
        future.cancel()
        await asyncio.gather(future, return_exceptions=True)
