"""Tests for the per-question StreamReducer."""
from __future__ import annotations

import asyncio

import pytest

from btca.adapters.chunks import ChunkAdded, ChunkUpdated, TextChunk, ToolChunk
from btca.adapters.events import (
    FilePartUpdated,
    MessageUpdated,
    ReasoningPartUpdated,
    SessionError,
    SessionIdle,
    TextPartUpdated,
    ToolPartUpdated,
)
from btca.adapters.stream_reducer import (
    CANCELED,
    COMPLETED,
    FAILED,
    STREAMING,
    StreamReducer,
)
from btca.engine.errors import AgentError

from conftest import ScriptedSession


def _text(part_id, text, message_id="msg_a"):
    return TextPartUpdated(part_id=part_id, message_id=message_id, text=text)


def _tool(call_id, status, tool="read"):
    return ToolPartUpdated(part_id=f"prt_{call_id}", message_id="msg_a",
                           call_id=call_id, tool_name=tool, status=status)


def test_text_growth_emits_add_then_delta():
    reducer = StreamReducer()

    first = reducer.apply(_text("p1", "Hel"))
    second = reducer.apply(_text("p1", "Hello"))

    assert first == [ChunkAdded(chunk=TextChunk(id="p1", text="Hel"))]
    assert second == [ChunkUpdated(id="p1", delta="lo")]
    assert reducer.answer() == "Hello"


def test_repeated_text_emits_nothing():
    reducer = StreamReducer()
    reducer.apply(_text("p1", "Hello"))
    assert reducer.apply(_text("p1", "Hello")) == []


def test_delta_only_updates_accumulate():
    reducer = StreamReducer()
    reducer.apply(TextPartUpdated(part_id="p1", message_id="m", delta="Hel"))
    updates = reducer.apply(TextPartUpdated(part_id="p1", message_id="m", delta="lo"))
    assert updates == [ChunkUpdated(id="p1", delta="lo")]
    assert reducer.answer() == "Hello"


def test_non_prefix_rewrite_is_flagged_reset():
    reducer = StreamReducer()
    reducer.apply(_text("p1", "Hello wrld"))
    updates = reducer.apply(_text("p1", "Hello world"))
    assert updates == [ChunkUpdated(id="p1", delta="Hello world", reset=True)]
    assert reducer.answer() == "Hello world"


def test_answer_joins_text_parts_in_first_seen_order():
    reducer = StreamReducer()
    reducer.apply(_text("p1", "First. "))
    reducer.apply(ReasoningPartUpdated(part_id="r1", message_id="msg_a", text="thinking"))
    reducer.apply(_text("p2", "Second."))
    reducer.apply(_text("p1", "First, expanded. "))
    assert reducer.answer() == "First, expanded. Second."


def test_tool_states_only_move_forward():
    reducer = StreamReducer()

    updates = []
    for status in ("pending", "running", "pending", "running", "completed", "running"):
        updates.extend(reducer.apply(_tool("call_1", status)))

    assert updates == [
        ChunkAdded(chunk=ToolChunk(id="call_1", tool_name="read", state="pending")),
        ChunkUpdated(id="call_1", state="running"),
        ChunkUpdated(id="call_1", state="completed"),
    ]
    assert reducer.tool_calls() == [ToolChunk(id="call_1", tool_name="read", state="completed")]


def test_tool_error_status_counts_as_completed():
    reducer = StreamReducer()
    reducer.apply(_tool("call_1", "running"))
    assert reducer.apply(_tool("call_1", "error")) == [ChunkUpdated(id="call_1", state="completed")]
    assert reducer.apply(_tool("call_2", "weird")) == []


def test_file_event_always_adds():
    reducer = StreamReducer()
    updates = reducer.apply(FilePartUpdated(part_id="f1", message_id="m", path="svelte/README.md"))
    assert len(updates) == 1
    assert updates[0].chunk.path == "svelte/README.md"


def test_user_message_parts_are_ignored():
    reducer = StreamReducer()
    reducer.apply(MessageUpdated(message_id="msg_user", role="user"))
    assert reducer.apply(_text("p0", "What is a rune?", message_id="msg_user")) == []
    assert reducer.apply(_text("p1", "A rune is", message_id="msg_asst")) != []
    assert reducer.answer() == "A rune is"


def test_idle_completes_and_freezes():
    reducer = StreamReducer()
    reducer.apply(_text("p1", "done"))
    reducer.apply(SessionIdle())
    assert reducer.status == COMPLETED
    assert reducer.apply(_text("p1", "done and more")) == []
    assert reducer.answer() == "done"


def test_session_error_raises_agent_error():
    reducer = StreamReducer()
    with pytest.raises(AgentError) as exc_info:
        reducer.apply(SessionError(error_name="ProviderAuthError", message="no key"))
    assert reducer.status == FAILED
    assert exc_info.value.error_name == "ProviderAuthError"
    assert "no key" in str(exc_info.value)


@pytest.mark.asyncio
async def test_run_collects_updates_until_idle():
    session = ScriptedSession([
        _text("p1", "Hel"),
        _tool("c1", "running"),
        _text("p1", "Hello"),
        _tool("c1", "completed"),
        SessionIdle(),
        _text("p1", "Hello ignored"),
    ])
    reducer = StreamReducer()

    updates = [u async for u in reducer.run(session)]

    assert len(updates) == 4
    assert reducer.status == COMPLETED
    assert reducer.answer() == "Hello"


@pytest.mark.asyncio
async def test_run_premature_end_is_failure():
    session = ScriptedSession([_text("p1", "partial")])
    reducer = StreamReducer()

    with pytest.raises(AgentError) as exc_info:
        async for _ in reducer.run(session):
            pass

    assert "ended before" in str(exc_info.value)
    assert reducer.status == FAILED
    assert reducer.answer() == "partial"


@pytest.mark.asyncio
async def test_run_cancel_stops_promptly_and_closes_session():
    session = ScriptedSession([_text("p1", "Partial answer")], hang=True)
    reducer = StreamReducer()
    cancel = asyncio.Event()
    seen = []

    async def consume():
        async for update in reducer.run(session, cancel):
            seen.append(update)
            cancel.set()

    await asyncio.wait_for(consume(), timeout=1.0)

    assert reducer.status == CANCELED
    assert reducer.answer() == "Partial answer"
    assert len(seen) == 1
    assert session.close_calls == 1


@pytest.mark.asyncio
async def test_run_cancel_while_waiting_for_events():
    session = ScriptedSession([], hang=True)
    reducer = StreamReducer()
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, cancel.set)

    updates = [u async for u in reducer.run(session, cancel)]

    assert updates == []
    assert reducer.status == CANCELED
    assert session.closed


def test_cancel_after_completion_keeps_status():
    reducer = StreamReducer()
    reducer.apply(SessionIdle())
    reducer.cancel()
    assert reducer.status == COMPLETED
    assert StreamReducer().status == STREAMING
