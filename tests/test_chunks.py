"""Tests for chunk wire frames and ChunkAccumulator."""
from __future__ import annotations

from btca.adapters.chunks import (
    ChunkAccumulator,
    ChunkAdded,
    ChunkUpdated,
    FileChunk,
    TextChunk,
    ToolChunk,
    chunk_to_dict,
    dict_to_chunk,
    frame_to_update,
    update_to_frame,
)


def test_tool_chunk_wire_keys():
    data = chunk_to_dict(ToolChunk(id="c1", tool_name="grep", state="running"))
    assert data == {"type": "tool", "id": "c1", "toolName": "grep", "state": "running"}
    assert dict_to_chunk(data) == ToolChunk(id="c1", tool_name="grep", state="running")


def test_update_frame_shapes():
    assert update_to_frame(ChunkAdded(chunk=FileChunk(id="f1", path="a.md"))) == {
        "type": "chunk.add",
        "chunk": {"type": "file", "id": "f1", "path": "a.md"},
    }
    assert update_to_frame(ChunkUpdated(id="p1", delta="lo")) == {
        "type": "chunk.update", "id": "p1", "delta": "lo", "reset": False,
    }
    frame = update_to_frame(ChunkUpdated(id="c1", state="completed"))
    assert "delta" not in frame
    assert frame_to_update(frame) == ChunkUpdated(id="c1", state="completed")
    assert frame_to_update({"type": "meta"}) is None


def test_accumulator_rebuilds_answer_and_honors_reset():
    acc = ChunkAccumulator()
    frames = [
        {"type": "meta", "model": {"provider": "opencode", "model": "m"}},
        {"type": "chunk.add", "chunk": {"type": "text", "id": "p1", "text": "Hel"}},
        {"type": "chunk.update", "id": "p1", "delta": "lo", "reset": False},
        {"type": "chunk.add", "chunk": {"type": "tool", "id": "c1", "toolName": "read", "state": "pending"}},
        {"type": "chunk.update", "id": "c1", "state": "completed", "reset": False},
        {"type": "chunk.update", "id": "p1", "delta": "Hello there", "reset": True},
    ]
    for frame in frames:
        acc.apply_frame(frame)

    assert acc.meta["model"]["provider"] == "opencode"
    assert acc.answer == "Hello there"
    assert acc.chunks == [
        TextChunk(id="p1", text="Hello there"),
        ToolChunk(id="c1", tool_name="read", state="completed"),
    ]
    assert acc.status == "streaming"

    acc.apply_frame({"type": "done", "answer": "Hello there", "status": "completed"})
    assert acc.status == "completed"


def test_accumulator_error_frame():
    acc = ChunkAccumulator()
    acc.apply_frame({"type": "error", "message": "boom", "tag": "AgentError"})
    assert acc.status == "failed"
    assert acc.error["tag"] == "AgentError"


def test_accumulator_ignores_unknown_ids():
    acc = ChunkAccumulator()
    acc.apply(ChunkUpdated(id="nope", delta="x"))
    assert acc.chunks == []
