"""Normalized output chunks and their wire form.

The stream reducer emits ChunkAdded / ChunkUpdated values; the server
serializes them as ``chunk.add`` / ``chunk.update`` frames and clients
rebuild the chunk list with ChunkAccumulator.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Union

logger = logging.getLogger(__name__)

TOOL_STATES = ("pending", "running", "completed")


@dataclass
class Chunk:
    """Base chunk. ``id`` is stable across updates to the same unit."""
    chunk_type: str = ""
    id: str = ""


@dataclass
class TextChunk(Chunk):
    chunk_type: str = "text"
    text: str = ""


@dataclass
class ReasoningChunk(Chunk):
    chunk_type: str = "reasoning"
    text: str = ""


@dataclass
class ToolChunk(Chunk):
    chunk_type: str = "tool"
    tool_name: str = ""
    state: str = "pending"


@dataclass
class FileChunk(Chunk):
    chunk_type: str = "file"
    path: str = ""


_CHUNK_MAP: dict[str, type[Chunk]] = {
    "text": TextChunk,
    "reasoning": ReasoningChunk,
    "tool": ToolChunk,
    "file": FileChunk,
}

# Wire key -> dataclass field, where they differ.
_WIRE_FIELDS = {"type": "chunk_type", "toolName": "tool_name"}
_FIELD_WIRE = {v: k for k, v in _WIRE_FIELDS.items()}


@dataclass
class ChunkAdded:
    chunk: Chunk = field(default_factory=Chunk)


@dataclass
class ChunkUpdated:
    """Change to an existing chunk.

    ``delta`` is appended to the chunk text, unless ``reset`` is set,
    in which case it replaces the text entirely.
    """
    id: str = ""
    delta: str | None = None
    state: str | None = None
    reset: bool = False


ChunkUpdate = Union[ChunkAdded, ChunkUpdated]


def chunk_to_dict(chunk: Chunk) -> dict[str, Any]:
    d: dict[str, Any] = {}
    for f in chunk.__dataclass_fields__:
        d[_FIELD_WIRE.get(f, f)] = getattr(chunk, f)
    return d


def dict_to_chunk(data: dict[str, Any]) -> Chunk:
    cls = _CHUNK_MAP.get(data.get("type", ""), Chunk)
    valid_fields = set(cls.__dataclass_fields__)
    kwargs = {}
    for key, value in data.items():
        name = _WIRE_FIELDS.get(key, key)
        if name in valid_fields:
            kwargs[name] = value
    return cls(**kwargs)


def update_to_frame(update: ChunkUpdate) -> dict[str, Any]:
    """SSE payload for one reducer update."""
    if isinstance(update, ChunkAdded):
        return {"type": "chunk.add", "chunk": chunk_to_dict(update.chunk)}
    frame: dict[str, Any] = {"type": "chunk.update", "id": update.id, "reset": update.reset}
    if update.delta is not None:
        frame["delta"] = update.delta
    if update.state is not None:
        frame["state"] = update.state
    return frame


def frame_to_update(frame: dict[str, Any]) -> ChunkUpdate | None:
    frame_type = frame.get("type")
    if frame_type == "chunk.add" and isinstance(frame.get("chunk"), dict):
        return ChunkAdded(chunk=dict_to_chunk(frame["chunk"]))
    if frame_type == "chunk.update":
        return ChunkUpdated(
            id=str(frame.get("id", "")),
            delta=frame.get("delta"),
            state=frame.get("state"),
            reset=bool(frame.get("reset", False)),
        )
    return None


class ChunkAccumulator:
    """Rebuilds chunks, the answer and the final status from frames.

    Tracks the cumulative text per chunk id, so updates flagged
    ``reset`` replace the text instead of being appended twice.
    """

    def __init__(self) -> None:
        self._chunks: list[Chunk] = []
        self._by_id: dict[str, Chunk] = {}
        self.meta: dict[str, Any] | None = None
        self.status: str = "streaming"
        self.final_answer: str | None = None
        self.error: dict[str, Any] | None = None

    @property
    def chunks(self) -> list[Chunk]:
        return [replace(c) for c in self._chunks]

    @property
    def answer(self) -> str:
        if self.final_answer is not None:
            return self.final_answer
        return "".join(c.text for c in self._chunks if isinstance(c, TextChunk))

    def apply_frame(self, frame: dict[str, Any]) -> ChunkUpdate | None:
        frame_type = frame.get("type")
        if frame_type == "meta":
            self.meta = frame
            return None
        if frame_type == "done":
            self.status = str(frame.get("status") or "completed")
            if "answer" in frame:
                self.final_answer = str(frame["answer"])
            return None
        if frame_type == "error":
            self.status = "failed"
            self.error = frame
            return None
        update = frame_to_update(frame)
        if update is None:
            logger.debug("Ignoring unknown frame type %r", frame_type)
            return None
        self.apply(update)
        return update

    def apply(self, update: ChunkUpdate) -> None:
        if isinstance(update, ChunkAdded):
            chunk = replace(update.chunk)
            self._chunks.append(chunk)
            self._by_id[chunk.id] = chunk
            return
        chunk = self._by_id.get(update.id)
        if chunk is None:
            logger.warning("Update for unknown chunk %s ignored", update.id)
            return
        if update.delta is not None and isinstance(chunk, (TextChunk, ReasoningChunk)):
            chunk.text = update.delta if update.reset else chunk.text + update.delta
        if update.state is not None and isinstance(chunk, ToolChunk):
            chunk.state = update.state
