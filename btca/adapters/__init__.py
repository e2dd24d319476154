"""Adapters package - turns raw agent events into chunk updates.

Holds the typed agent events, the chunk model shared by the server and
its clients, and the per-question stream reducer.
"""
from __future__ import annotations

__all__ = [
    "ChunkAccumulator",
    "StreamReducer",
    "parse_opencode_event",
]

from btca.adapters.chunks import ChunkAccumulator
from btca.adapters.events import parse_opencode_event
from btca.adapters.stream_reducer import StreamReducer
