"""Agent backends that answer questions inside a collection."""
from .base import AgentBackend, AgentSession
from .opencode_provider import OpencodeBackend, OpencodeSession

__all__ = [
    "AgentBackend",
    "AgentSession",
    "OpencodeBackend",
    "OpencodeSession",
]
