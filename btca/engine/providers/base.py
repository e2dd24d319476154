"""Abstract base for agent backends.

A backend starts an external question-answering agent bound to a
collection directory and hands back a session: a prompt call, a raw
event stream and a close call. Tests swap in a scripted backend that
emits a fixed event sequence.
"""
from __future__ import annotations

import abc
import logging
import shutil
from collections.abc import AsyncIterator

from btca.adapters.events import AgentEvent

logger = logging.getLogger(__name__)


class AgentSession(abc.ABC):
    """One conversation with a running agent."""

    @property
    @abc.abstractmethod
    def session_id(self) -> str:
        """Backend-assigned conversation id."""

    @abc.abstractmethod
    def events(self) -> AsyncIterator[AgentEvent]:
        """Raw events for this session, in arrival order.

        Ends after the backend stops delivering events; the reducer
        decides whether that was premature.
        """

    @abc.abstractmethod
    async def prompt(self, text: str) -> None:
        """Send the question. Returns once the prompt is submitted;
        progress and failures arrive through ``events()``."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Stop the session and its process. Safe to call twice."""


class AgentBackend(abc.ABC):
    """Starts agent sessions.

    Implementations wrap a specific agent runtime:
    - OpencodeBackend: ``opencode serve`` over its HTTP API
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'opencode')."""

    @abc.abstractmethod
    async def start(self, collection_path: str, instructions: str) -> AgentSession:
        """Launch the agent in ``collection_path`` and open a session."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check whether the backend's runtime is installed."""

    def resolve_command(self, command: str) -> str | None:
        """Full path of ``command`` on PATH, or None."""
        resolved = shutil.which(command)
        if resolved is None:
            logger.debug("Command %s not found for backend %s", command, self.name)
        return resolved
