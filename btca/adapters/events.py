"""Raw event types emitted by an agent session.

Each event corresponds to one opencode event-stream payload, parsed
into a typed dataclass so the stream reducer can dispatch on class
instead of on loosely-typed dicts.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class AgentEvent:
    """Base event from an agent session."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class MessageUpdated(AgentEvent):
    """A message in the session was created or changed."""
    event_type: str = "message_updated"
    message_id: str = ""
    role: str = ""


@dataclass
class TextPartUpdated(AgentEvent):
    """Assistant text. ``text`` is the full current value when known;
    ``delta`` is the producer-reported increment, if any."""
    event_type: str = "text_part_updated"
    part_id: str = ""
    message_id: str = ""
    text: str | None = None
    delta: str | None = None


@dataclass
class ReasoningPartUpdated(AgentEvent):
    event_type: str = "reasoning_part_updated"
    part_id: str = ""
    message_id: str = ""
    text: str | None = None
    delta: str | None = None


@dataclass
class ToolPartUpdated(AgentEvent):
    event_type: str = "tool_part_updated"
    part_id: str = ""
    message_id: str = ""
    call_id: str = ""
    tool_name: str = ""
    status: str = "pending"
    title: str | None = None


@dataclass
class FilePartUpdated(AgentEvent):
    event_type: str = "file_part_updated"
    part_id: str = ""
    message_id: str = ""
    path: str = ""
    mime: str | None = None


@dataclass
class SessionIdle(AgentEvent):
    """The session finished processing the prompt."""
    event_type: str = "session_idle"


@dataclass
class SessionError(AgentEvent):
    """The session failed; ``error_name`` is the provider-reported name."""
    event_type: str = "session_error"
    error_name: str = "UnknownError"
    message: str = ""


_TEXT_PART_MAP: dict[str, type[TextPartUpdated] | type[ReasoningPartUpdated]] = {
    "text": TextPartUpdated,
    "reasoning": ReasoningPartUpdated,
}


def event_session_id(raw: dict[str, Any]) -> str | None:
    """Find the session id in an opencode event, wherever it is nested."""
    props = raw.get("properties")
    if not isinstance(props, dict):
        return None
    if props.get("sessionID"):
        return str(props["sessionID"])
    for key in ("part", "info"):
        nested = props.get(key)
        if isinstance(nested, dict) and nested.get("sessionID"):
            return str(nested["sessionID"])
    return None


def _parse_part(part: dict[str, Any], delta: Any, session_id: str | None) -> AgentEvent | None:
    part_type = part.get("type")
    part_id = str(part.get("id") or "")
    message_id = str(part.get("messageID") or "")
    if not part_id:
        return None

    text_cls = _TEXT_PART_MAP.get(part_type)
    if text_cls is not None:
        text = part.get("text")
        return text_cls(
            session_id=session_id,
            part_id=part_id,
            message_id=message_id,
            text=None if text is None else str(text),
            delta=None if delta is None else str(delta),
        )

    if part_type == "tool":
        state = part.get("state") or {}
        return ToolPartUpdated(
            session_id=session_id,
            part_id=part_id,
            message_id=message_id,
            call_id=str(part.get("callID") or part_id),
            tool_name=str(part.get("tool") or ""),
            status=str(state.get("status") or "pending"),
            title=state.get("title"),
        )

    if part_type == "file":
        source = part.get("source") or {}
        path = source.get("path") or part.get("filename") or part.get("url") or ""
        return FilePartUpdated(
            session_id=session_id,
            part_id=part_id,
            message_id=message_id,
            path=str(path),
            mime=part.get("mime"),
        )

    # step-start, step-finish, snapshot, patch, ... carry nothing to relay
    return None


def parse_opencode_event(raw: dict[str, Any]) -> AgentEvent | None:
    """Convert one opencode event payload to a typed event.

    Returns None for event kinds that carry nothing the reducer uses.
    """
    event_type = raw.get("type")
    props = raw.get("properties")
    if not isinstance(props, dict):
        props = {}
    session_id = event_session_id(raw)

    if event_type == "message.part.updated":
        part = props.get("part")
        if not isinstance(part, dict):
            return None
        return _parse_part(part, props.get("delta"), session_id)

    if event_type == "message.updated":
        info = props.get("info")
        if not isinstance(info, dict):
            return None
        return MessageUpdated(
            session_id=session_id,
            message_id=str(info.get("id") or ""),
            role=str(info.get("role") or ""),
        )

    if event_type == "session.idle":
        return SessionIdle(session_id=session_id)

    if event_type == "session.error":
        error = props.get("error") or {}
        data = error.get("data") if isinstance(error, dict) else None
        message = ""
        if isinstance(data, dict):
            message = str(data.get("message") or "")
        name = error.get("name") if isinstance(error, dict) else None
        return SessionError(
            session_id=session_id,
            error_name=str(name or "UnknownError"),
            message=message or str(name or "Unknown session error"),
        )

    return None
