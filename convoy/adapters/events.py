"""Notification types emitted by the session supervisor.

Each notification corresponds to a supervisor callback dict, parsed into
a typed dataclass for safe consumption by a front-end.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SupervisorEvent:
    """Base notification from the session supervisor."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class SessionUpdated(SupervisorEvent):
    event_type: str = "session-updated"
    session: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionStateUpdate(SupervisorEvent):
    event_type: str = "session-state-update"
    is_processing: bool = False


@dataclass
class StatsUpdated(SupervisorEvent):
    event_type: str = "stats"
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    total_cost: float = 0.0
    model: str | None = None


@dataclass
class MessageCreated(SupervisorEvent):
    event_type: str = "message"
    message: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageUpdated(SupervisorEvent):
    event_type: str = "message-update"
    message_id: str = ""
    content: str = ""


@dataclass
class SessionStopped(SupervisorEvent):
    event_type: str = "stopped"


@dataclass
class SessionError(SupervisorEvent):
    event_type: str = "error"
    error: str = ""


@dataclass
class PermissionRequested(SupervisorEvent):
    """A tool call is waiting for a human decision.

    Answer with ``SessionSupervisor.resolve_permission(request_id, ...)``.
    """
    event_type: str = "permission-request"
    request_id: str = ""
    tool_name: str = ""
    target: str = ""
    description: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


_EVENT_MAP: dict[str, type[SupervisorEvent]] = {
    "session-updated": SessionUpdated,
    "session-state-update": SessionStateUpdate,
    "stats": StatsUpdated,
    "message": MessageCreated,
    "message-update": MessageUpdated,
    "stopped": SessionStopped,
    "error": SessionError,
    "permission-request": PermissionRequested,
}


def event_to_dict(event: SupervisorEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Callback dicts carry the tag under "event"
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> SupervisorEvent:
    """Convert a supervisor callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, SupervisorEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
