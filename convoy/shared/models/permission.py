"""Permission request, verdict and durable rule models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PermissionRequest:
    """The supervised process asking whether it may run a tool."""
    session_id: str
    tool_name: str
    # File path, command or URL depending on the tool
    target: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    # Name of the transport the request arrived on ("filesystem", "http")
    transport: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "tool_name": self.tool_name,
            "target": self.target,
            "tool_input": self.tool_input,
            "created_at": self.created_at.isoformat(),
            "transport": self.transport,
        }


@dataclass
class PermissionVerdict:
    allowed: bool
    # True turns the decision into a durable session rule
    remember: bool = False
    reason: str | None = None


@dataclass
class PermissionRule:
    """Session-scoped always-allow / always-deny policy."""
    tool_name: str
    allowed: bool = True
    # Exact target, or "<working dir>/**" for anything under the session root
    path: str | None = None
    # Command pattern for the command-execution tool, e.g. "npm:*"
    pattern: str | None = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "allowed": self.allowed,
            "path": self.path,
            "pattern": self.pattern,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionRule:
        created = data.get("created_at")
        return cls(
            tool_name=data["tool_name"],
            allowed=bool(data.get("allowed", True)),
            path=data.get("path"),
            pattern=data.get("pattern"),
            created_at=(
                datetime.fromisoformat(created) if created else _utcnow()
            ),
        )
