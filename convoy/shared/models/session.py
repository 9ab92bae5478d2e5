"""Session state: one working directory bound to a resumable agent conversation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import re
import uuid
from typing import Any

from convoy.shared.models.permission import PermissionRule


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_SESSION_NAME = "Session"


def default_session_name(working_directory: str | None) -> str:
    """Name a session after the last segment of its working directory."""
    if not working_directory:
        return DEFAULT_SESSION_NAME
    parts = [p for p in re.split(r"[/\\]", working_directory) if p]
    return parts[-1] if parts else DEFAULT_SESSION_NAME


@dataclass
class SessionConfig:
    """Options supplied when creating a session or sending a message."""
    model: str | None = None
    working_directory: str | None = None
    mcp_config_path: str | None = None
    yolo_mode: bool | None = None
    thinking_mode: bool | None = None
    plan_mode: bool | None = None


@dataclass
class Session:
    """Holds the user-facing state of one supervised conversation."""

    working_directory: str
    name: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    model: str = "default"
    # Conversation id reported by the agent; passed back with --resume
    agent_session_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    last_active: datetime = field(default_factory=_utcnow)
    is_active: bool = False
    is_processing: bool = False
    is_open: bool = True
    yolo_mode: bool = False
    thinking_mode: bool = False
    plan_mode: bool = False
    permission_rules: list[PermissionRule] = field(default_factory=list)
    total_cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            self.name = default_session_name(self.working_directory)

    def touch(self) -> None:
        self.last_active = _utcnow()

    def add_usage(self, input_tokens: int, output_tokens: int, cost: float) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.total_cost = round(self.total_cost + cost, 4)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "working_directory": self.working_directory,
            "model": self.model,
            "agent_session_id": self.agent_session_id,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
            "is_active": self.is_active,
            "is_processing": self.is_processing,
            "is_open": self.is_open,
            "yolo_mode": self.yolo_mode,
            "thinking_mode": self.thinking_mode,
            "plan_mode": self.plan_mode,
            "permission_rules": [r.to_dict() for r in self.permission_rules],
            "total_cost": self.total_cost,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        def _ts(key: str) -> datetime:
            raw = data.get(key)
            return datetime.fromisoformat(raw) if raw else _utcnow()

        return cls(
            working_directory=data.get("working_directory", ""),
            name=data.get("name", ""),
            id=data.get("id") or str(uuid.uuid4()),
            model=data.get("model", "default"),
            agent_session_id=data.get("agent_session_id"),
            created_at=_ts("created_at"),
            last_active=_ts("last_active"),
            is_active=bool(data.get("is_active", False)),
            is_processing=bool(data.get("is_processing", False)),
            # Sessions saved before is_open existed are treated as open
            is_open=data.get("is_open") is not False,
            yolo_mode=bool(data.get("yolo_mode", False)),
            thinking_mode=bool(data.get("thinking_mode", False)),
            plan_mode=bool(data.get("plan_mode", False)),
            permission_rules=[
                PermissionRule.from_dict(r)
                for r in data.get("permission_rules", [])
            ],
            total_cost=float(data.get("total_cost", 0.0)),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
        )
