"""Plain data models shared by the engine, the broker and front-ends."""
from __future__ import annotations

from convoy.shared.models.message import Message, MessageType, MessageUpdate
from convoy.shared.models.permission import (
    PermissionRequest,
    PermissionRule,
    PermissionVerdict,
)
from convoy.shared.models.session import Session, SessionConfig

__all__ = [
    "Message",
    "MessageType",
    "MessageUpdate",
    "PermissionRequest",
    "PermissionRule",
    "PermissionVerdict",
    "Session",
    "SessionConfig",
]
