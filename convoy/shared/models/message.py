"""Message models produced by the conversation accumulator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())


class MessageType(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"
    TOOL_RESULT = "tool-result"
    THINKING = "thinking"
    ERROR = "error"
    PERMISSION_REQUEST = "permission-request"


@dataclass
class Message:
    """A display unit in a session's conversation.

    Streamed text/thinking messages are mutated in place while their
    content block is open and left untouched once it closes.
    """
    session_id: str
    type: MessageType
    content: str
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)
    # tool_name, raw_input, tool_use_id, is_error, tokens, cost, model
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "content": self.content,
            "metadata": dict(self.metadata),
        }


@dataclass
class MessageUpdate:
    """Replacement content for an already-created message."""
    id: str
    content: str
