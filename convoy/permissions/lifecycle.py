"""Permission request lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    RECEIVED ──┬──> AUTO_RESOLVED ──────────────┐
               │                                ├──> CLEANED_UP
               └──> AWAITING_HUMAN ──┬──> RESOLVED ┘
                                     │
                                     └──> EXPIRED ──> CLEANED_UP
"""
from __future__ import annotations

from enum import Enum


class RequestState(Enum):
    RECEIVED = "received"
    AUTO_RESOLVED = "auto_resolved"
    AWAITING_HUMAN = "awaiting_human"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    CLEANED_UP = "cleaned_up"


VALID_TRANSITIONS: dict[RequestState, set[RequestState]] = {
    RequestState.RECEIVED: {
        RequestState.AUTO_RESOLVED,
        RequestState.AWAITING_HUMAN,
        # Handling failed before a decision path was chosen
        RequestState.RESOLVED,
    },
    RequestState.AUTO_RESOLVED: {
        RequestState.CLEANED_UP,
    },
    RequestState.AWAITING_HUMAN: {
        RequestState.RESOLVED,
        RequestState.EXPIRED,
    },
    RequestState.RESOLVED: {
        RequestState.CLEANED_UP,
    },
    RequestState.EXPIRED: {
        RequestState.CLEANED_UP,
    },
    RequestState.CLEANED_UP: set(),
}

TERMINAL_STATES = frozenset({RequestState.RESOLVED, RequestState.EXPIRED})


def validate_transition(current: RequestState, target: RequestState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
