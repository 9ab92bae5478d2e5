"""Adapters package - Bridge between the supervisor and front-ends.

Typed notification events and the event bus that queues them for a
consumer loop.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "SupervisorEvent",
    "dict_to_event",
    "event_to_dict",
]

from convoy.adapters.event_bus import EventBus
from convoy.adapters.events import SupervisorEvent, dict_to_event, event_to_dict
