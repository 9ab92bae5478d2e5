from __future__ import annotations

import asyncio

from convoy.adapters.event_bus import EventBus
from convoy.adapters.events import (
    MessageUpdated,
    PermissionRequested,
    SessionStopped,
    StatsUpdated,
    SupervisorEvent,
    dict_to_event,
    event_to_dict,
)


def test_event_to_dict_uses_event_key() -> None:
    d = event_to_dict(StatsUpdated(session_id="s1", input_tokens=5, cost=0.1, total_cost=0.3))
    assert d["event"] == "stats"
    assert "event_type" not in d
    assert "model" not in d  # None fields are omitted
    assert d["total_cost"] == 0.3


def test_dict_to_event_parses_known_and_unknown() -> None:
    event = dict_to_event({
        "event": "message-update", "session_id": "s1",
        "message_id": "m1", "content": "hi", "extra": "ignored",
    })
    assert isinstance(event, MessageUpdated)
    assert (event.message_id, event.content) == ("m1", "hi")

    odd = dict_to_event({"event": "brand-new", "session_id": "s1"})
    assert type(odd) is SupervisorEvent
    assert odd.event_type == "brand-new"


def test_round_trip_permission_request() -> None:
    event = PermissionRequested(
        session_id="s1", request_id="r1", tool_name="Bash",
        target="ls", description="Execute command: ls", tool_input={"command": "ls"},
    )
    assert dict_to_event(event_to_dict(event)) == event


def test_bus_delivers_callback_events_in_order() -> None:
    bus = EventBus()
    callback = bus.make_callback()

    async def _run() -> list[SupervisorEvent]:
        await callback({"event": "stopped", "session_id": "s1"})
        await bus.emit(MessageUpdated(session_id="s1", message_id="m", content="x"))
        received = []
        async for event in bus.consume():
            received.append(event)
            if len(received) == 2:
                bus.close()
        return received

    first, second = asyncio.run(_run())
    assert isinstance(first, SessionStopped)
    assert isinstance(second, MessageUpdated)


def test_closed_bus_ignores_events_until_reset() -> None:
    bus = EventBus()

    async def _run() -> None:
        bus.close()
        await bus.emit(SessionStopped(session_id="s1"))
        assert bus.qsize() == 0
        bus.reset()
        assert not bus.closed
        await bus.emit(SessionStopped(session_id="s1"))
        assert bus.qsize() == 1

    asyncio.run(_run())


def test_full_bus_drops_after_timeout() -> None:
    bus = EventBus(maxsize=1, put_timeout=0.05)

    async def _run() -> None:
        await bus.emit(SessionStopped(session_id="a"))
        await bus.emit(SessionStopped(session_id="b"))
        assert bus.qsize() == 1

    asyncio.run(_run())
