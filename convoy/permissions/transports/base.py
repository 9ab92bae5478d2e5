"""Abstract permission transport interface.

A transport is where permission requests come from and where verdicts
go back to. The broker only talks to this interface, so the drop-box
directory and the HTTP hook endpoint are interchangeable.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from convoy.shared.models.permission import PermissionRequest, PermissionVerdict


class PermissionTransport(ABC):
    """Abstract base for permission request sources."""

    # Seconds to wait for a human before expire() is called; None waits
    # until the broker shuts down.
    request_timeout: float | None = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier ("filesystem", "http")."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Begin accepting requests."""
        ...

    @abstractmethod
    async def receive(self) -> PermissionRequest | None:
        """Wait for the next request. Returns None once the transport is closed."""
        ...

    @abstractmethod
    async def respond(self, request_id: str, verdict: PermissionVerdict) -> None:
        """Deliver the verdict for *request_id* to whoever asked."""
        ...

    async def expire(self, request_id: str) -> None:
        """Give up on *request_id*; the requester sees a denial."""
        await self.respond(
            request_id, PermissionVerdict(allowed=False, reason="Request timed out"),
        )

    @abstractmethod
    async def close(self) -> None:
        """Stop accepting requests and release resources."""
        ...
