"""Permission broker: decides every tool-use request from every transport.

For each request the broker first tries to answer on its own (tools on
the auto-approve list, then the session's saved rules). Anything left
goes to the front-end: a Future is created, ``on_request`` is awaited to
show the prompt, and the Future is resolved through ``resolve()``.
Whatever happens, exactly one verdict goes back over the transport the
request came in on.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from convoy.engine.config import DEFAULT_AUTO_APPROVE_TOOLS
from convoy.engine.errors import BrokerShutdownError, PermissionBrokerError
from convoy.shared.models.permission import PermissionRequest, PermissionVerdict

from .lifecycle import RequestState, validate_transition
from .rules import PermissionRuleStore
from .transports.base import PermissionTransport

logger = logging.getLogger(__name__)

# Signature: async def on_request(request) -> None
PermissionRequestCallback = Callable[[PermissionRequest], Awaitable[None]]


class PermissionBroker:
    """Routes permission requests from transports to verdicts."""

    def __init__(
        self,
        rule_store: PermissionRuleStore,
        on_request: PermissionRequestCallback | None = None,
        auto_approve_tools: Iterable[str] = DEFAULT_AUTO_APPROVE_TOOLS,
    ) -> None:
        self.rule_store = rule_store
        self.on_request = on_request
        self._auto_approve = set(auto_approve_tools)
        self._pending: dict[str, asyncio.Future[PermissionVerdict]] = {}
        self._states: dict[str, RequestState] = {}
        self._pumps: dict[PermissionTransport, asyncio.Task] = {}
        self._handlers: set[asyncio.Task] = set()
        self._closed = False

    # ── Transports ──

    @property
    def transports(self) -> list[PermissionTransport]:
        return list(self._pumps)

    async def attach(self, transport: PermissionTransport, start: bool = True) -> None:
        """Start *transport* (unless already started) and serve its requests."""
        if self._closed:
            raise PermissionBrokerError("Permission broker is shut down")
        if transport in self._pumps:
            return
        if start:
            await transport.start()
        self._pumps[transport] = asyncio.create_task(self._pump(transport))
        logger.debug("Attached %s transport", transport.name)

    async def detach(self, transport: PermissionTransport) -> None:
        """Stop serving *transport* and close it."""
        task = self._pumps.pop(transport, None)
        if task is not None:
            task.cancel()
        await transport.close()
        logger.debug("Detached %s transport", transport.name)

    async def _pump(self, transport: PermissionTransport) -> None:
        while True:
            request = await transport.receive()
            if request is None:
                break
            # Independent requests are decided concurrently
            task = asyncio.create_task(self.process(transport, request))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)

    # ── Decisions ──

    @property
    def pending_requests(self) -> list[str]:
        return list(self._pending)

    def state_of(self, request_id: str) -> RequestState | None:
        return self._states.get(request_id)

    async def process(
        self, transport: PermissionTransport, request: PermissionRequest,
    ) -> PermissionVerdict:
        """Decide *request* and deliver the verdict over *transport*."""
        self._states[request.id] = RequestState.RECEIVED
        expired = False
        try:
            verdict = self._auto_resolve(request)
            if verdict is not None:
                self._transition(request.id, RequestState.AUTO_RESOLVED)
            else:
                self._transition(request.id, RequestState.AWAITING_HUMAN)
                verdict = await self._await_human(transport, request)
                expired = verdict is None
                if verdict is None:
                    verdict = PermissionVerdict(allowed=False, reason="Request timed out")
                else:
                    if verdict.remember:
                        self.rule_store.remember(request, verdict.allowed)
                    self._transition(request.id, RequestState.RESOLVED)
        except BrokerShutdownError:
            logger.info("Permission request %s denied: broker shut down", request.id[:8])
            verdict = PermissionVerdict(allowed=False, reason="Permission broker shut down")
            self._fail_safe(request.id)
        except Exception:
            logger.exception(
                "Permission request %s (%s) failed, denying",
                request.id[:8], request.tool_name,
            )
            verdict = PermissionVerdict(allowed=False, reason="Permission check failed")
            self._fail_safe(request.id)

        # Expired requests were already answered by the transport itself
        if not expired:
            try:
                await transport.respond(request.id, verdict)
            except Exception:
                logger.exception(
                    "Failed to deliver verdict for %s over %s",
                    request.id[:8], transport.name,
                )
        self._transition(request.id, RequestState.CLEANED_UP)
        self._states.pop(request.id, None)
        logger.info(
            "Permission %s tool=%s session=%s allowed=%s reason=%s",
            request.id[:8], request.tool_name, request.session_id[:8],
            verdict.allowed, verdict.reason,
        )
        return verdict

    def resolve(self, request_id: str, verdict: PermissionVerdict) -> bool:
        """Answer a request that is waiting for a human."""
        future = self._pending.get(request_id)
        if future and not future.done():
            future.set_result(verdict)
            logger.info(
                "Permission future set request_id=%s allowed=%s remember=%s",
                request_id[:8], verdict.allowed, verdict.remember,
            )
            return True
        logger.warning(
            "Permission resolve ignored request_id=%s (missing or already done)",
            request_id[:8],
        )
        return False

    def _auto_resolve(self, request: PermissionRequest) -> PermissionVerdict | None:
        if request.tool_name in self._auto_approve:
            return PermissionVerdict(allowed=True, reason="Auto-approved tool")
        rule = self.rule_store.match(
            request.session_id, request.tool_name, request.target, request.tool_input,
        )
        if rule is None:
            return None
        return PermissionVerdict(
            allowed=rule.allowed,
            reason="Saved permission" if rule.allowed else "Denied by saved rule",
        )

    async def _await_human(
        self, transport: PermissionTransport, request: PermissionRequest,
    ) -> PermissionVerdict | None:
        """Return the human's verdict, or None if the transport's bound elapsed."""
        if self._closed:
            raise BrokerShutdownError(request.id)
        future: asyncio.Future[PermissionVerdict] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request.id] = future
        try:
            if self.on_request is not None:
                await self.on_request(request)
            else:
                logger.warning(
                    "No permission handler registered, request %s will wait",
                    request.id[:8],
                )
            try:
                return await asyncio.wait_for(future, timeout=transport.request_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Permission request %s timed out after %ss, denying",
                    request.id[:8], transport.request_timeout,
                )
                self._transition(request.id, RequestState.EXPIRED)
                await transport.expire(request.id)
                return None
        finally:
            self._pending.pop(request.id, None)

    def _transition(self, request_id: str, target: RequestState) -> None:
        current = self._states.get(request_id, RequestState.RECEIVED)
        validate_transition(current, target)
        self._states[request_id] = target

    def _fail_safe(self, request_id: str) -> None:
        if self._states.get(request_id) in (
            RequestState.RECEIVED, RequestState.AWAITING_HUMAN,
        ):
            self._states[request_id] = RequestState.RESOLVED

    # ── Shutdown ──

    async def shutdown(self) -> None:
        """Deny everything still pending and close every transport."""
        self._closed = True
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(BrokerShutdownError(request_id))
                logger.debug("Failed pending permission future: %s", request_id[:8])
        # Give the handlers a turn to deliver their denials
        if self._handlers:
            await asyncio.wait(list(self._handlers), timeout=5.0)
        for transport in list(self._pumps):
            await self.detach(transport)
        logger.info("Permission broker shut down")
