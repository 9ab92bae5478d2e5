"""HTTP hook permission transport.

An aiohttp endpoint the agent's pre-tool-use hook can POST to::

    POST /permission-request
    {"tool_name": "Bash", "tool_input": {...}, "path": "...",
     "context": {"session_id": "<agent conversation id>"}}

    -> {"decision": "approve" | "deny", "reason": "...", "alwaysAllow": false}

The connection is held open until the request is decided. The hook's
``session_id`` is the agent's own conversation id; ``resolve_session``
maps it to one of our sessions.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any, Optional

from aiohttp import web

from convoy.permissions.rules import describe_target
from convoy.shared.models.permission import PermissionRequest, PermissionVerdict

from .base import PermissionTransport

logger = logging.getLogger(__name__)

# agent conversation id (or our own session id) -> our session id
SessionResolver = Callable[[str], Optional[str]]

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _decision_body(allowed: bool, reason: str, always_allow: bool = False) -> dict[str, Any]:
    return {
        "decision": "approve" if allowed else "deny",
        "reason": reason,
        "alwaysAllow": always_allow,
    }


class HttpTransport(PermissionTransport):
    """Accept permission requests over HTTP on localhost."""

    request_timeout = None

    def __init__(
        self,
        resolve_session: SessionResolver,
        host: str = "127.0.0.1",
        port: int = 8765,
    ) -> None:
        self._resolve_session = resolve_session
        self._host = host
        self._port = port
        self._queue: asyncio.Queue[PermissionRequest | None] = asyncio.Queue()
        self._waiters: dict[str, asyncio.Future[PermissionVerdict]] = {}
        self._runner: web.AppRunner | None = None
        self._closed = False
        self._app = web.Application(middlewares=[self._cors_middleware])
        self._setup_routes()

    @property
    def name(self) -> str:
        return "http"

    @property
    def port(self) -> int:
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}/permission-request"

    # ── Middleware ──

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        try:
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=200)
            else:
                response = await handler(request)
        except web.HTTPException as exc:
            # 404/405 from the router are raised, not returned
            exc.headers.update(_CORS_HEADERS)
            logger.debug(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                exc.status, (time.monotonic() - start) * 1000,
            )
            raise
        response.headers.update(_CORS_HEADERS)
        logger.debug(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            response.status, (time.monotonic() - start) * 1000,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_post("/permission-request", self._handle_permission_request)
        r.add_route("OPTIONS", "/permission-request", self._handle_preflight)

    async def _handle_preflight(self, request: web.Request) -> web.Response:
        return web.Response(status=200)

    async def _handle_permission_request(self, request: web.Request) -> web.Response:
        if self._closed:
            return web.json_response(
                _decision_body(False, "Server shutting down"), status=500,
            )
        try:
            body = await request.json()
            if not isinstance(body, dict) or not body.get("tool_name"):
                raise ValueError("missing tool_name")
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Rejecting malformed permission request: %s", exc)
            return web.json_response(
                _decision_body(False, f"Invalid request: {exc}"), status=400,
            )

        context = body.get("context") if isinstance(body.get("context"), dict) else {}
        external_id = str(context.get("session_id") or "")
        session_id = self._resolve_session(external_id) if external_id else None
        if session_id is None:
            logger.warning(
                "Permission request for unknown session %r (tool=%s)",
                external_id[:8], body.get("tool_name"),
            )
            return web.json_response(
                _decision_body(False, "Session not found"), status=500,
            )

        tool_name = str(body["tool_name"])
        tool_input = body.get("tool_input") if isinstance(body.get("tool_input"), dict) else {}
        permission_request = PermissionRequest(
            session_id=session_id,
            tool_name=tool_name,
            target=str(body.get("path") or describe_target(tool_name, tool_input)),
            tool_input=tool_input,
            transport=self.name,
        )
        future: asyncio.Future[PermissionVerdict] = (
            asyncio.get_running_loop().create_future()
        )
        self._waiters[permission_request.id] = future
        await self._queue.put(permission_request)
        try:
            verdict = await future
        finally:
            self._waiters.pop(permission_request.id, None)

        status = 500 if self._closed else 200
        return web.json_response(
            _decision_body(
                verdict.allowed,
                verdict.reason or ("Approved by user" if verdict.allowed else "Denied by user"),
                verdict.remember,
            ),
            status=status,
        )

    # ── Transport interface ──

    async def start(self) -> None:
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._runner = runner

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Permission server started but no listening socket was reported.")
        self._port = actual_port
        logger.info("Permission server listening on %s", self.url)

    async def receive(self) -> PermissionRequest | None:
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    async def respond(self, request_id: str, verdict: PermissionVerdict) -> None:
        future = self._waiters.get(request_id)
        if future is None or future.done():
            logger.debug("No waiting HTTP client for permission request %s", request_id[:8])
            return
        future.set_result(verdict)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for future in list(self._waiters.values()):
            if not future.done():
                future.set_result(
                    PermissionVerdict(allowed=False, reason="Server shutting down"),
                )
        # Let the held handlers pick up their verdicts
        for _ in range(50):
            if not self._waiters:
                break
            await asyncio.sleep(0.01)
        self._queue.put_nowait(None)
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Permission server stopped")

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None
