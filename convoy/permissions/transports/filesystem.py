"""Drop-box directory permission transport.

The approval proxy launched alongside the agent writes
``{id}.request`` files into a per-session directory and polls for the
matching ``{id}.response``. A watchdog ``Observer`` watches the
directory; its thread only hands paths over to the event loop, where
all state lives.

Request file::

    {"id": "...", "tool": "Bash", "input": {...}, "timestamp": "..."}

Response file (written to a temp name, then renamed into place)::

    {"id": "...", "approved": true, "timestamp": "..."}
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from convoy.permissions.rules import describe_target
from convoy.shared.models.permission import PermissionRequest, PermissionVerdict

from .base import PermissionTransport

logger = logging.getLogger(__name__)

REQUEST_SUFFIX = ".request"
RESPONSE_SUFFIX = ".response"


class _DropBoxHandler(FileSystemEventHandler):
    """Watchdog handler that forwards request files to the event loop."""

    def __init__(self, transport: FilesystemTransport, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self._transport = transport
        self._loop = loop

    def _forward(self, path) -> None:
        path = os.fsdecode(path)
        if not path.endswith(REQUEST_SUFFIX):
            return
        try:
            self._loop.call_soon_threadsafe(self._transport._on_request_file, path)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def on_created(self, event):
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._forward(event.dest_path)


class FilesystemTransport(PermissionTransport):
    """Serve one session's permission drop-box directory."""

    def __init__(
        self,
        session_id: str,
        directory: Path | str,
        request_timeout: float = 60.0,
        response_cleanup_seconds: float = 10.0,
        read_attempts: int = 5,
        read_retry_delay: float = 0.05,
    ) -> None:
        self.session_id = session_id
        self.directory = Path(directory)
        self.request_timeout = request_timeout
        self._cleanup_delay = response_cleanup_seconds
        self._read_attempts = read_attempts
        self._read_retry_delay = read_retry_delay
        self._queue: asyncio.Queue[PermissionRequest | None] = asyncio.Queue()
        # Request file names already picked up; watchdog may report one
        # file several times (created + modified)
        self._in_flight: set[str] = set()
        # request id -> file stem
        self._stems: dict[str, str] = {}
        self._tasks: set[asyncio.Task] = set()
        self._observer: Observer | None = None
        self._closed = False

    @property
    def name(self) -> str:
        return "filesystem"

    def request_path(self, stem: str) -> Path:
        return self.directory / f"{stem}{REQUEST_SUFFIX}"

    def response_path(self, stem: str) -> Path:
        return self.directory / f"{stem}{RESPONSE_SUFFIX}"

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self.directory.mkdir(parents=True, exist_ok=True)

        self._observer = Observer()
        self._observer.schedule(
            _DropBoxHandler(self, loop), str(self.directory), recursive=False,
        )
        self._observer.daemon = True
        self._observer.start()

        # Requests written before the watch began
        existing = sorted(self.directory.glob(f"*{REQUEST_SUFFIX}"))
        for path in existing:
            self._on_request_file(str(path))
        logger.info(
            "Permission drop-box watching %s (session=%s, %d pending)",
            self.directory, self.session_id[:8], len(existing),
        )

    async def receive(self) -> PermissionRequest | None:
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    async def respond(self, request_id: str, verdict: PermissionVerdict) -> None:
        stem = self._stems.get(request_id, request_id)
        payload = {
            "id": request_id,
            "approved": verdict.allowed,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        target = self.response_path(stem)
        tmp = target.with_name(target.name + ".tmp")
        try:
            tmp.write_text(json.dumps(payload, indent=2))
            os.replace(tmp, target)
        except OSError:
            logger.exception(
                "Failed to write permission response %s", target.name,
            )
            self._forget(request_id)
            return
        logger.info(
            "Permission response written: %s approved=%s", stem[:8], verdict.allowed,
        )
        self._spawn(self._cleanup_later(request_id, stem))

    async def expire(self, request_id: str) -> None:
        stem = self._stems.get(request_id, request_id)
        logger.info("Permission request %s expired, removing its files", stem[:8])
        self._remove_files(stem)
        self._forget(request_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._queue.put_nowait(None)
        logger.info("Permission drop-box closed: %s", self.directory)

    # ── Internals ──

    def _on_request_file(self, path: str) -> None:
        """Runs on the event loop for every request-file notification."""
        if self._closed:
            return
        name = os.path.basename(path)
        if name in self._in_flight:
            return
        self._in_flight.add(name)
        self._spawn(self._load_request(Path(path)))

    async def _load_request(self, path: Path) -> None:
        data = None
        for attempt in range(self._read_attempts):
            try:
                data = json.loads(path.read_text())
                break
            except FileNotFoundError:
                logger.debug("Request file vanished before it was read: %s", path.name)
                self._in_flight.discard(path.name)
                return
            except (json.JSONDecodeError, OSError) as exc:
                # Writer may not have finished yet
                if attempt + 1 == self._read_attempts:
                    logger.warning("Unreadable permission request %s: %s", path.name, exc)
                    self._in_flight.discard(path.name)
                    return
                await asyncio.sleep(self._read_retry_delay)

        if not isinstance(data, dict) or not data.get("tool"):
            logger.warning("Malformed permission request %s: %r", path.name, data)
            self._in_flight.discard(path.name)
            return

        stem = path.name[: -len(REQUEST_SUFFIX)]
        tool_input = data.get("input") if isinstance(data.get("input"), dict) else {}
        request = PermissionRequest(
            session_id=self.session_id,
            tool_name=str(data["tool"]),
            target=describe_target(str(data["tool"]), tool_input),
            tool_input=tool_input,
            id=str(data.get("id") or stem),
            transport=self.name,
        )
        self._stems[request.id] = stem
        logger.info(
            "Permission request received: %s tool=%s session=%s",
            stem[:8], request.tool_name, self.session_id[:8],
        )
        await self._queue.put(request)

    async def _cleanup_later(self, request_id: str, stem: str) -> None:
        # The proxy normally removes both files itself once it has read
        # the response; this only catches ones it never picked up.
        await asyncio.sleep(self._cleanup_delay)
        self._remove_files(stem)
        self._forget(request_id)

    def _remove_files(self, stem: str) -> None:
        for path in (self.request_path(stem), self.response_path(stem)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Failed to remove %s", path)

    def _forget(self, request_id: str) -> None:
        stem = self._stems.pop(request_id, request_id)
        self._in_flight.discard(f"{stem}{REQUEST_SUFFIX}")

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
