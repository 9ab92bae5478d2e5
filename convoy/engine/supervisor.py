"""Session supervisor: one agent process per session, many sessions at once.

The supervisor owns the only table of live state (``ActiveSessionRecord``
per session id). Every send spawns a fresh agent process whose stdout is
read by a per-process reader task:

    stdout chunk → StreamEventDecoder → ConversationAccumulator → notifications

Each spawn bumps the record's generation. The reader task closes over the
process handle and generation it was started for and checks both against
the record before touching any state, so output from a process that was
stopped or replaced is dropped. Stopping detaches (generation bump, reader
cancelled, handle cleared) in one synchronous step before the process is
signalled; termination itself runs in the background.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field

from convoy.adapters.events import (
    MessageCreated,
    MessageUpdated,
    PermissionRequested,
    SessionError,
    SessionStateUpdate,
    SessionStopped,
    SessionUpdated,
    StatsUpdated,
    SupervisorEvent,
    event_to_dict,
)
from convoy.permissions.broker import PermissionBroker
from convoy.permissions.rules import (
    PermissionRuleStore,
    format_permission_message,
)
from convoy.permissions.store import PermissionFileStore
from convoy.permissions.transports.filesystem import FilesystemTransport
from convoy.permissions.transports.http import HttpTransport
from convoy.shared.models.message import Message, MessageType
from convoy.shared.models.permission import (
    PermissionRequest,
    PermissionRule,
    PermissionVerdict,
)
from convoy.shared.models.session import Session, SessionConfig

from .accumulator import ConversationAccumulator, ParseResult
from .config import SupervisorConfig, fire_event
from .errors import (
    AgentSpawnError,
    SessionNotFoundError,
    describe_spawn_error,
    format_error,
)
from .launcher import AgentLauncher
from .stream_decoder import StreamEvent, StreamEventDecoder

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


@dataclass
class ActiveSessionRecord:
    """Everything the supervisor tracks for one session."""
    session: Session
    process: asyncio.subprocess.Process | None = None
    decoder: StreamEventDecoder = field(default_factory=StreamEventDecoder)
    permission_channel: FilesystemTransport | None = None
    # Bumped on every spawn and every stop
    generation: int = 0
    reader_task: asyncio.Task | None = None
    stderr_parts: list[str] = field(default_factory=list)


class SessionSupervisor:
    """Creates sessions, runs their agent processes and relays their output."""

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        launcher: AgentLauncher | None = None,
    ) -> None:
        self._config = config or SupervisorConfig.from_env()
        self._launcher = launcher or AgentLauncher(self._config)
        self._records: dict[str, ActiveSessionRecord] = {}
        self._accumulator = ConversationAccumulator(self._config.pricing)
        self.rule_store = PermissionRuleStore(self.get_session, self._on_rules_changed)
        self.broker = PermissionBroker(
            self.rule_store,
            on_request=self._on_permission_request,
            auto_approve_tools=self._config.auto_approve_tools,
        )
        self._http: HttpTransport | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def config(self) -> SupervisorConfig:
        return self._config

    @property
    def permission_url(self) -> str | None:
        return self._http.url if self._http is not None else None

    async def start(self) -> None:
        """Start shared services (the HTTP permission endpoint, if configured)."""
        if self._config.permission_transport == "http" and self._http is None:
            self._http = HttpTransport(
                self._resolve_hook_session,
                host=self._config.http_host,
                port=self._config.http_port,
            )
            await self.broker.attach(self._http)

    # ── Queries ──

    def get_all_sessions(self) -> list[Session]:
        return [rec.session for rec in self._records.values()]

    def get_session(self, session_id: str) -> Session | None:
        rec = self._records.get(session_id)
        return rec.session if rec else None

    def require_session(self, session_id: str) -> Session:
        """Like get_session, but raises SessionNotFoundError for unknown ids."""
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_active_session(self) -> Session | None:
        for rec in self._records.values():
            if rec.session.is_active:
                return rec.session
        return None

    def is_running(self, session_id: str) -> bool:
        rec = self._records.get(session_id)
        return rec is not None and rec.process is not None

    def find_session_by_agent_id(self, agent_session_id: str) -> Session | None:
        """Find the session whose agent conversation id is *agent_session_id*."""
        for rec in self._records.values():
            if rec.session.agent_session_id == agent_session_id:
                return rec.session
        return None

    def _resolve_hook_session(self, external_id: str) -> str | None:
        if external_id in self._records:
            return external_id
        session = self.find_session_by_agent_id(external_id)
        return session.id if session else None

    # ── Session lifecycle ──

    async def create_session(self, config: SessionConfig | None = None) -> Session:
        config = config or SessionConfig()
        session = Session(
            working_directory=config.working_directory or os.getcwd(),
            model=config.model or self._config.default_model,
            yolo_mode=bool(config.yolo_mode),
            thinking_mode=bool(config.thinking_mode),
            plan_mode=bool(config.plan_mode),
        )
        rec = ActiveSessionRecord(session=session)
        self._records[session.id] = rec
        if len(self._records) == 1:
            session.is_active = True
        logger.info(
            "Created session %s name=%s cwd=%s model=%s",
            session.id[:8], session.name, session.working_directory, session.model,
        )
        await self._open_permission_channel(rec)
        await self._emit(SessionUpdated(session_id=session.id, session=session.to_dict()))
        return session

    async def restore_sessions(self, sessions: list[Session]) -> list[Session]:
        """Re-register sessions loaded by the persistence layer.

        Processing flags are reset (no process survives a restart) and
        exactly one restored session ends up active.
        """
        restored: list[Session] = []
        for session in sessions:
            if not session.is_open or session.id in self._records:
                continue
            session.is_processing = False
            rec = ActiveSessionRecord(session=session)
            self._records[session.id] = rec
            await self._open_permission_channel(rec)
            restored.append(session)

        active = [s for s in self.get_all_sessions() if s.is_active]
        if not active and self._records:
            next(iter(self._records.values())).session.is_active = True
        for extra in active[1:]:
            extra.is_active = False
        logger.info("Restored %d session(s)", len(restored))
        for session in restored:
            await self._emit(SessionUpdated(session_id=session.id, session=session.to_dict()))
        return restored

    async def switch_to_session(self, session_id: str) -> Session | None:
        rec = self._records.get(session_id)
        if rec is None:
            return None
        previous = self.get_active_session()
        for other in self._records.values():
            other.session.is_active = False
        rec.session.is_active = True
        rec.session.touch()
        if previous is not None and previous is not rec.session:
            await self._emit(SessionUpdated(session_id=previous.id, session=previous.to_dict()))
        await self._emit(SessionUpdated(session_id=session_id, session=rec.session.to_dict()))
        return rec.session

    async def delete_session(self, session_id: str) -> bool:
        rec = self._records.get(session_id)
        if rec is None:
            return False
        proc = self._detach_process(rec)
        if proc is not None:
            self._spawn_background(self._terminate(proc))
        self._accumulator.clear_session(session_id)
        was_active = rec.session.is_active
        rec.session.is_active = False
        rec.session.is_processing = False
        rec.session.is_open = False
        del self._records[session_id]

        channel, rec.permission_channel = rec.permission_channel, None
        if channel is not None:
            await self.broker.detach(channel)
        try:
            self._launcher.proxy_config_path(session_id).unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove proxy config for session %s", session_id[:8])

        logger.info("Deleted session %s", session_id[:8])
        await self._emit(SessionUpdated(session_id=session_id, session=rec.session.to_dict()))
        if was_active and self._records:
            successor = next(iter(self._records.values())).session
            successor.is_active = True
            successor.touch()
            await self._emit(SessionUpdated(session_id=successor.id, session=successor.to_dict()))
        return True

    # ── Running the agent ──

    async def send_message(
        self,
        session_id: str,
        text: str,
        config: SessionConfig | None = None,
    ) -> bool:
        """Start an agent run for *text*. Returns once the process is started."""
        rec = self._records.get(session_id)
        if rec is None:
            return False
        session = rec.session
        config = config or SessionConfig()
        if config.model:
            session.model = config.model
        if config.yolo_mode is not None:
            session.yolo_mode = config.yolo_mode
        if config.thinking_mode is not None:
            session.thinking_mode = config.thinking_mode
        if config.plan_mode is not None:
            session.plan_mode = config.plan_mode

        if rec.process is not None:
            logger.info("Session %s already running, restarting", session_id[:8])
            await self.stop_session(session_id)
            await asyncio.sleep(self._config.restart_delay_seconds)
            if self._records.get(session_id) is not rec:
                return False

        # A concurrent send may have started a run while we waited
        self._replace_running(rec)
        rec.generation += 1
        generation = rec.generation
        session.is_processing = True
        session.touch()
        await self._emit(MessageCreated(
            session_id=session_id,
            message=Message(session_id=session_id, type=MessageType.USER, content=text).to_dict(),
        ))
        await self._emit(SessionStateUpdate(session_id=session_id, is_processing=True))

        prompt = self._launcher.build_prompt(text, session.thinking_mode, session.plan_mode)
        args = self._launcher.build_args(session, config.mcp_config_path, self.permission_url)
        env = self._launcher.build_env(session, self.permission_url)
        try:
            proc = await self._launcher.spawn(session, args, env)
        except AgentSpawnError as exc:
            logger.error("Spawn failed for session %s: %s", session_id[:8], exc.reason)
            if rec.generation == generation:
                message, details = describe_spawn_error(exc.__cause__ or exc, args[0])
                await self._fail_run(rec, format_error(message, details))
            return False

        if self._records.get(session_id) is not rec or rec.generation != generation:
            # Stopped or deleted while the process was starting
            logger.info("Session %s changed during spawn, discarding pid=%s", session_id[:8], proc.pid)
            self._spawn_background(self._terminate(proc))
            return False

        # Generation unchanged since the bump above, so no other send has
        # attached a process in the meantime
        rec.process = proc
        rec.decoder = StreamEventDecoder()
        rec.stderr_parts = []
        rec.reader_task = asyncio.create_task(self._read_output(rec, proc, generation))
        await self._launcher.write_prompt(proc, prompt)
        return True

    async def stop_session(self, session_id: str) -> bool:
        rec = self._records.get(session_id)
        if rec is None:
            return False
        proc = self._detach_process(rec)
        self._accumulator.clear_session(session_id)
        rec.session.is_processing = False
        if proc is not None:
            self._spawn_background(self._terminate(proc))
        logger.info("Stopped session %s", session_id[:8])
        await self._emit(SessionStopped(session_id=session_id))
        await self._emit(SessionStateUpdate(session_id=session_id, is_processing=False))
        return True

    def _detach_process(self, rec: ActiveSessionRecord) -> asyncio.subprocess.Process | None:
        """Disconnect the record from its process. No awaits."""
        proc = rec.process
        rec.generation += 1
        rec.process = None
        if rec.reader_task is not None:
            rec.reader_task.cancel()
            rec.reader_task = None
        rec.decoder.reset()
        return proc

    def _replace_running(self, rec: ActiveSessionRecord) -> None:
        """Detach and kill whatever process the record holds. No awaits."""
        if rec.process is None:
            return
        proc = self._detach_process(rec)
        logger.info(
            "Session %s already holds pid=%s from a concurrent send, terminating it",
            rec.session.id[:8], proc.pid,
        )
        self._spawn_background(self._terminate(proc))

    def _is_current(
        self, rec: ActiveSessionRecord, proc: asyncio.subprocess.Process, generation: int,
    ) -> bool:
        return (
            self._records.get(rec.session.id) is rec
            and rec.process is proc
            and rec.generation == generation
        )

    async def _read_output(
        self, rec: ActiveSessionRecord, proc: asyncio.subprocess.Process, generation: int,
    ) -> None:
        session_id = rec.session.id
        stderr_task = asyncio.create_task(self._read_stderr(rec, proc, generation))
        try:
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                if not self._is_current(rec, proc, generation):
                    return
                if not chunk:
                    break
                for event in rec.decoder.feed(chunk):
                    if not await self._dispatch(rec, proc, generation, event):
                        return
            for event in rec.decoder.flush():
                if not await self._dispatch(rec, proc, generation, event):
                    return

            await stderr_task
            returncode = await proc.wait()
            if not self._is_current(rec, proc, generation):
                return
            await self._on_exit(rec, returncode)
        except Exception:
            logger.exception("Reader for session %s failed", session_id[:8])
            if self._is_current(rec, proc, generation):
                self._detach_process(rec)
                self._spawn_background(self._terminate(proc))
                await self._fail_run(rec, format_error(
                    "Agent process error", "Lost the connection to the agent process.",
                ))
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    async def _read_stderr(
        self, rec: ActiveSessionRecord, proc: asyncio.subprocess.Process, generation: int,
    ) -> None:
        while True:
            chunk = await proc.stderr.read(_READ_CHUNK)
            if not chunk or not self._is_current(rec, proc, generation):
                return
            text = chunk.decode("utf-8", errors="replace")
            rec.stderr_parts.append(text)
            logger.debug("Agent stderr (session %s): %s", rec.session.id[:8], text.rstrip())

    async def _dispatch(
        self,
        rec: ActiveSessionRecord,
        proc: asyncio.subprocess.Process,
        generation: int,
        event: StreamEvent,
    ) -> bool:
        """Apply one event. False once the process is no longer current."""
        if not self._is_current(rec, proc, generation):
            return False
        session = rec.session
        results = self._accumulator.parse(session.id, event, model=session.model)
        for result in results:
            if not self._is_current(rec, proc, generation):
                return False
            await self._apply(session, result)
        return True

    async def _apply(self, session: Session, result: ParseResult) -> None:
        if result.message is not None:
            await self._emit(MessageCreated(session_id=session.id, message=result.message.to_dict()))
        if result.update is not None:
            await self._emit(MessageUpdated(
                session_id=session.id,
                message_id=result.update.id,
                content=result.update.content,
            ))
        if result.stats is not None:
            session.add_usage(
                result.stats["input_tokens"], result.stats["output_tokens"], result.stats["cost"],
            )
            await self._emit(StatsUpdated(
                session_id=session.id,
                input_tokens=result.stats["input_tokens"],
                output_tokens=result.stats["output_tokens"],
                cost=result.stats["cost"],
                total_cost=session.total_cost,
                model=result.stats.get("model"),
            ))
        update = result.session_update or {}
        agent_session_id = update.get("agent_session_id")
        if agent_session_id and agent_session_id != session.agent_session_id:
            session.agent_session_id = agent_session_id
            logger.info(
                "Session %s bound to agent conversation %s", session.id[:8], agent_session_id[:8],
            )
            await self._emit(SessionUpdated(session_id=session.id, session=session.to_dict()))
        if update.get("is_processing") is False and session.is_processing:
            session.is_processing = False
            await self._emit(SessionStateUpdate(session_id=session.id, is_processing=False))

    async def _on_exit(self, rec: ActiveSessionRecord, returncode: int) -> None:
        session = rec.session
        rec.process = None
        rec.reader_task = None
        self._accumulator.clear_session(session.id)
        stderr = "".join(rec.stderr_parts).strip()
        rec.stderr_parts = []
        logger.info("Agent for session %s exited with code %s", session.id[:8], returncode)
        if returncode != 0 and stderr:
            await self._fail_run(rec, format_error(f"Agent exited with code {returncode}", stderr))
            return
        if session.is_processing:
            session.is_processing = False
            await self._emit(SessionStateUpdate(session_id=session.id, is_processing=False))

    async def _fail_run(self, rec: ActiveSessionRecord, text: str) -> None:
        session = rec.session
        session.is_processing = False
        message = self._accumulator.error_message(session.id, text)
        await self._emit(MessageCreated(session_id=session.id, message=message.to_dict()))
        await self._emit(SessionError(session_id=session.id, error=text))
        await self._emit(SessionStateUpdate(session_id=session.id, is_processing=False))

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, SIGKILL after the grace window."""
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        if proc.returncode is None:
            self._signal(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Agent pid=%s ignored SIGTERM, killing", proc.pid)
                self._signal(proc, signal.SIGKILL)
                await proc.wait()
        logger.debug("Agent pid=%s reaped (code=%s)", proc.pid, proc.returncode)

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            # Spawned with start_new_session, so pid == process group id
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    # ── Permissions ──

    async def _open_permission_channel(self, rec: ActiveSessionRecord) -> None:
        if self._config.permission_transport != "filesystem":
            return
        channel = FilesystemTransport(
            rec.session.id,
            self._launcher.permissions_dir(rec.session.id),
            request_timeout=self._config.permission_timeout_seconds,
            response_cleanup_seconds=self._config.response_cleanup_seconds,
        )
        try:
            await self.broker.attach(channel)
        except OSError:
            logger.exception(
                "Could not open permission directory for session %s", rec.session.id[:8],
            )
            return
        rec.permission_channel = channel
        if rec.session.permission_rules:
            self._write_permission_file(rec.session.id, rec.session.permission_rules)

    async def _on_permission_request(self, request: PermissionRequest) -> None:
        session = self.get_session(request.session_id)
        if session is None:
            logger.warning("Permission request %s for unknown session", request.id[:8])
            return
        description = format_permission_message(request.tool_name, request.target)
        message = Message(
            session_id=session.id,
            type=MessageType.PERMISSION_REQUEST,
            content=description,
            metadata={
                "request_id": request.id,
                "tool_name": request.tool_name,
                "target": request.target,
                "raw_input": request.tool_input,
            },
        )
        await self._emit(MessageCreated(session_id=session.id, message=message.to_dict()))
        await self._emit(PermissionRequested(
            session_id=session.id,
            request_id=request.id,
            tool_name=request.tool_name,
            target=request.target,
            description=description,
            tool_input=request.tool_input,
        ))

    def resolve_permission(self, request_id: str, allowed: bool, remember: bool = False) -> bool:
        return self.broker.resolve(
            request_id, PermissionVerdict(allowed=allowed, remember=remember),
        )

    def get_permission_rules(self, session_id: str) -> list[PermissionRule]:
        return self.rule_store.list_rules(session_id)

    def add_permission_rule(self, session_id: str, rule: PermissionRule) -> bool:
        return self.rule_store.add_rule(session_id, rule)

    def remove_permission_rule(self, session_id: str, index: int) -> bool:
        return self.rule_store.remove_rule(session_id, index)

    def _on_rules_changed(self, session_id: str, rules: list[PermissionRule]) -> None:
        self._write_permission_file(session_id, rules)
        session = self.get_session(session_id)
        if session is not None:
            self._spawn_background(
                self._emit(SessionUpdated(session_id=session_id, session=session.to_dict()))
            )

    def _write_permission_file(self, session_id: str, rules: list[PermissionRule]) -> None:
        if self._config.permission_transport != "filesystem":
            return
        PermissionFileStore(self._launcher.permissions_dir(session_id)).save_rules(rules)

    # ── Plumbing ──

    async def _emit(self, event: SupervisorEvent) -> None:
        await fire_event(self._config.event_callback, event_to_dict(event))

    def _spawn_background(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def cleanup(self) -> None:
        """Stop every process and close every permission channel."""
        reapers = []
        for rec in list(self._records.values()):
            proc = self._detach_process(rec)
            self._accumulator.clear_session(rec.session.id)
            rec.session.is_processing = False
            rec.permission_channel = None
            if proc is not None:
                reapers.append(self._terminate(proc))
        if reapers:
            await asyncio.gather(*reapers, return_exceptions=True)
        await self.broker.shutdown()
        self._http = None
        if self._background:
            await asyncio.wait(list(self._background), timeout=self._config.stop_grace_seconds + 1)
        logger.info("Supervisor cleaned up %d session(s)", len(self._records))
