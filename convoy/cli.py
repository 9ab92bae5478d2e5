"""Command-line front-end for the session supervisor.

Usage:
    convoy "Explain the build setup"
    convoy --cwd ~/src/app --model opus --think "Find the flaky test"
    convoy --transport http --config convoy.yaml

Sends the prompt (if any), renders the agent's output as it streams,
asks for permission decisions inline, then keeps reading prompts until
EOF. ``/stop`` stops the running agent, ``/rules`` lists saved
permissions, ``/forget N`` removes one, ``/quit`` exits.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.prompt import Confirm
from rich.text import Text

from convoy.adapters.event_bus import EventBus
from convoy.adapters.events import (
    MessageCreated,
    MessageUpdated,
    PermissionRequested,
    SessionError,
    SessionStateUpdate,
    SessionStopped,
    StatsUpdated,
    SupervisorEvent,
)
from convoy.engine.config import PERMISSION_TRANSPORTS, SupervisorConfig
from convoy.engine.errors import ConfigError, SessionNotFoundError
from convoy.engine.supervisor import SessionSupervisor
from convoy.engine.yaml_config import load_yaml_config
from convoy.shared.models.session import SessionConfig

logger = logging.getLogger(__name__)

_TOOL_RESULT_PREVIEW = 600


def configure_logging(level_name: str, verbose: bool = False) -> Path:
    """Rotating file log plus stderr; returns the log file path."""
    log_dir = Path.home() / ".convoy" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "convoy.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    # Keep the terminal readable unless asked otherwise
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


class ConsoleRenderer:
    """Prints supervisor notifications to a rich Console."""

    def __init__(self, console: Console) -> None:
        self.console = console
        # message id -> characters already printed
        self._printed: dict[str, int] = {}
        self._streaming_id: str | None = None

    def render(self, event: SupervisorEvent) -> None:
        if isinstance(event, MessageCreated):
            self._render_message(event.message)
        elif isinstance(event, MessageUpdated):
            self._render_update(event.message_id, event.content)
        elif isinstance(event, StatsUpdated):
            self.end_stream()
            self.console.print(Text(
                f"tokens in={event.input_tokens} out={event.output_tokens} "
                f"cost=${event.cost:.4f} (session ${event.total_cost:.4f})",
                style="dim",
            ))
        elif isinstance(event, SessionStopped):
            self.end_stream()
            self.console.print(Text("stopped", style="yellow"))
        elif isinstance(event, SessionError):
            self.end_stream()

    def _render_message(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        content = message.get("content") or ""
        metadata = message.get("metadata") or {}
        if kind in ("assistant", "thinking"):
            self.end_stream()
            self._streaming_id = message["id"]
            self._printed[message["id"]] = len(content)
            style = "dim italic" if kind == "thinking" else ""
            self.console.print(Text(content, style=style), end="")
            return
        self.end_stream()
        if kind == "user":
            return
        if kind == "tool":
            self.console.print(Text(f"> {metadata.get('tool_name', 'tool')}", style="bold cyan"))
            self.console.print(Text(content, style="cyan"))
        elif kind == "tool-result":
            preview = content if len(content) <= _TOOL_RESULT_PREVIEW else (
                content[:_TOOL_RESULT_PREVIEW] + "..."
            )
            style = "red" if metadata.get("is_error") else "dim"
            self.console.print(Text(preview, style=style))
        elif kind == "error":
            self.console.print(Text(content, style="bold red"))
        elif kind == "system":
            self.console.print(Text(content, style="magenta"))

    def _render_update(self, message_id: str, content: str) -> None:
        if self._streaming_id != message_id:
            self.end_stream()
            self._streaming_id = message_id
        already = self._printed.get(message_id, 0)
        self.console.print(Text(content[already:]), end="")
        self._printed[message_id] = len(content)

    def end_stream(self) -> None:
        if self._streaming_id is not None:
            self.console.print()
            self._streaming_id = None


async def _ask_permission(console: Console, event: PermissionRequested) -> tuple[bool, bool]:
    allowed = await asyncio.to_thread(
        Confirm.ask, f"[bold yellow]Allow[/] {event.description}?", console=console,
    )
    remember = await asyncio.to_thread(
        Confirm.ask, "Remember this decision for the session?", console=console, default=False,
    )
    return allowed, remember


def _edit_rules(
    console: Console, supervisor: SessionSupervisor, session_id: str, command: str,
) -> None:
    """Handle `/rules` (list) and `/forget N` (remove rule N)."""
    try:
        session = supervisor.require_session(session_id)
    except SessionNotFoundError as exc:
        console.print(Text(str(exc), style="red"))
        return
    if command.startswith("/forget"):
        _, _, arg = command.partition(" ")
        if not arg.strip().isdigit() or not supervisor.remove_permission_rule(
            session.id, int(arg) - 1,
        ):
            console.print(Text(f"No rule {arg.strip() or '?'}", style="red"))
            return
    rules = supervisor.get_permission_rules(session.id)
    if not rules:
        console.print(Text("No saved permissions", style="dim"))
        return
    for n, rule in enumerate(rules, 1):
        verdict = "allow" if rule.allowed else "deny"
        target = rule.pattern or rule.path or "*"
        console.print(Text(f"{n}. {verdict} {rule.tool_name} {target}"))


async def _consume(
    bus: EventBus,
    supervisor: SessionSupervisor,
    renderer: ConsoleRenderer,
    idle: asyncio.Event,
) -> None:
    async for event in bus.consume():
        renderer.render(event)
        if isinstance(event, PermissionRequested):
            renderer.end_stream()
            allowed, remember = await _ask_permission(renderer.console, event)
            supervisor.resolve_permission(event.request_id, allowed, remember)
        elif isinstance(event, SessionStateUpdate):
            if event.is_processing:
                idle.clear()
            else:
                renderer.end_stream()
                idle.set()


async def _run(args: argparse.Namespace, config: SupervisorConfig) -> int:
    console = Console()
    bus = EventBus()
    config.event_callback = bus.make_callback()
    supervisor = SessionSupervisor(config)
    renderer = ConsoleRenderer(console)
    idle = asyncio.Event()
    idle.set()

    await supervisor.start()
    consumer = asyncio.create_task(_consume(bus, supervisor, renderer, idle))
    session = await supervisor.create_session(SessionConfig(
        model=args.model,
        working_directory=os.path.abspath(os.path.expanduser(args.cwd)),
        yolo_mode=args.yolo,
        thinking_mode=args.think,
        plan_mode=args.plan,
    ))
    console.print(Text(
        f"session {session.name} ({session.id[:8]}) in {session.working_directory}",
        style="dim",
    ))
    send_config = SessionConfig(mcp_config_path=args.mcp_config)

    pending = args.prompt
    try:
        while True:
            if pending is None:
                try:
                    pending = await asyncio.to_thread(console.input, "[bold green]> [/]")
                except EOFError:
                    break
            text, pending = pending.strip(), None
            if not text:
                continue
            if text == "/quit":
                break
            if text == "/stop":
                await supervisor.stop_session(session.id)
                continue
            if text == "/rules" or text.startswith("/forget"):
                _edit_rules(console, supervisor, session.id, text)
                continue
            idle.clear()
            if not await supervisor.send_message(session.id, text, send_config):
                idle.set()
                continue
            try:
                await idle.wait()
            except asyncio.CancelledError:
                await supervisor.stop_session(session.id)
                raise
    finally:
        await supervisor.cleanup()
        # Let the consumer print what is still queued
        await asyncio.sleep(0.6)
        bus.close()
        consumer.cancel()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convoy",
        description="Supervise coding-agent sessions from the terminal",
    )
    parser.add_argument(
        "prompt", nargs="?", default=None,
        help="First message to send (omit to start at the prompt)",
    )
    parser.add_argument(
        "--cwd", default=".",
        help="Working directory for the session (default: current directory)",
    )
    parser.add_argument(
        "--model", default=None,
        help="Model alias passed to the agent (default: from config)",
    )
    parser.add_argument("--yolo", action="store_true", help="Skip all permission prompts")
    parser.add_argument("--think", action="store_true", help="Ask for extended reasoning")
    parser.add_argument("--plan", action="store_true", help="Plan only, no edits")
    parser.add_argument("--mcp-config", default=None, help="Extra MCP config file for the agent")
    parser.add_argument("--config", "-c", default=None, help="YAML config file")
    parser.add_argument(
        "--transport", choices=PERMISSION_TRANSPORTS, default=None,
        help="Permission transport (default: from config)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging on stderr",
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()

    try:
        config = load_yaml_config(args.config) if args.config else SupervisorConfig.from_env()
    except (ConfigError, FileNotFoundError) as exc:
        print(f"convoy: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.transport:
        config.permission_transport = args.transport

    log_file = configure_logging(config.log_level, args.verbose)
    logger.info(
        "Starting convoy cwd=%s transport=%s config=%s log=%s",
        args.cwd, config.permission_transport, args.config or "<none>", log_file,
    )
    try:
        sys.exit(asyncio.run(_run(args, config)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
