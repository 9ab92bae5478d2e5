"""Builds and starts agent CLI invocations.

One invocation per message: the prompt is written to stdin, stdin is
closed, and the CLI streams NDJSON events on stdout until it exits.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path

from convoy.permissions.approval_proxy import PROMPT_TOOL_ID, write_proxy_config
from convoy.shared.models.session import Session

from .config import SupervisorConfig
from .errors import AgentSpawnError

logger = logging.getLogger(__name__)

# Model aliases the CLI spells differently
_MODEL_ALIASES = {
    "sonnet1m": "sonnet[1m]",
}


class AgentLauncher:
    """Turns a session plus a message into a running agent process."""

    def __init__(self, config: SupervisorConfig) -> None:
        self._config = config

    def resolve_command(self) -> str:
        """Resolve the agent binary to a full path.

        An unresolvable command is returned unchanged so the spawn error
        can name what was configured.
        """
        command = self._config.agent_command
        resolved = shutil.which(command)
        if resolved is None:
            logger.debug("Agent command %s not found on PATH", command)
            return command
        return resolved

    @staticmethod
    def cli_model(model: str | None) -> str | None:
        if not model or model == "default":
            return None
        return _MODEL_ALIASES.get(model, model)

    def proxy_config_path(self, session_id: str) -> Path:
        return Path(self._config.permissions_root) / f"{session_id}.mcp.json"

    def permissions_dir(self, session_id: str) -> Path:
        return Path(self._config.permissions_root) / session_id

    def build_args(
        self,
        session: Session,
        mcp_config_path: str | None = None,
        permission_url: str | None = None,
    ) -> list[str]:
        """Full argv for one invocation, command first."""
        args = [self.resolve_command(), *self._config.agent_command_args]
        args += ["-p", "--output-format", "stream-json", "--verbose"]

        model = self.cli_model(session.model)
        if model:
            args += ["--model", model]
        if session.agent_session_id:
            args += ["--resume", session.agent_session_id]

        if session.yolo_mode:
            args.append("--dangerously-skip-permissions")
        elif self._config.permission_transport == "filesystem":
            proxy_config = write_proxy_config(
                self.proxy_config_path(session.id),
                self.permissions_dir(session.id),
                timeout=self._config.permission_timeout_seconds,
            )
            args += [
                "--mcp-config", str(proxy_config),
                "--permission-prompt-tool", PROMPT_TOOL_ID,
            ]
        elif self._config.permission_transport == "http" and permission_url:
            logger.debug(
                "Session %s routes permissions through %s",
                session.id[:8], permission_url,
            )

        if session.plan_mode:
            args += ["--permission-mode", "plan"]
        if mcp_config_path:
            args += ["--mcp-config", mcp_config_path]
        return args

    def build_prompt(self, text: str, thinking: bool = False, plan: bool = False) -> str:
        prefix = ""
        if thinking:
            prefix += self._config.thinking_directive
        if plan:
            prefix += self._config.plan_directive
        return prefix + text

    def build_env(self, session: Session, permission_url: str | None = None) -> dict[str, str]:
        env = os.environ.copy()
        env["FORCE_COLOR"] = "0"
        env["NO_COLOR"] = "1"
        if self._config.permission_transport == "filesystem":
            env["CONVOY_PERMISSIONS_DIR"] = str(self.permissions_dir(session.id))
        if permission_url:
            env["CONVOY_PERMISSION_URL"] = permission_url
            env["CONVOY_SESSION_ID"] = session.id
        return env

    async def spawn(
        self,
        session: Session,
        args: list[str],
        env: dict[str, str],
    ) -> asyncio.subprocess.Process:
        """Start the process in its own process group. Raises AgentSpawnError."""
        try:
            # Array-based exec, no shell
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=session.working_directory or None,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            raise AgentSpawnError(session.id, str(exc)) from exc
        logger.info(
            "Spawned agent for session %s (pid=%s, cwd=%s)",
            session.id[:8], proc.pid, session.working_directory,
        )
        logger.debug("Agent argv: %s", args)
        return proc

    @staticmethod
    async def write_prompt(proc: asyncio.subprocess.Process, prompt: str) -> None:
        """Write the single stdin message and close stdin."""
        if proc.stdin is None:
            return
        try:
            proc.stdin.write((prompt + "\n").encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Agent pid=%s closed stdin before the prompt was written", proc.pid)
        finally:
            proc.stdin.close()
