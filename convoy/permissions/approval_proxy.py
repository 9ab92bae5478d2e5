"""MCP approval server launched by the agent CLI.

Standalone FastMCP server the agent CLI starts (via ``--mcp-config``) and
calls through ``--permission-prompt-tool`` before every tool use. It
answers from the session's ``permissions.json`` when it can, and
otherwise drops a request file into the session's permission directory
and waits for the supervisor to write the response.

Usage:
    python -m convoy.permissions.approval_proxy --dir DIR [--timeout SECONDS]

Approval flow:
    agent CLI → MCP stdio → approval_proxy → {id}.request
    supervisor (FilesystemTransport) → {id}.response → approval_proxy → agent CLI
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from convoy.permissions.store import PermissionFileStore
from convoy.permissions.transports.filesystem import REQUEST_SUFFIX, RESPONSE_SUFFIX

logger = logging.getLogger(__name__)

SERVER_NAME = "convoy-permissions"
TOOL_NAME = "approval_prompt"
# Name the agent CLI knows the tool by
PROMPT_TOOL_ID = f"mcp__{SERVER_NAME}__{TOOL_NAME}"

DIR_ENV_VAR = "CONVOY_PERMISSIONS_DIR"
DEFAULT_TIMEOUT_SECONDS = 60.0
POLL_INTERVAL_SECONDS = 0.1

# Set from CLI args / environment before the server starts
_permissions_dir: Path | None = None
_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


def check_saved_permission(
    directory: Path | str, tool_name: str, tool_input: dict[str, Any] | None,
) -> bool:
    """True when permissions.json already allows this call."""
    allowed = PermissionFileStore(directory).is_allowed(tool_name, tool_input)
    if allowed:
        logger.info("Allowed by permissions.json: %s", tool_name)
    return allowed


async def request_via_files(
    directory: Path | str,
    tool_name: str,
    tool_input: dict[str, Any] | None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    poll_interval: float = POLL_INTERVAL_SECONDS,
) -> bool:
    """Write a request file and wait for its response; False on timeout."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    request_id = str(uuid.uuid4())
    request_file = directory / f"{request_id}{REQUEST_SUFFIX}"
    response_file = directory / f"{request_id}{RESPONSE_SUFFIX}"

    request = {
        "id": request_id,
        "tool": tool_name,
        "input": tool_input or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    # Rename into place so the watcher never sees a half-written file
    tmp = directory / f".{request_id}.tmp"
    tmp.write_text(json.dumps(request, indent=2))
    os.replace(tmp, request_file)
    logger.info("Wrote permission request %s for %s", request_id[:8], tool_name)

    approved = False
    deadline = time.monotonic() + timeout
    try:
        while time.monotonic() < deadline:
            if response_file.exists():
                try:
                    response = json.loads(response_file.read_text())
                except (json.JSONDecodeError, OSError) as exc:
                    logger.debug("Response %s not readable yet: %s", request_id[:8], exc)
                else:
                    approved = bool(response.get("approved", False))
                    break
            await asyncio.sleep(poll_interval)
        else:
            logger.warning(
                "Permission request %s timed out after %.0fs", request_id[:8], timeout,
            )
    finally:
        for path in (request_file, response_file):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Cleanup of %s failed: %s", path.name, exc)
    return approved


def build_decision(
    allowed: bool, tool_input: dict[str, Any] | None, tool_name: str,
) -> str:
    """The JSON text the agent CLI expects back from a permission prompt tool."""
    if allowed:
        return json.dumps({"behavior": "allow", "updatedInput": tool_input or {}})
    return json.dumps({
        "behavior": "deny",
        "message": f"Permission to use {tool_name} was denied",
    })


mcp = FastMCP(
    name=SERVER_NAME,
    instructions="Asks the user whether a tool call may proceed.",
)


@mcp.tool(
    name=TOOL_NAME,
    description=(
        "Request permission to use a tool. Returns a JSON decision with "
        "behavior 'allow' or 'deny'."
    ),
)
async def approval_prompt(
    tool_name: str,
    input: dict[str, Any] | None = None,
    tool_use_id: str | None = None,
) -> str:
    directory = _permissions_dir
    if directory is None:
        logger.error("No permission directory configured, denying %s", tool_name)
        return build_decision(False, input, tool_name)
    logger.info(
        "Permission prompt: tool=%s tool_use_id=%s", tool_name, (tool_use_id or "")[:8],
    )
    try:
        if check_saved_permission(directory, tool_name, input):
            return build_decision(True, input, tool_name)
        allowed = await request_via_files(
            directory, tool_name, input, timeout=_timeout_seconds,
        )
    except OSError:
        logger.exception("Permission request for %s failed", tool_name)
        allowed = False
    return build_decision(allowed, input, tool_name)


def write_proxy_config(
    path: Path | str,
    permissions_dir: Path | str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    python: str | None = None,
) -> Path:
    """Write the ``--mcp-config`` file that makes the agent CLI launch this server."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    config = {
        "mcpServers": {
            SERVER_NAME: {
                "command": python or sys.executable,
                "args": [
                    "-m", "convoy.permissions.approval_proxy",
                    "--dir", str(permissions_dir),
                    "--timeout", str(timeout),
                ],
                "env": {DIR_ENV_VAR: str(permissions_dir)},
            },
        },
    }
    path.write_text(json.dumps(config, indent=2))
    return path


def main() -> None:
    """Entry point when launched by the agent CLI as an MCP subprocess."""
    global _permissions_dir, _timeout_seconds

    parser = argparse.ArgumentParser(
        prog="convoy-approval-proxy",
        description="MCP permission prompt server for supervised agent sessions",
    )
    parser.add_argument(
        "--dir", default=os.getenv(DIR_ENV_VAR),
        help=f"Session permission directory (default: ${DIR_ENV_VAR})",
    )
    parser.add_argument(
        "--timeout", type=float, default=DEFAULT_TIMEOUT_SECONDS,
        help="Seconds to wait for a decision before denying",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()
    if not args.dir:
        parser.error(f"--dir or ${DIR_ENV_VAR} is required")
    _permissions_dir = Path(args.dir)
    _timeout_seconds = args.timeout

    # Logging goes to stderr (stdout is the MCP transport)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logger.info(
        "Starting approval proxy (dir=%s, timeout=%.0fs, pid=%d)",
        _permissions_dir, _timeout_seconds, os.getpid(),
    )

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
