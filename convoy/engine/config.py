"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CONVOY_* env vars or
a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .pricing import PriceTable

logger = logging.getLogger(__name__)


# Optional async callback for real-time notifications.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

PERMISSION_TRANSPORTS = ("filesystem", "http", "none")

# Tools that only touch the agent's own bookkeeping; never worth asking about.
DEFAULT_AUTO_APPROVE_TOOLS = ("TodoWrite",)

THINKING_DIRECTIVE = "ultrathink\n\n"
PLAN_DIRECTIVE = (
    "Plan only: describe the changes you would make step by step. "
    "Do not edit files or run commands.\n\n"
)


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set; callback errors are logged, not raised."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let callback errors break the supervisor
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _default_permissions_root() -> str:
    return str(Path.home() / ".convoy" / "permissions")


@dataclass
class SupervisorConfig:
    """Session supervisor configuration."""

    # Agent CLI binary and any arguments placed before the generated flags
    agent_command: str = "claude"
    agent_command_args: list[str] = field(default_factory=list)
    default_model: str = "default"

    # "filesystem" (drop-box + approval proxy), "http" (hook endpoint) or "none"
    permission_transport: str = "filesystem"
    permissions_root: str = field(default_factory=_default_permissions_root)
    # Unanswered drop-box requests are denied after this many seconds
    permission_timeout_seconds: float = 60.0
    # Response files the approval proxy never consumed are removed after this
    response_cleanup_seconds: float = 10.0
    http_host: str = "127.0.0.1"
    http_port: int = 8765
    auto_approve_tools: list[str] = field(
        default_factory=lambda: list(DEFAULT_AUTO_APPROVE_TOOLS)
    )

    # SIGTERM -> SIGKILL escalation window when stopping a process
    stop_grace_seconds: float = 1.0
    # Pause between stopping a running process and starting its replacement
    restart_delay_seconds: float = 0.1

    thinking_directive: str = THINKING_DIRECTIVE
    plan_directive: str = PLAN_DIRECTIVE

    pricing: PriceTable = field(default_factory=PriceTable, repr=False)

    log_level: str = "INFO"

    # Optional async callback receiving notification dicts like
    # {"event": "message", "session_id": "...", "message": {...}}
    event_callback: EventCallback | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.permission_transport not in PERMISSION_TRANSPORTS:
            logger.warning(
                "Unknown permission transport %r, falling back to filesystem",
                self.permission_transport,
            )
            self.permission_transport = "filesystem"

    @classmethod
    def from_env(cls) -> SupervisorConfig:
        """Load configuration from CONVOY_* environment variables."""
        convoy_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CONVOY_")
        }
        if convoy_vars:
            logger.info(
                "SupervisorConfig.from_env: CONVOY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(convoy_vars.items())),
            )
        else:
            logger.debug("SupervisorConfig.from_env: no CONVOY_* env vars set, using defaults")

        config = cls(
            agent_command=os.getenv("CONVOY_AGENT_COMMAND", cls.agent_command),
            default_model=os.getenv("CONVOY_DEFAULT_MODEL", cls.default_model),
            permission_transport=os.getenv(
                "CONVOY_PERMISSION_TRANSPORT", cls.permission_transport
            ),
            permissions_root=os.getenv(
                "CONVOY_PERMISSIONS_ROOT", _default_permissions_root()
            ),
            permission_timeout_seconds=float(os.getenv(
                "CONVOY_PERMISSION_TIMEOUT", str(cls.permission_timeout_seconds)
            )),
            http_host=os.getenv("CONVOY_HTTP_HOST", cls.http_host),
            http_port=int(os.getenv("CONVOY_HTTP_PORT", str(cls.http_port))),
            stop_grace_seconds=float(os.getenv(
                "CONVOY_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            restart_delay_seconds=float(os.getenv(
                "CONVOY_RESTART_DELAY", str(cls.restart_delay_seconds)
            )),
            log_level=os.getenv("CONVOY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "SupervisorConfig.from_env: command=%s model=%s transport=%s log_level=%s",
            config.agent_command, config.default_model,
            config.permission_transport, config.log_level,
        )
        return config
