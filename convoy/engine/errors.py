"""Exception hierarchy for the session supervisor and permission broker.

Specific exceptions for each failure mode, plus the helpers that turn
low-level OS errors into the text shown in a session's error message.
"""
from __future__ import annotations

import errno


class SupervisorError(Exception):
    """Base exception for all supervisor errors."""


class SessionNotFoundError(SupervisorError):
    """An operation referenced a session id the supervisor does not hold."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class AgentSpawnError(SupervisorError):
    """Failed to start the agent CLI for a session."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to start agent for session {session_id}: {reason}")


class ConfigError(SupervisorError):
    """Configuration file or environment value is invalid."""


class PermissionBrokerError(SupervisorError):
    """Base exception for permission broker failures."""


class BrokerShutdownError(PermissionBrokerError):
    """The broker shut down while a request was still awaiting a decision."""
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Permission broker shut down before {request_id} was answered")


def format_error(message: str, details: str) -> str:
    """Render an error as shown in a session's conversation."""
    return f"{message}\n\n{details}"


def describe_spawn_error(exc: BaseException, command: str) -> tuple[str, str]:
    """Map a spawn failure to a (message, details) pair."""
    if isinstance(exc, FileNotFoundError) or getattr(exc, "errno", None) == errno.ENOENT:
        return (
            "Agent CLI not found",
            f"'{command}' is not installed or not on PATH. "
            "Please install Claude Code first.",
        )
    if isinstance(exc, PermissionError) or getattr(exc, "errno", None) == errno.EACCES:
        return (
            "Permission denied",
            f"Unable to execute '{command}'. Please check file permissions.",
        )
    return ("Agent process error", str(exc) or type(exc).__name__)


def describe_parse_error(exc: BaseException) -> tuple[str, str]:
    return ("Failed to parse message from agent", str(exc) or type(exc).__name__)
