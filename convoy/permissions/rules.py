"""Durable per-session permission rules.

A rule remembers an "always allow" or "always deny" answer. Rules for
the command tool (Bash) carry a command pattern; rules for every other
tool carry a target path, a ``<dir>/**`` wildcard or no path at all
(any target).

Matching goes from the most specific rule to the least specific:

    Bash:   pattern rules, then any-command rules
    others: exact target, then directory wildcard, then any target

Within a tier the earliest rule wins.
"""
from __future__ import annotations

import fnmatch
import logging
import os
import posixpath
from collections.abc import Callable
from typing import Any, Optional

from convoy.shared.models.permission import PermissionRequest, PermissionRule
from convoy.shared.models.session import Session

logger = logging.getLogger(__name__)

COMMAND_TOOL = "Bash"
DIR_WILDCARD_SUFFIX = "/**"
ANY_TARGET = "*"

# Tool name -> input keys that name what the tool acts on, in priority order
_TARGET_KEYS: dict[str, tuple[str, ...]] = {
    "Bash": ("command",),
    "Read": ("file_path",),
    "Write": ("file_path",),
    "Edit": ("file_path",),
    "MultiEdit": ("file_path",),
    "NotebookEdit": ("notebook_path",),
    "Glob": ("pattern", "path"),
    "Grep": ("pattern", "path"),
    "LS": ("path",),
    "WebFetch": ("url",),
    "WebSearch": ("query",),
}
_FALLBACK_KEYS = ("file_path", "path", "command", "url")

_MESSAGE_FORMATS: dict[str, str] = {
    "Read": "Read file: {}",
    "Write": "Write file: {}",
    "Edit": "Edit file: {}",
    "MultiEdit": "Edit file: {}",
    "Bash": "Execute command: {}",
    "Glob": "Search files: {}",
    "Grep": "Search content: {}",
    "WebFetch": "Fetch URL: {}",
    "WebSearch": "Search the web: {}",
    "NotebookEdit": "Edit notebook: {}",
}


def describe_target(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    """Pick the path, command or URL a tool call acts on."""
    if not tool_input:
        return ""
    for key in _TARGET_KEYS.get(tool_name, _FALLBACK_KEYS):
        value = tool_input.get(key)
        if value:
            return str(value)
    return ""


def format_permission_message(tool_name: str, target: str) -> str:
    """Human-readable one-liner for a permission prompt."""
    template = _MESSAGE_FORMATS.get(tool_name)
    if template is None:
        return f"{tool_name}: {target}" if target else tool_name
    return template.format(target)


def command_verb(command: str) -> str:
    parts = command.strip().split()
    return parts[0] if parts else ""


def command_matches(pattern: str, command: str) -> bool:
    """Match a shell command against a rule pattern.

    ``verb:*`` matches any invocation of *verb*; a pattern containing
    ``*`` is a glob over the whole command; anything else is a prefix.
    """
    command = command.strip()
    pattern = pattern.strip()
    if not pattern or pattern == ANY_TARGET:
        return True
    if pattern.endswith(":*"):
        return command_verb(command) == pattern[:-2]
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(command, pattern)
    return command.startswith(pattern)


def _normalize(path: str, working_directory: str | None) -> str:
    if working_directory and not os.path.isabs(path) and "://" not in path:
        path = posixpath.join(working_directory, path)
    if "://" in path:
        return path
    return posixpath.normpath(path)


def _under(target: str, directory: str) -> bool:
    directory = directory.rstrip("/") or "/"
    if directory == "/":
        return target.startswith("/")
    return target == directory or target.startswith(directory + "/")


def _tier(rule: PermissionRule) -> int:
    """0 = exact / pattern, 1 = directory wildcard, 2 = any target."""
    if rule.tool_name == COMMAND_TOOL:
        return 0 if rule.pattern and rule.pattern != ANY_TARGET else 2
    if not rule.path or rule.path == ANY_TARGET:
        return 2
    if rule.path.endswith(DIR_WILDCARD_SUFFIX):
        return 1
    return 0


def rule_matches(
    rule: PermissionRule,
    tool_name: str,
    target: str,
    tool_input: dict[str, Any] | None = None,
    working_directory: str | None = None,
) -> bool:
    if rule.tool_name != tool_name:
        return False
    if tool_name == COMMAND_TOOL:
        command = (tool_input or {}).get("command") or target
        return command_matches(rule.pattern or ANY_TARGET, str(command))
    tier = _tier(rule)
    if tier == 2:
        return True
    if not target:
        return False
    normalized = _normalize(target, working_directory)
    if tier == 1:
        directory = _normalize(rule.path[: -len(DIR_WILDCARD_SUFFIX)], working_directory)
        return _under(normalized, directory)
    return normalized == _normalize(rule.path, working_directory)


def match_rules(
    rules: list[PermissionRule],
    tool_name: str,
    target: str,
    tool_input: dict[str, Any] | None = None,
    working_directory: str | None = None,
) -> PermissionRule | None:
    """Return the most specific rule matching the call, or None."""
    candidates = sorted(
        (r for r in rules if r.tool_name == tool_name),
        key=_tier,  # stable: list order breaks ties
    )
    for rule in candidates:
        if rule_matches(rule, tool_name, target, tool_input, working_directory):
            return rule
    return None


def rule_for_request(
    request: PermissionRequest,
    allowed: bool,
    working_directory: str | None = None,
) -> PermissionRule:
    """Turn a remembered decision into a rule.

    Commands are remembered by verb (``npm install foo`` -> ``npm:*``);
    other tools by the exact target they asked about.
    """
    if request.tool_name == COMMAND_TOOL:
        command = request.tool_input.get("command") or request.target
        verb = command_verb(str(command))
        return PermissionRule(
            tool_name=COMMAND_TOOL,
            allowed=allowed,
            pattern=f"{verb}:*" if verb else None,
        )
    path = None
    if request.target:
        path = _normalize(request.target, working_directory)
    return PermissionRule(tool_name=request.tool_name, allowed=allowed, path=path)


# Signature: callback(session_id, rules) -> None
RulesChangedCallback = Callable[[str, list[PermissionRule]], None]
SessionLookup = Callable[[str], Optional[Session]]


class PermissionRuleStore:
    """Reads and edits the rules stored on each Session.

    Persisting the updated session is left to whoever registered
    ``on_rules_changed``.
    """

    def __init__(
        self,
        session_lookup: SessionLookup,
        on_rules_changed: RulesChangedCallback | None = None,
    ) -> None:
        self._lookup = session_lookup
        self._on_rules_changed = on_rules_changed

    def list_rules(self, session_id: str) -> list[PermissionRule]:
        session = self._lookup(session_id)
        return list(session.permission_rules) if session else []

    def match(
        self,
        session_id: str,
        tool_name: str,
        target: str,
        tool_input: dict[str, Any] | None = None,
    ) -> PermissionRule | None:
        session = self._lookup(session_id)
        if session is None:
            return None
        return match_rules(
            session.permission_rules, tool_name, target, tool_input,
            session.working_directory,
        )

    def remember(self, request: PermissionRequest, allowed: bool) -> PermissionRule | None:
        """Store a human decision as a rule for the request's session."""
        session = self._lookup(request.session_id)
        if session is None:
            return None
        rule = rule_for_request(request, allowed, session.working_directory)
        self.add_rule(request.session_id, rule)
        return rule

    def add_rule(self, session_id: str, rule: PermissionRule) -> bool:
        session = self._lookup(session_id)
        if session is None:
            return False
        for existing in session.permission_rules:
            if (
                existing.tool_name == rule.tool_name
                and existing.path == rule.path
                and existing.pattern == rule.pattern
                and existing.allowed == rule.allowed
            ):
                logger.debug("Rule already present for session %s: %s", session_id[:8], rule)
                return True
        session.permission_rules.append(rule)
        logger.info(
            "Added %s rule for session %s: %s %s",
            "allow" if rule.allowed else "deny",
            session_id[:8], rule.tool_name, rule.pattern or rule.path or ANY_TARGET,
        )
        self._notify(session)
        return True

    def remove_rule(self, session_id: str, index: int) -> bool:
        session = self._lookup(session_id)
        if session is None or not 0 <= index < len(session.permission_rules):
            return False
        removed = session.permission_rules.pop(index)
        logger.info(
            "Removed rule for session %s: %s %s",
            session_id[:8], removed.tool_name,
            removed.pattern or removed.path or ANY_TARGET,
        )
        self._notify(session)
        return True

    def _notify(self, session: Session) -> None:
        if self._on_rules_changed is None:
            return
        try:
            self._on_rules_changed(session.id, list(session.permission_rules))
        except Exception:
            logger.exception("on_rules_changed failed for session %s", session.id[:8])
