"""The ``permissions.json`` file kept in each session's drop-box directory.

The approval proxy reads it to answer saved permissions without a round
trip through the supervisor. Format::

    {"alwaysAllow": {"Bash": ["npm:*", "git status"], "Read": true}}

``true`` allows every call of the tool; a list allows calls whose command
(Bash) or target (other tools) matches one of its patterns.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from convoy.permissions.rules import (
    ANY_TARGET,
    COMMAND_TOOL,
    DIR_WILDCARD_SUFFIX,
    command_matches,
    describe_target,
)
from convoy.shared.models.permission import PermissionRule

logger = logging.getLogger(__name__)

FILENAME = "permissions.json"


class PermissionFileStore:
    """Load and save the always-allow table of one drop-box directory."""

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory)
        self._path = self._dir / FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Return the ``alwaysAllow`` mapping (empty when absent or unreadable)."""
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", self._path)
            return {}
        allow = data.get("alwaysAllow") if isinstance(data, dict) else None
        return allow if isinstance(allow, dict) else {}

    def save_rules(self, rules: list[PermissionRule]) -> None:
        """Rewrite the file from a session's allow rules.

        Deny rules are not mirrored. A tool with any deny rule is left out
        entirely so its calls always reach the supervisor, which applies
        the rules in precedence order.
        """
        self.save(self.always_allow_from_rules(rules))

    def save(self, always_allow: dict[str, Any]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps({"alwaysAllow": always_allow}, indent=2) + "\n")
            os.replace(tmp, self._path)
        except OSError:
            logger.warning("Failed to write %s", self._path)

    def is_allowed(self, tool_name: str, tool_input: dict[str, Any] | None) -> bool:
        entry = self.load().get(tool_name)
        if entry is True:
            return True
        if not isinstance(entry, list):
            return False
        if tool_name == COMMAND_TOOL:
            command = str((tool_input or {}).get("command") or "")
            return bool(command) and any(
                command_matches(str(p), command) for p in entry
            )
        target = describe_target(tool_name, tool_input)
        return bool(target) and any(_target_matches(str(p), target) for p in entry)

    @staticmethod
    def always_allow_from_rules(rules: list[PermissionRule]) -> dict[str, Any]:
        denied = {rule.tool_name for rule in rules if not rule.allowed}
        table: dict[str, Any] = {}
        for rule in rules:
            if not rule.allowed or rule.tool_name in denied:
                continue
            value = rule.pattern if rule.tool_name == COMMAND_TOOL else rule.path
            if table.get(rule.tool_name) is True:
                continue
            if not value or value == ANY_TARGET:
                table[rule.tool_name] = True
                continue
            patterns = table.setdefault(rule.tool_name, [])
            if value not in patterns:
                patterns.append(value)
        return table


def _target_matches(pattern: str, target: str) -> bool:
    if pattern.endswith(DIR_WILDCARD_SUFFIX):
        directory = pattern[: -len(DIR_WILDCARD_SUFFIX)].rstrip("/")
        return target == directory or target.startswith(directory + "/")
    return target == pattern
