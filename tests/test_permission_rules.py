from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from convoy.permissions.lifecycle import RequestState, validate_transition
from convoy.permissions.rules import (
    PermissionRuleStore,
    command_matches,
    describe_target,
    format_permission_message,
    match_rules,
    rule_for_request,
)
from convoy.permissions.store import PermissionFileStore
from convoy.shared.models.permission import PermissionRequest, PermissionRule
from convoy.shared.models.session import Session

WD = "/home/dev/project"


def test_describe_target_per_tool() -> None:
    assert describe_target("Bash", {"command": "npm test"}) == "npm test"
    assert describe_target("Read", {"file_path": "/x"}) == "/x"
    assert describe_target("NotebookEdit", {"notebook_path": "/n.ipynb"}) == "/n.ipynb"
    assert describe_target("WebFetch", {"url": "https://example.com"}) == "https://example.com"
    assert describe_target("CustomTool", {"path": "/p"}) == "/p"
    assert describe_target("Read", None) == ""


def test_permission_messages() -> None:
    assert format_permission_message("Read", "/x") == "Read file: /x"
    assert format_permission_message("Bash", "ls") == "Execute command: ls"
    assert format_permission_message("WebFetch", "https://a") == "Fetch URL: https://a"
    assert format_permission_message("Mystery", "thing") == "Mystery: thing"


@pytest.mark.parametrize("pattern,command,expected", [
    ("npm:*", "npm install foo", True),
    ("npm:*", "npx something", False),
    ("git status", "git status --short", True),
    ("git status", "git push", False),
    ("git * --dry-run", "git push --dry-run", True),
    ("git * --dry-run", "git push", False),
    ("*", "anything at all", True),
])
def test_command_matches(pattern: str, command: str, expected: bool) -> None:
    assert command_matches(pattern, command) is expected


def test_any_target_rule_matches_every_path() -> None:
    rules = [PermissionRule(tool_name="Read")]
    assert match_rules(rules, "Read", "/etc/passwd", working_directory=WD) is rules[0]
    assert match_rules(rules, "Write", "/etc/passwd", working_directory=WD) is None


def test_working_directory_wildcard() -> None:
    rules = [PermissionRule(tool_name="Edit", path=f"{WD}/**")]
    assert match_rules(rules, "Edit", f"{WD}/src/app.py", working_directory=WD)
    assert match_rules(rules, "Edit", "src/app.py", working_directory=WD)
    assert match_rules(rules, "Edit", "/home/dev/project-other/app.py", working_directory=WD) is None
    assert match_rules(rules, "Edit", f"{WD}/../secrets.txt", working_directory=WD) is None


def test_most_specific_rule_wins() -> None:
    deny_exact = PermissionRule(tool_name="Write", allowed=False, path=f"{WD}/.env")
    allow_dir = PermissionRule(tool_name="Write", allowed=True, path=f"{WD}/**")
    allow_any = PermissionRule(tool_name="Write", allowed=True)
    rules = [allow_any, allow_dir, deny_exact]
    assert match_rules(rules, "Write", f"{WD}/.env", working_directory=WD) is deny_exact
    assert match_rules(rules, "Write", f"{WD}/main.py", working_directory=WD) is allow_dir
    assert match_rules(rules, "Write", "/tmp/x", working_directory=WD) is allow_any


def test_bash_pattern_rules_before_any_command_rules() -> None:
    deny_rm = PermissionRule(tool_name="Bash", allowed=False, pattern="rm:*")
    allow_all = PermissionRule(tool_name="Bash", allowed=True)
    rules = [allow_all, deny_rm]
    assert match_rules(rules, "Bash", "rm -rf build", {"command": "rm -rf build"}) is deny_rm
    assert match_rules(rules, "Bash", "ls", {"command": "ls"}) is allow_all


def test_rule_for_request() -> None:
    bash = PermissionRequest(
        session_id="s", tool_name="Bash", target="npm install foo",
        tool_input={"command": "npm install foo"},
    )
    rule = rule_for_request(bash, allowed=True)
    assert (rule.tool_name, rule.pattern, rule.path) == ("Bash", "npm:*", None)

    read = PermissionRequest(session_id="s", tool_name="Read", target="src/a.py")
    rule = rule_for_request(read, allowed=False, working_directory=WD)
    assert (rule.allowed, rule.path) == (False, f"{WD}/src/a.py")


def test_rule_store_add_remove_and_notify() -> None:
    session = Session(working_directory=WD)
    changed = MagicMock()
    store = PermissionRuleStore(
        lambda sid: session if sid == session.id else None, changed,
    )
    rule = PermissionRule(tool_name="Read")
    assert store.add_rule(session.id, rule) is True
    # Same rule twice is stored once
    assert store.add_rule(session.id, PermissionRule(tool_name="Read")) is True
    assert store.list_rules(session.id) == [rule]
    changed.assert_called_once_with(session.id, [rule])

    assert store.match(session.id, "Read", "/any") is rule
    assert store.remove_rule(session.id, 5) is False
    assert store.remove_rule(session.id, 0) is True
    assert store.list_rules(session.id) == []

    assert store.add_rule("missing", rule) is False
    assert store.list_rules("missing") == []


def test_rule_store_survives_broken_listener() -> None:
    session = Session(working_directory=WD)
    store = PermissionRuleStore(
        lambda sid: session, MagicMock(side_effect=RuntimeError("disk full")),
    )
    assert store.add_rule(session.id, PermissionRule(tool_name="Read")) is True
    assert len(session.permission_rules) == 1


def test_permissions_file_mirrors_allow_rules(tmp_path: Path) -> None:
    store = PermissionFileStore(tmp_path)
    store.save_rules([
        PermissionRule(tool_name="Bash", pattern="npm:*"),
        PermissionRule(tool_name="Bash", pattern="git status"),
        PermissionRule(tool_name="Read"),
        PermissionRule(tool_name="Edit", path=f"{WD}/**"),
        PermissionRule(tool_name="Write", allowed=False),
    ])
    data = json.loads((tmp_path / "permissions.json").read_text())
    assert data == {"alwaysAllow": {
        "Bash": ["npm:*", "git status"],
        "Read": True,
        "Edit": [f"{WD}/**"],
    }}

    assert store.is_allowed("Bash", {"command": "npm run build"})
    assert store.is_allowed("Bash", {"command": "git status -s"})
    assert not store.is_allowed("Bash", {"command": "rm -rf /"})
    assert store.is_allowed("Read", {"file_path": "/anything"})
    assert store.is_allowed("Edit", {"file_path": f"{WD}/a.py"})
    assert not store.is_allowed("Edit", {"file_path": "/elsewhere/a.py"})
    assert not store.is_allowed("Write", {"file_path": f"{WD}/a.py"})


def test_permissions_file_never_allows_what_a_deny_rule_blocks(tmp_path: Path) -> None:
    rules = [
        PermissionRule(tool_name="Read"),
        PermissionRule(tool_name="Read", allowed=False, path="/etc/passwd"),
        PermissionRule(tool_name="Bash", pattern="*"),
        PermissionRule(tool_name="Bash", allowed=False, pattern="rm:*"),
        PermissionRule(tool_name="Glob"),
    ]
    calls = [
        ("Read", {"file_path": "/etc/passwd"}),
        ("Bash", {"command": "rm -rf /"}),
    ]
    for tool_name, tool_input in calls:
        target = describe_target(tool_name, tool_input)
        rule = match_rules(rules, tool_name, target, tool_input, working_directory=WD)
        assert rule is not None and rule.allowed is False

    store = PermissionFileStore(tmp_path)
    store.save_rules(rules)
    assert store.load() == {"Glob": True}
    for tool_name, tool_input in calls:
        assert not store.is_allowed(tool_name, tool_input)


def test_unreadable_permissions_file_allows_nothing(tmp_path: Path) -> None:
    (tmp_path / "permissions.json").write_text("{not json")
    assert PermissionFileStore(tmp_path).load() == {}
    assert not PermissionFileStore(tmp_path).is_allowed("Read", {"file_path": "/x"})


def test_request_lifecycle_transitions() -> None:
    validate_transition(RequestState.RECEIVED, RequestState.AWAITING_HUMAN)
    validate_transition(RequestState.AWAITING_HUMAN, RequestState.EXPIRED)
    validate_transition(RequestState.EXPIRED, RequestState.CLEANED_UP)
    with pytest.raises(ValueError):
        validate_transition(RequestState.AUTO_RESOLVED, RequestState.AWAITING_HUMAN)
    with pytest.raises(ValueError):
        validate_transition(RequestState.CLEANED_UP, RequestState.RESOLVED)
