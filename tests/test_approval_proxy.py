from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from convoy.permissions import approval_proxy
from convoy.permissions.approval_proxy import (
    PROMPT_TOOL_ID,
    build_decision,
    check_saved_permission,
    request_via_files,
    write_proxy_config,
)
from convoy.permissions.store import PermissionFileStore
from convoy.shared.models.permission import PermissionRule


def test_prompt_tool_id() -> None:
    assert PROMPT_TOOL_ID == "mcp__convoy-permissions__approval_prompt"


def test_build_decision() -> None:
    allow = json.loads(build_decision(True, {"command": "ls"}, "Bash"))
    assert allow == {"behavior": "allow", "updatedInput": {"command": "ls"}}
    deny = json.loads(build_decision(False, None, "Write"))
    assert deny == {"behavior": "deny", "message": "Permission to use Write was denied"}


def test_saved_permission_short_circuits(tmp_path: Path) -> None:
    PermissionFileStore(tmp_path).save({"Bash": ["npm:*"], "Read": True})
    assert check_saved_permission(tmp_path, "Bash", {"command": "npm ci"})
    assert check_saved_permission(tmp_path, "Read", {"file_path": "/x"})
    assert not check_saved_permission(tmp_path, "Bash", {"command": "curl evil"})
    assert not check_saved_permission(tmp_path / "missing", "Read", {"file_path": "/x"})


def test_saved_permission_defers_tools_with_deny_rules(tmp_path: Path) -> None:
    PermissionFileStore(tmp_path).save_rules([
        PermissionRule(tool_name="Read"),
        PermissionRule(tool_name="Read", allowed=False, path="/etc/passwd"),
        PermissionRule(tool_name="Bash", pattern="npm:*"),
    ])
    assert not check_saved_permission(tmp_path, "Read", {"file_path": "/etc/passwd"})
    assert not check_saved_permission(tmp_path, "Read", {"file_path": "/tmp/notes"})
    assert check_saved_permission(tmp_path, "Bash", {"command": "npm test"})


def test_request_times_out_and_cleans_up(tmp_path: Path) -> None:
    approved = asyncio.run(request_via_files(
        tmp_path, "Read", {"file_path": "/x"}, timeout=0.2, poll_interval=0.02,
    ))
    assert approved is False
    assert list(tmp_path.iterdir()) == []


def test_request_reads_response(tmp_path: Path) -> None:
    async def _answer() -> None:
        for _ in range(200):
            requests = list(tmp_path.glob("*.request"))
            if requests:
                data = json.loads(requests[0].read_text())
                assert data["tool"] == "Bash"
                assert data["input"] == {"command": "make"}
                (tmp_path / f"{data['id']}.response").write_text(
                    json.dumps({"id": data["id"], "approved": True}),
                )
                return
            await asyncio.sleep(0.01)
        raise AssertionError("no request file written")

    async def _run() -> bool:
        answer = asyncio.create_task(_answer())
        approved = await request_via_files(
            tmp_path, "Bash", {"command": "make"}, timeout=5, poll_interval=0.02,
        )
        await answer
        return approved

    assert asyncio.run(_run()) is True
    assert list(tmp_path.iterdir()) == []


def test_prompt_tool_uses_saved_permissions(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(approval_proxy, "_permissions_dir", tmp_path)
    monkeypatch.setattr(approval_proxy, "_timeout_seconds", 0.1)
    PermissionFileStore(tmp_path).save({"Read": True})

    allowed = json.loads(asyncio.run(
        approval_proxy.approval_prompt("Read", {"file_path": "/x"}, "tu-1"),
    ))
    assert allowed["behavior"] == "allow"

    denied = json.loads(asyncio.run(
        approval_proxy.approval_prompt("Write", {"file_path": "/x"}, "tu-2"),
    ))
    assert denied["behavior"] == "deny"


def test_prompt_tool_without_directory_denies(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(approval_proxy, "_permissions_dir", None)
    result = json.loads(asyncio.run(approval_proxy.approval_prompt("Read", {})))
    assert result["behavior"] == "deny"


def test_write_proxy_config(tmp_path: Path) -> None:
    path = write_proxy_config(tmp_path / "s1.mcp.json", tmp_path / "s1", timeout=30)
    config = json.loads(path.read_text())
    server = config["mcpServers"]["convoy-permissions"]
    assert server["command"] == sys.executable
    assert server["args"] == [
        "-m", "convoy.permissions.approval_proxy",
        "--dir", str(tmp_path / "s1"),
        "--timeout", "30",
    ]
    assert server["env"] == {"CONVOY_PERMISSIONS_DIR": str(tmp_path / "s1")}
