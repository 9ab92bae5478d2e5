from __future__ import annotations

import asyncio

import aiohttp
import pytest

from convoy.permissions.transports.http import HttpTransport
from convoy.shared.models.permission import PermissionVerdict

KNOWN = {"agent-conv-1": "session-1", "session-1": "session-1"}


def _transport() -> HttpTransport:
    return HttpTransport(KNOWN.get, host="127.0.0.1", port=0)


def _body(session_id: str = "agent-conv-1", **extra) -> dict:
    body = {
        "tool_name": "Bash",
        "tool_input": {"command": "npm test"},
        "context": {"session_id": session_id},
    }
    body.update(extra)
    return body


async def _post(client: aiohttp.ClientSession, url: str, payload) -> tuple[int, dict]:
    async with client.post(url, json=payload) as resp:
        return resp.status, await resp.json()


@pytest.mark.asyncio
async def test_approve_round_trip() -> None:
    transport = _transport()
    await transport.start()
    assert transport.port != 0
    try:
        async with aiohttp.ClientSession() as client:
            post = asyncio.create_task(_post(client, transport.url, _body()))
            request = await asyncio.wait_for(transport.receive(), timeout=5)
            assert request.session_id == "session-1"
            assert request.target == "npm test"
            assert request.transport == "http"
            await transport.respond(request.id, PermissionVerdict(allowed=True))
            status, body = await post
    finally:
        await transport.close()

    assert status == 200
    assert body == {"decision": "approve", "reason": "Approved by user", "alwaysAllow": False}


@pytest.mark.asyncio
async def test_explicit_path_and_remembered_denial() -> None:
    transport = _transport()
    await transport.start()
    try:
        async with aiohttp.ClientSession() as client:
            post = asyncio.create_task(_post(
                client, transport.url, _body("session-1", path="/repo/Makefile"),
            ))
            request = await asyncio.wait_for(transport.receive(), timeout=5)
            assert request.target == "/repo/Makefile"
            await transport.respond(
                request.id, PermissionVerdict(allowed=False, remember=True),
            )
            status, body = await post
    finally:
        await transport.close()

    assert status == 200
    assert body == {"decision": "deny", "reason": "Denied by user", "alwaysAllow": True}


@pytest.mark.asyncio
async def test_unknown_session_is_rejected() -> None:
    transport = _transport()
    await transport.start()
    try:
        async with aiohttp.ClientSession() as client:
            status, body = await _post(client, transport.url, _body("stranger"))
    finally:
        await transport.close()

    assert status == 500
    assert body == {"decision": "deny", "reason": "Session not found", "alwaysAllow": False}


@pytest.mark.asyncio
async def test_malformed_body_is_rejected() -> None:
    transport = _transport()
    await transport.start()
    try:
        async with aiohttp.ClientSession() as client:
            async with client.post(
                transport.url, data="not json",
                headers={"Content-Type": "application/json"},
            ) as resp:
                first = resp.status, await resp.json()
            second = await _post(client, transport.url, {"tool_input": {}})
    finally:
        await transport.close()

    assert first[0] == 400 and first[1]["decision"] == "deny"
    assert second[0] == 400 and second[1]["decision"] == "deny"


@pytest.mark.asyncio
async def test_preflight_gets_cors_headers() -> None:
    transport = _transport()
    await transport.start()
    try:
        async with aiohttp.ClientSession() as client:
            async with client.options(transport.url) as resp:
                status, headers = resp.status, dict(resp.headers)
    finally:
        await transport.close()

    assert status == 200
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert "POST" in headers["Access-Control-Allow-Methods"]


@pytest.mark.asyncio
async def test_router_errors_carry_cors_headers() -> None:
    transport = _transport()
    await transport.start()
    try:
        async with aiohttp.ClientSession() as client:
            async with client.get(transport.url) as wrong_method:
                assert wrong_method.status == 405
                assert wrong_method.headers["Access-Control-Allow-Origin"] == "*"
            missing = transport.url.rsplit("/", 1)[0] + "/nowhere"
            async with client.post(missing, json={}) as wrong_path:
                assert wrong_path.status == 404
                assert wrong_path.headers["Access-Control-Allow-Origin"] == "*"
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_close_denies_held_requests() -> None:
    transport = _transport()
    await transport.start()
    async with aiohttp.ClientSession() as client:
        post = asyncio.create_task(_post(client, transport.url, _body()))
        await asyncio.wait_for(transport.receive(), timeout=5)
        await transport.close()
        status, body = await post
    assert await transport.receive() is None

    assert status == 500
    assert body["decision"] == "deny"
    assert body["reason"] == "Server shutting down"
