from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from convoy.engine.config import SupervisorConfig, fire_event
from convoy.engine.errors import ConfigError
from convoy.engine.pricing import DEFAULT_PRICING, ModelRates, PriceTable
from convoy.engine.yaml_config import load_yaml_config


def test_default_price_table() -> None:
    table = PriceTable()
    assert table.rates_for("claude-opus-4-1") == DEFAULT_PRICING["opus"]
    assert table.rates_for("Claude-Sonnet-4") == DEFAULT_PRICING["sonnet"]
    # Unknown and missing models fall back to the cheapest family
    assert table.rates_for("haiku") == DEFAULT_PRICING["sonnet"]
    assert table.rates_for(None) == DEFAULT_PRICING["sonnet"]


def test_cost_is_rounded_to_four_places() -> None:
    table = PriceTable()
    assert table.cost("sonnet", 1000, 500) == 0.0105
    assert table.cost("sonnet", 1, 1) == 0.0


def test_from_mapping_skips_malformed_entries() -> None:
    table = PriceTable.from_mapping({
        "Haiku": {"input": 0.8, "output": 4},
        "broken": {"input": "x"},
    })
    assert table.families == ["haiku"]
    assert table.rates_for("claude-haiku") == ModelRates(0.8, 4.0)


def test_empty_price_table_is_rejected() -> None:
    with pytest.raises(ValueError):
        PriceTable({})


def test_from_env_reads_convoy_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONVOY_AGENT_COMMAND", "my-agent")
    monkeypatch.setenv("CONVOY_PERMISSION_TRANSPORT", "http")
    monkeypatch.setenv("CONVOY_HTTP_PORT", "9999")
    monkeypatch.setenv("CONVOY_STOP_GRACE", "2.5")
    config = SupervisorConfig.from_env()
    assert config.agent_command == "my-agent"
    assert config.permission_transport == "http"
    assert config.http_port == 9999
    assert config.stop_grace_seconds == 2.5
    assert config.auto_approve_tools == ["TodoWrite"]


def test_unknown_transport_falls_back_to_filesystem() -> None:
    assert SupervisorConfig(permission_transport="carrier-pigeon").permission_transport == "filesystem"


def test_yaml_overrides_defaults(tmp_path: Path) -> None:
    path = tmp_path / "convoy.yaml"
    path.write_text(
        "supervisor:\n"
        "  default_model: opus\n"
        "  permission_timeout_seconds: 5\n"
        "  no_such_key: 1\n"
        "pricing:\n"
        "  haiku: {input: 1, output: 5}\n"
        "permissions:\n"
        "  auto_approve_tools: [TodoWrite, LS]\n"
    )
    config = load_yaml_config(path, base=SupervisorConfig())
    assert config.default_model == "opus"
    assert config.permission_timeout_seconds == 5
    assert config.auto_approve_tools == ["TodoWrite", "LS"]
    assert config.pricing.families == ["haiku"]
    # Untouched keys keep their defaults
    assert config.agent_command == "claude"


def test_yaml_errors_raise_config_error(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("supervisor: [unclosed\n")
    with pytest.raises(ConfigError):
        load_yaml_config(path, base=SupervisorConfig())

    path.write_text("permissions:\n  auto_approve_tools: TodoWrite\n")
    with pytest.raises(ConfigError):
        load_yaml_config(path, base=SupervisorConfig())


def test_missing_yaml_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", base=SupervisorConfig())


def test_fire_event_swallows_callback_failures() -> None:
    seen: list[dict] = []

    async def ok(event: dict) -> None:
        seen.append(event)

    async def broken(event: dict) -> None:
        raise RuntimeError("ui went away")

    async def _run() -> None:
        await fire_event(None, {"event": "stats"})
        await fire_event(ok, {"event": "stats"})
        await fire_event(broken, {"event": "stats"})

    asyncio.run(_run())
    assert seen == [{"event": "stats"}]
