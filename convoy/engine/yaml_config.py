"""YAML configuration loader.

Loads a single YAML file on top of the CONVOY_* environment defaults.
Keys missing from the file keep their environment/default values.

Example YAML:
    supervisor:
      agent_command: claude
      default_model: sonnet
      permission_transport: http
      http_port: 8765
      permission_timeout_seconds: 45
      stop_grace_seconds: 1.0

    pricing:
      opus:
        input: 15
        output: 75
      sonnet:
        input: 3
        output: 15
      haiku:
        input: 0.8
        output: 4

    permissions:
      auto_approve_tools: [TodoWrite]
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import SupervisorConfig
from .errors import ConfigError
from .pricing import PriceTable

logger = logging.getLogger(__name__)

# Supervisor keys accepted from the YAML ``supervisor:`` section
_SUPERVISOR_KEYS = {
    f.name for f in dataclasses.fields(SupervisorConfig)
    if f.name not in {"pricing", "event_callback", "auto_approve_tools"}
}


def load_yaml_config(
    path: str | Path,
    base: SupervisorConfig | None = None,
) -> SupervisorConfig:
    """Load and parse a YAML config file into a SupervisorConfig.

    *base* supplies the values for keys the file does not set; it
    defaults to ``SupervisorConfig.from_env()``.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base if base is not None else SupervisorConfig.from_env()
    overrides: dict[str, Any] = {}

    supervisor_raw = raw.get("supervisor") or {}
    if not isinstance(supervisor_raw, dict):
        raise ConfigError("supervisor: must be a mapping")
    for key, value in supervisor_raw.items():
        if key not in _SUPERVISOR_KEYS:
            logger.warning("load_yaml_config: ignoring unknown supervisor key %r", key)
            continue
        overrides[key] = value

    permissions_raw = raw.get("permissions") or {}
    if not isinstance(permissions_raw, dict):
        raise ConfigError("permissions: must be a mapping")
    if "auto_approve_tools" in permissions_raw:
        tools = permissions_raw["auto_approve_tools"] or []
        if not isinstance(tools, list):
            raise ConfigError("permissions.auto_approve_tools must be a list")
        overrides["auto_approve_tools"] = [str(t) for t in tools]

    if "pricing" in raw:
        overrides["pricing"] = PriceTable.from_mapping(raw.get("pricing"))

    try:
        return dataclasses.replace(config, **overrides)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid supervisor settings in {path}: {exc}") from exc
