"""YAML configuration loader.

Loads a single YAML file describing the engine settings, the MCP
servers to launch, and hook sets. When no YAML is given, env vars work
exactly as before.

Example YAML:
    engine:
      provider: anthropic
      model: claude-sonnet-4-5
      max_iterations: 50
      tool_timeout_seconds: 120
      hil_enabled: true

    servers:
      filesystem:
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "."]
      robot:
        command: python
        args: ["-m", "robot_server"]
        env:
          ROBOT_TOKEN: "${ROBOT_TOKEN}"
        cwd: /opt/robot

    hooks:
      - after: robot__move
        run: "@tool:robot__get_state()"
      - before: robot__grasp
        run: "@tool-exec:robot__calibrate(force=True)"

    ablation_hooks:
      - after: robot__report
        when: {status: done}
        run: "@complete-phase"
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .models import Hook

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    """Launch spec for one stdio MCP server."""
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None
    enabled: bool = True


@dataclass
class ConduitConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    servers: dict[str, ServerConfig] = field(default_factory=dict)
    hooks: list[Hook] = field(default_factory=list)
    ablation_hooks: list[Hook] = field(default_factory=list)


def _expand_env(env: dict[str, Any] | None) -> dict[str, str] | None:
    if not env:
        return None
    return {str(k): os.path.expandvars(str(v)) for k, v in env.items()}


def _parse_servers(raw: dict[str, Any]) -> dict[str, ServerConfig]:
    servers: dict[str, ServerConfig] = {}
    for name, spec in (raw or {}).items():
        if not isinstance(spec, dict) or not spec.get("command"):
            logger.warning("Server %s has no command; skipping", name)
            continue
        if "__" in str(name):
            logger.warning(
                "Server name %s contains '__' which breaks tool namespacing; skipping",
                name,
            )
            continue
        servers[str(name)] = ServerConfig(
            name=str(name),
            command=str(spec["command"]),
            args=[str(a) for a in spec.get("args") or []],
            env=_expand_env(spec.get("env")),
            cwd=spec.get("cwd"),
            enabled=spec.get("enabled", True) is not False,
        )
    return servers


def parse_hooks(raw: list[Any] | None, section: str = "hooks") -> list[Hook]:
    """Build Hook objects, skipping malformed entries with a warning."""
    hooks: list[Hook] = []
    for index, item in enumerate(raw or []):
        if not isinstance(item, dict):
            logger.warning("%s[%d]: expected a mapping, got %r", section, index, item)
            continue
        try:
            hooks.append(Hook.from_dict(item))
        except ValueError as exc:
            logger.warning("%s[%d]: %s", section, index, exc)
    return hooks


def load_yaml_config(
    path: str | Path,
    engine: EngineConfig | None = None,
) -> ConduitConfig:
    """Load and parse a YAML config file.

    Engine settings start from ``engine`` (default
    ``EngineConfig.from_env()``) and the YAML ``engine:`` section is
    applied on top.
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
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    if engine is None:
        engine = EngineConfig.from_env()
    engine.apply_overrides(raw.get("engine") or {})

    config = ConduitConfig(
        engine=engine,
        servers=_parse_servers(raw.get("servers") or {}),
        hooks=parse_hooks(raw.get("hooks"), "hooks"),
        ablation_hooks=parse_hooks(raw.get("ablation_hooks"), "ablation_hooks"),
    )
    logger.info(
        "load_yaml_config: servers=%d hooks=%d ablation_hooks=%d",
        len(config.servers), len(config.hooks), len(config.ablation_hooks),
    )
    return config
