"""
Configuration loading.

The broker is configured from a YAML file:

    mcpServers:
      echo:
        command: python
        args: ["-m", "llmo.providers.echo"]
        env: {}

    timeouts:
      mcpResponse: 30000       # ms per JSON-RPC call
      gracefulShutdown: 5000   # ms before providers are killed
      llmResponse: 120000      # ms per model round trip

    orchestration:
      maxIterations: 10
      maxParallelTools: 1

Timeouts are written in milliseconds and exposed in seconds.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from llmo.errors import ConfigError

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_PORT = 12350
DEFAULT_HOST = "0.0.0.0"

DEFAULT_MCP_RESPONSE_MS = 30_000
DEFAULT_GRACEFUL_SHUTDOWN_MS = 5_000
DEFAULT_LLM_RESPONSE_MS = 120_000
DEFAULT_MAX_ITERATIONS = 10


@dataclass(frozen=True)
class ProviderConfig:
    """Launch description for one capability provider process."""
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(frozen=True)
class Timeouts:
    mcp_response: float = DEFAULT_MCP_RESPONSE_MS / 1000
    graceful_shutdown: float = DEFAULT_GRACEFUL_SHUTDOWN_MS / 1000
    llm_response: float = DEFAULT_LLM_RESPONSE_MS / 1000


@dataclass(frozen=True)
class OrchestrationConfig:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_parallel_tools: int = 1


@dataclass(frozen=True)
class LLMOConfig:
    providers: tuple[ProviderConfig, ...] = ()
    timeouts: Timeouts = Timeouts()
    orchestration: OrchestrationConfig = OrchestrationConfig()


def resolve_config_path(path: str | os.PathLike | None = None) -> Path:
    """Pick the config path: explicit argument, then CONFIG_PATH, then ./config.yaml."""
    return Path(path or os.environ.get("CONFIG_PATH") or DEFAULT_CONFIG_PATH)


def load_config(path: str | os.PathLike | None = None) -> LLMOConfig:
    """Read and validate a YAML config file."""
    config_path = resolve_config_path(path)
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    return parse_config(raw or {})


def parse_config(raw: Any) -> LLMOConfig:
    """Build an LLMOConfig from an already-parsed mapping."""
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")

    servers = raw.get("mcpServers") or {}
    if not isinstance(servers, dict):
        raise ConfigError("'mcpServers' must be a mapping of name -> server definition")

    providers = tuple(_parse_provider(name, spec) for name, spec in servers.items())

    timeouts_raw = raw.get("timeouts") or {}
    orchestration_raw = raw.get("orchestration") or {}
    if not isinstance(timeouts_raw, dict) or not isinstance(orchestration_raw, dict):
        raise ConfigError("'timeouts' and 'orchestration' must be mappings")

    timeouts = Timeouts(
        mcp_response=_millis(timeouts_raw, "mcpResponse", DEFAULT_MCP_RESPONSE_MS),
        graceful_shutdown=_millis(timeouts_raw, "gracefulShutdown", DEFAULT_GRACEFUL_SHUTDOWN_MS),
        llm_response=_millis(timeouts_raw, "llmResponse", DEFAULT_LLM_RESPONSE_MS),
    )
    orchestration = OrchestrationConfig(
        max_iterations=_positive_int(orchestration_raw, "maxIterations", DEFAULT_MAX_ITERATIONS),
        max_parallel_tools=_positive_int(orchestration_raw, "maxParallelTools", 1),
    )
    return LLMOConfig(providers=providers, timeouts=timeouts, orchestration=orchestration)


def _parse_provider(name: Any, spec: Any) -> ProviderConfig:
    if not isinstance(name, str) or not name:
        raise ConfigError(f"Invalid MCP server name: {name!r}")
    if not isinstance(spec, dict):
        raise ConfigError(f"MCP server '{name}' must be a mapping")

    command = spec.get("command")
    if not isinstance(command, str) or not command:
        raise ConfigError(f"MCP server '{name}' needs a 'command' string")

    args = spec.get("args") or []
    if not isinstance(args, list):
        raise ConfigError(f"MCP server '{name}': 'args' must be a list")

    env = spec.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"MCP server '{name}': 'env' must be a mapping")

    return ProviderConfig(
        name=name,
        command=command,
        args=tuple(str(a) for a in args),
        env=MappingProxyType({str(k): str(v) for k, v in env.items()}),
    )


def _millis(section: dict, key: str, default: int) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"timeouts.{key} must be a positive number of milliseconds")
    return value / 1000


def _positive_int(section: dict, key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"orchestration.{key} must be a positive integer")
    return value
