"""Tests for YAML configuration loading."""

import pytest

from llmo.config import LLMOConfig, load_config, parse_config, resolve_config_path
from llmo.errors import ConfigError


CONFIG = """
mcpServers:
  echo:
    command: python
    args: ["-m", "llmo.providers.echo"]
    env:
      LEVEL: 3
  files:
    command: npx
timeouts:
  mcpResponse: 1500
orchestration:
  maxIterations: 4
"""


def test_load_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)

    config = load_config(path)

    echo, files = config.providers
    assert echo.name == "echo"
    assert echo.argv == ["python", "-m", "llmo.providers.echo"]
    assert dict(echo.env) == {"LEVEL": "3"}
    assert files.args == ()
    assert config.timeouts.mcp_response == 1.5
    assert config.timeouts.graceful_shutdown == 5.0
    assert config.timeouts.llm_response == 120.0
    assert config.orchestration.max_iterations == 4
    assert config.orchestration.max_parallel_tools == 1


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(path) == LLMOConfig()


def test_config_path_resolution(monkeypatch):
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    assert str(resolve_config_path()) == "config.yaml"

    monkeypatch.setenv("CONFIG_PATH", "/etc/llmo.yaml")
    assert str(resolve_config_path()) == "/etc/llmo.yaml"
    assert str(resolve_config_path("mine.yaml")) == "mine.yaml"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("mcpServers: [unclosed")
    with pytest.raises(ConfigError) as excinfo:
        load_config(path)
    assert excinfo.value.code == "CONFIG_ERROR"


@pytest.mark.parametrize("raw", [
    ["not", "a", "mapping"],
    {"mcpServers": ["echo"]},
    {"mcpServers": {"echo": {"args": []}}},
    {"mcpServers": {"echo": {"command": "python", "args": "-m echo"}}},
    {"mcpServers": {"echo": {"command": "python", "env": ["A=1"]}}},
    {"timeouts": {"mcpResponse": -5}},
    {"timeouts": {"mcpResponse": True}},
    {"orchestration": {"maxIterations": 0}},
    {"orchestration": {"maxParallelTools": 1.5}},
])
def test_invalid_shapes_raise_config_error(raw):
    with pytest.raises(ConfigError):
        parse_config(raw)
