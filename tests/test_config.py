"""Tests for configuration file loading and environment overrides."""

import json

import pytest

from agentgraph.config import (
    EngineConfig,
    get_agentgraph_config,
    get_max_attempts,
    get_storage_path,
)

ENV_VARS = (
    "AGENTGRAPH_MAX_ATTEMPTS",
    "AGENTGRAPH_STEP_TIMEOUT",
    "AGENTGRAPH_MAX_STEPS",
    "AGENTGRAPH_CAPTURE_OUTPUTS",
    "AGENTGRAPH_STORAGE_PATH",
    "AGENTGRAPH_LOG_LEVEL",
)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "configuration.json"
    monkeypatch.setenv("AGENTGRAPH_CONFIG", str(path))
    return path


def test_missing_file_gives_defaults(config_file):
    assert get_agentgraph_config() == {}
    config = EngineConfig()
    assert config.max_attempts == 3
    assert config.step_timeout == 30.0
    assert config.capture_outputs is True


def test_unreadable_file_gives_defaults(config_file):
    config_file.write_text("{broken", encoding="utf-8")
    assert get_agentgraph_config() == {}
    assert get_max_attempts() == 3


def test_file_values(config_file, tmp_path):
    config_file.write_text(
        json.dumps(
            {
                "engine": {"max_attempts": 5, "step_timeout": 2.5, "max_steps": 40},
                "capture": {"outputs": False},
                "storage": {"path": str(tmp_path / "runs")},
                "logging": {"level": "DEBUG"},
            }
        ),
        encoding="utf-8",
    )

    config = EngineConfig()

    assert config.max_attempts == 5
    assert config.step_timeout == 2.5
    assert config.max_steps == 40
    assert config.capture_outputs is False
    assert config.storage_path == tmp_path / "runs"
    assert config.log_level == "DEBUG"


def test_environment_overrides_file(config_file, monkeypatch, tmp_path):
    config_file.write_text(json.dumps({"engine": {"max_attempts": 5}}), encoding="utf-8")
    monkeypatch.setenv("AGENTGRAPH_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("AGENTGRAPH_CAPTURE_OUTPUTS", "no")
    monkeypatch.setenv("AGENTGRAPH_STORAGE_PATH", str(tmp_path / "elsewhere"))

    assert get_max_attempts() == 7
    assert EngineConfig().capture_outputs is False
    assert get_storage_path() == tmp_path / "elsewhere"


def test_bad_environment_value_falls_back(config_file, monkeypatch):
    monkeypatch.setenv("AGENTGRAPH_MAX_ATTEMPTS", "many")
    assert get_max_attempts() == 3


def test_retry_policy(config_file):
    config = EngineConfig(max_attempts=4, base_delay=0.5, step_timeout=10.0)

    policy = config.retry_policy()

    assert policy.max_attempts == 4
    assert policy.base_delay == 0.5
    assert policy.timeout == 10.0
