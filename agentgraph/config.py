"""Shared agentgraph configuration utilities.

Centralises reading of ~/.agentgraph/configuration.json so that the engine,
the run service and the CLI share one implementation. Environment variables
override file values.

Example configuration.json::

    {
      "engine": {"max_attempts": 3, "step_timeout": 30, "max_steps": 100},
      "capture": {"inputs": true, "outputs": true},
      "storage": {"path": "~/.agentgraph/runs"},
      "logging": {"level": "INFO", "format": "auto"}
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentgraph.graph.plan import DEFAULT_MAX_STEPS
from agentgraph.graph.retry import RetryPolicy

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

AGENTGRAPH_HOME = Path.home() / ".agentgraph"
AGENTGRAPH_CONFIG_FILE = AGENTGRAPH_HOME / "configuration.json"


def get_config_path() -> Path:
    """Return the configuration file path, honouring AGENTGRAPH_CONFIG."""
    override = os.environ.get("AGENTGRAPH_CONFIG")
    return Path(override).expanduser() if override else AGENTGRAPH_CONFIG_FILE


def get_agentgraph_config() -> dict[str, Any]:
    """Load configuration from disk. Missing or unreadable files yield {}."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _section(name: str) -> dict[str, Any]:
    value = get_agentgraph_config().get(name, {})
    return value if isinstance(value, dict) else {}


def _env(name: str, cast: type, default: Any) -> Any:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if cast is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    try:
        return cast(raw)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_max_attempts() -> int:
    return _env("AGENTGRAPH_MAX_ATTEMPTS", int, _section("engine").get("max_attempts", 3))


def get_base_delay() -> float:
    return _env("AGENTGRAPH_BASE_DELAY", float, _section("engine").get("base_delay", 1.0))


def get_backoff_factor() -> float:
    return _env("AGENTGRAPH_BACKOFF_FACTOR", float, _section("engine").get("backoff_factor", 2.0))


def get_max_delay() -> float:
    return _env("AGENTGRAPH_MAX_DELAY", float, _section("engine").get("max_delay", 30.0))


def get_step_timeout() -> float:
    """Per-attempt timeout in seconds."""
    return _env("AGENTGRAPH_STEP_TIMEOUT", float, _section("engine").get("step_timeout", 30.0))


def get_max_steps() -> int:
    return _env(
        "AGENTGRAPH_MAX_STEPS", int, _section("engine").get("max_steps", DEFAULT_MAX_STEPS)
    )


def get_max_concurrent_runs() -> int:
    return _env(
        "AGENTGRAPH_MAX_CONCURRENT_RUNS", int, _section("engine").get("max_concurrent_runs", 10)
    )


def get_capture_inputs() -> bool:
    return _env("AGENTGRAPH_CAPTURE_INPUTS", bool, _section("capture").get("inputs", True))


def get_capture_outputs() -> bool:
    return _env("AGENTGRAPH_CAPTURE_OUTPUTS", bool, _section("capture").get("outputs", True))


def get_storage_path() -> Path:
    raw = os.environ.get("AGENTGRAPH_STORAGE_PATH") or _section("storage").get("path")
    return Path(raw).expanduser() if raw else AGENTGRAPH_HOME / "runs"


def get_log_level() -> str:
    return os.environ.get("AGENTGRAPH_LOG_LEVEL") or _section("logging").get("level", "INFO")


def get_log_format() -> str:
    return os.environ.get("AGENTGRAPH_LOG_FORMAT") or _section("logging").get("format", "auto")


# ---------------------------------------------------------------------------
# EngineConfig – shared by the executor, run service and CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Execution engine configuration loaded from ~/.agentgraph/configuration.json."""

    max_attempts: int = field(default_factory=get_max_attempts)
    base_delay: float = field(default_factory=get_base_delay)
    backoff_factor: float = field(default_factory=get_backoff_factor)
    max_delay: float = field(default_factory=get_max_delay)
    step_timeout: float | None = field(default_factory=get_step_timeout)
    max_steps: int = field(default_factory=get_max_steps)
    max_concurrent_runs: int = field(default_factory=get_max_concurrent_runs)
    capture_inputs: bool = field(default_factory=get_capture_inputs)
    capture_outputs: bool = field(default_factory=get_capture_outputs)
    storage_path: Path = field(default_factory=get_storage_path)
    log_level: str = field(default_factory=get_log_level)
    log_format: str = field(default_factory=get_log_format)

    def retry_policy(self) -> RetryPolicy:
        """Engine-wide default retry policy."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            backoff_factor=self.backoff_factor,
            max_delay=self.max_delay,
            timeout=self.step_timeout,
        )
