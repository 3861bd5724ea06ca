"""Configuration loaded from .ralph/config.yaml."""

from __future__ import annotations

import logging
from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, Field

from ralph.core.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"


class AgentConfig(BaseModel):
    cli: str = "claude"
    command: list[str] | None = None
    model_id: str | None = None
    timeout_seconds: float = Field(default=1800.0, gt=0)
    transient_exit_codes: list[int] = Field(default_factory=lambda: [75])


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    initial_backoff_seconds: float = Field(default=2.0, ge=0)
    max_backoff_seconds: float = Field(default=60.0, gt=0)


class CircuitConfig(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    timeout_seconds: float = Field(default=60.0, gt=0)


class WatchdogConfig(BaseModel):
    stale_threshold_minutes: float = Field(default=30.0, gt=0)
    max_restarts: int = Field(default=2, ge=0)
    interval_seconds: float = Field(default=60.0, gt=0)
    nudge_command: str | None = None
    restart_command: str | None = None


class RegistryConfig(BaseModel):
    enabled: bool = True
    command: str | None = None
    timeout_seconds: float = Field(default=30.0, gt=0)


class ExecutorConfig(BaseModel):
    max_output_bytes: int = Field(default=1024 * 1024, gt=0)
    max_backoff_seconds: float = Field(default=300.0, gt=0)
    max_workers: int = Field(default=4, ge=1)


class GatesConfig(BaseModel):
    blocked_lanes: list[str] = Field(default_factory=lambda: ["feature"])


class RalphConfig(BaseModel):
    """Top-level configuration. Every section is optional."""

    model_config = pydantic.ConfigDict(extra="forbid")

    agent: AgentConfig = Field(default_factory=AgentConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit: CircuitConfig = Field(default_factory=CircuitConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    gates: GatesConfig = Field(default_factory=GatesConfig)


DEFAULT_CONFIG_YAML = """# ralph configuration for this project

# Implementation agent (claude, codex, gemini, kimi, or any command)
agent:
  cli: claude
  timeout_seconds: 1800
  transient_exit_codes: [75]

# Retry around each agent invocation
retry:
  max_retries: 3
  initial_backoff_seconds: 2
  max_backoff_seconds: 60

# Circuit breaker per agent CLI
circuit:
  failure_threshold: 5
  timeout_seconds: 60

# Stalled-item detection
watchdog:
  stale_threshold_minutes: 30
  max_restarts: 2
  interval_seconds: 60
  nudge_command: null
  # Run after a restart with RALPH_ITEM_ID set, e.g. to re-dispatch the item
  restart_command: null

# Optional external registry CLI (falls back to .ralph/ files)
registry:
  enabled: true
  command: null

executor:
  max_output_bytes: 1048576
  max_backoff_seconds: 300
  max_workers: 4

# Lanes refused while any gate is red
gates:
  blocked_lanes: [feature]
"""


def load_config(root: Path) -> RalphConfig:
    """Load .ralph/config.yaml under root. Missing file yields defaults.

    Raises:
        ConfigError: File is not valid YAML or fails validation
    """
    config_path = Path(root) / ".ralph" / CONFIG_FILENAME
    if not config_path.exists():
        logger.debug(f"No config at {config_path}; using defaults")
        return RalphConfig()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(data).__name__}")

    try:
        return RalphConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
