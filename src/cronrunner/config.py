"""Configuration loading and management for cron-runner."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path

import yaml
from loguru import logger

from cronrunner.models import CronRunnerConfig

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".cron-runner"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

CONFIG_ENV_VAR = "CRON_RUNNER_CONFIG"
DEBUG_ENV_VAR = "CRON_RUNNER_DEBUG"

# Per-runner state files, relative to the runner path
STATE_PID_FILE = "cron-runner.pid"
STATE_HOST_FILE = "cron-runner.host"
STATE_STATUS_FILE = "cron-runner.status"


class CronRunnerError(Exception):
    """Base class for errors that end a supervisor invocation."""

    # Whether an unattended run records this error in the sentinel file
    trips_breaker = True


class ConfigurationError(CronRunnerError):
    """Bad input or a missing prerequisite. Never retried."""

    pass


class ModeError(ConfigurationError):
    """Action not permitted in the current (interactive/unattended) mode."""

    pass


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)

    return os.path.expandvars(value)


def expand_path(path: str | Path | None) -> Path | None:
    """Expand a path with ~ and environment variables."""
    if path is None:
        return None
    expanded = expand_env_vars(os.path.expanduser(str(path)))
    return Path(expanded)


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid config file {path}: expected a mapping")

    return data


def get_config_path(config_path: Path | None = None) -> Path:
    """Resolve the config file: explicit path, then env var, then default."""
    if config_path is not None:
        return config_path
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return expand_path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> CronRunnerConfig:
    """Load the cron-runner configuration."""
    path = get_config_path(config_path)

    if not path.exists():
        logger.debug(f"Config file not found at {path}, using defaults")
        return CronRunnerConfig()

    data = load_yaml_file(path)

    for key in ("log_dir", "registry_file", "sentinel_file"):
        if data.get(key):
            data[key] = expand_path(data[key])

    try:
        config = CronRunnerConfig.model_validate(data)
    except Exception as e:
        raise ConfigurationError(f"Invalid config file {path}: {e}") from e

    logger.debug(f"Loaded config from {path}")
    return config


def ensure_log_dir(config: CronRunnerConfig) -> Path:
    """Ensure the shared log directory exists."""
    config.log_dir.mkdir(parents=True, exist_ok=True)
    return config.log_dir


def is_interactive() -> bool:
    """Whether we were invoked from a terminal rather than by cron."""
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False


def debug_enabled() -> bool:
    """Debug override allowing interactive use of the cron-only start mode."""
    return os.environ.get(DEBUG_ENV_VAR, "").strip().lower() in ("1", "true", "yes", "on")
