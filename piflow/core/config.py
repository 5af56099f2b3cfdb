"""Engine configuration loaded from .piflow/config.yaml.

Environment variables override the file:
    PIFLOW_DB_PATH          database location
    PIFLOW_CONNECT_TIMEOUT  SSH connect timeout (seconds)
    PIFLOW_COMMAND_TIMEOUT  per-command timeout (seconds)
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path

import yaml

from piflow.remote.session import SessionConfig

logger = logging.getLogger(__name__)

CONFIG_DIR = ".piflow"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """# piflow configuration for this project
engine:
  # SQLite database holding flows, devices and run results
  db_path: .piflow/state.db

  # SSH timeouts (seconds)
  connect_timeout: 10
  command_timeout: 60

  # Command output kept per stream
  max_output_bytes: 1048576

  # Structural limits for a single run
  max_walk_depth: 256
  max_loop_iterations: 1000

  # Path to an OpenSSH known_hosts file; leave empty to skip host key checks
  known_hosts:
"""


class ConfigError(Exception):
    """Invalid configuration file or override."""

    pass


@dataclass
class EngineConfig:
    """Settings shared by the CLI, the HTTP server and the engine."""

    db_path: Path = Path(".piflow/state.db")
    connect_timeout: float = 10.0
    command_timeout: float = 60.0
    max_output_bytes: int = 1024 * 1024
    max_walk_depth: int = 256
    max_loop_iterations: int = 1000
    known_hosts: str | None = None

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            connect_timeout=self.connect_timeout,
            command_timeout=self.command_timeout,
            max_output_bytes=self.max_output_bytes,
            known_hosts=self.known_hosts,
        )


_ENV_OVERRIDES = {
    "PIFLOW_DB_PATH": "db_path",
    "PIFLOW_CONNECT_TIMEOUT": "connect_timeout",
    "PIFLOW_COMMAND_TIMEOUT": "command_timeout",
}


def _coerce(name: str, value: object) -> object:
    if name == "db_path":
        return Path(str(value))
    if name == "known_hosts":
        return str(value) if value else None
    try:
        if name in ("max_output_bytes", "max_walk_depth", "max_loop_iterations"):
            number = int(value)
        else:
            number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return number


def load_config(repo_path: Path | None = None) -> EngineConfig:
    """Load engine settings for a project directory.

    Missing file or missing keys fall back to defaults. A relative db_path is
    resolved against repo_path.
    """
    repo_path = repo_path or Path.cwd()
    config_path = repo_path / CONFIG_DIR / CONFIG_FILE
    values: dict[str, object] = {}

    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path}: expected a mapping")
        section = data.get("engine") or {}
        if not isinstance(section, dict):
            raise ConfigError(f"{config_path}: 'engine' must be a mapping")
        known = {f.name for f in fields(EngineConfig)}
        for key, value in section.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: engine.{key}")
                continue
            if value is None and key != "known_hosts":
                continue
            values[key] = _coerce(key, value)

    for env_name, key in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw:
            values[key] = _coerce(key, raw)

    config = EngineConfig(**values)
    if not config.db_path.is_absolute():
        config.db_path = repo_path / config.db_path
    return config
