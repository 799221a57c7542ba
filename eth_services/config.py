"""
Handles loading configuration from config.yaml and exposing it as a
Settings object that is passed explicitly to the engine components.
"""
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

HOME_ENV_VAR = 'ETH_SERVICES_HOME'
DEFAULT_HOME = Path.home() / '.eth-services'


def get_home_dir() -> Path:
    """Tool home directory: $ETH_SERVICES_HOME or ~/.eth-services"""
    env_home = os.environ.get(HOME_ENV_VAR)
    if env_home:
        return Path(env_home).expanduser()
    return DEFAULT_HOME


def get_config_path() -> Path:
    """
    Find config.yaml in multiple locations with priority:
    1. Current working directory (where user runs the command)
    2. ETH_SERVICES_HOME environment variable
    3. ~/.eth-services (default home)
    """
    current_dir_config = Path.cwd() / 'config.yaml'
    if current_dir_config.exists():
        return current_dir_config

    env_home = os.environ.get(HOME_ENV_VAR)
    if env_home:
        env_config = Path(env_home).expanduser() / 'config.yaml'
        if env_config.exists():
            return env_config

    return DEFAULT_HOME / 'config.yaml'


@dataclass
class Settings:
    """Runtime settings for the lifecycle engine"""
    home: Path = field(default_factory=get_home_dir)
    services_root: Path = field(default_factory=Path.home)
    registry_file: Optional[Path] = None
    docker_binary: str = 'docker'
    command_timeout: int = 300
    stop_timeout: int = 30
    health_check_retries: int = 5
    health_check_interval: float = 3.0
    prometheus_url: str = 'http://localhost:9090'
    reload_timeout: int = 10
    # Optional {dashboard}.json files used instead of the built-in dashboards
    dashboard_templates_dir: Optional[Path] = None

    def __post_init__(self):
        self.home = Path(self.home).expanduser()
        self.services_root = Path(self.services_root).expanduser()
        if self.registry_file is None:
            self.registry_file = self.home / 'registry.json'
        else:
            self.registry_file = Path(self.registry_file).expanduser()
        if self.dashboard_templates_dir is None:
            self.dashboard_templates_dir = self.home / 'grafana-dashboards'
        else:
            self.dashboard_templates_dir = Path(self.dashboard_templates_dir).expanduser()

        for name in ('command_timeout', 'stop_timeout', 'health_check_retries', 'reload_timeout'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")
        if not isinstance(self.health_check_interval, (int, float)) or self.health_check_interval < 0:
            raise ConfigError(f"health_check_interval must be a non-negative number, got {self.health_check_interval!r}")


def load_settings(config_path=None) -> Settings:
    """
    Load Settings from config.yaml. A missing file yields the defaults;
    unknown keys are ignored so older binaries can read newer configs.
    """
    path = Path(config_path) if config_path else get_config_path()
    data = {}
    if path.exists():
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        logger.debug(f"Loaded configuration from {path}")
    else:
        logger.debug(f"No config file at {path}, using defaults")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.debug(f"Ignoring unknown config keys: {unknown}")
    return Settings(**{k: v for k, v in data.items() if k in known})
