"""
Configuration management for backplane.

This module provides configuration file support with YAML format and
default settings.

Features:
- YAML configuration file at ~/.config/backplane/config.yaml
- Default values with user overrides
- Refresh cadences for the pollers and the render loop
- Session limits (log tail, buffer sizes, exec shell candidates)
- Log location and rotation

Architecture:
- ConfigManager: Main configuration interface
- Merges user config with defaults
- Provides typed access to settings
- Handles missing/invalid config gracefully
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class RefreshConfig:
    """Cadences, in seconds."""
    inventory_interval: float = 3.0
    stats_interval: float = 2.0
    host_interval: float = 5.0
    render_interval: float = 0.25
    tombstone_grace: float = 6.0
    status_ttl: float = 3.0
    max_batch: int = 256


@dataclass
class SessionConfig:
    log_tail: int = 500
    log_buffer_size: int = 1000
    exec_shells: List[str] = field(default_factory=lambda: ["/bin/bash", "/bin/sh", "/bin/zsh", "/bin/ash"])
    exec_buffer_bytes: int = 65536
    join_timeout: float = 0.2


@dataclass
class DockerConfig:
    stop_timeout: int = 10
    history_samples: int = 30


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file_path: Optional[str] = None  # None for default
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class AppConfig:
    """Main application configuration."""
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    logging: LogConfig = field(default_factory=LogConfig)


class ConfigManager:
    """Configuration manager with YAML file support."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = config_dir or Path.home() / ".config" / "backplane"
        self.config_file = self.config_dir / "config.yaml"
        self._config: AppConfig = AppConfig()
        self.load_config()

    def load_config(self) -> None:
        """Load configuration from YAML file."""
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r') as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise ValueError("top level must be a mapping")
                self._config = self._merge_configs(AppConfig(), user_config)
                logger.debug(f"Loaded configuration from {self.config_file}")
            else:
                self.save_config()
                logger.info(f"Created default configuration at {self.config_file}")
        except Exception as e:
            logger.error(f"Failed to load config: {e}, using defaults")
            self._config = AppConfig()

    def save_config(self) -> None:
        """Save current configuration to YAML file."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w') as f:
                yaml.safe_dump(asdict(self._config), f, default_flow_style=False, indent=2)
            logger.debug(f"Saved configuration to {self.config_file}")
        except Exception as e:
            logger.error(f"Failed to save config: {e}")

    def get_config(self) -> AppConfig:
        """Get current configuration."""
        return self._config

    def _merge_configs(self, default: AppConfig, user: Dict[str, Any]) -> AppConfig:
        """Merge user config with defaults."""
        for section in fields(default):
            if isinstance(user.get(section.name), dict):
                self._merge_dataclass(getattr(default, section.name), user[section.name])
        return default

    def _merge_dataclass(self, obj: Any, updates: Dict[str, Any]) -> None:
        """Merge updates into dataclass object, keeping the default's type."""
        for key, value in updates.items():
            if not hasattr(obj, key) or value is None and getattr(obj, key) is not None:
                continue
            current = getattr(obj, key)
            if isinstance(current, bool) or current is None:
                setattr(obj, key, value)
            elif isinstance(current, (int, float)):
                try:
                    setattr(obj, key, type(current)(value))
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring invalid value for {key}: {value!r}")
            elif isinstance(current, list):
                if isinstance(value, list) and value:
                    setattr(obj, key, [str(v) for v in value])
            else:
                setattr(obj, key, str(value))

    def get_log_level(self) -> str:
        """Get configured log level."""
        return self._config.logging.level.upper()

    def get_custom_log_path(self) -> Optional[str]:
        """Get custom log file path if configured."""
        return self._config.logging.file_path

    def get_exec_shells(self) -> List[str]:
        return list(self._config.sessions.exec_shells)


# Global config instance
config_manager = ConfigManager()
