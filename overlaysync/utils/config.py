"""
Configuration loader for the overlay synchronization engine.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_ENV_VAR = "OVERLAYSYNC_CONFIG"


class Config:
    """Configuration manager for transcript storage, alignment and output."""

    _instance: Optional["Config"] = None
    _config: Dict[str, Any] = {}

    def __new__(cls) -> "Config":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if not self._config:
            self._load_config()

    def _get_project_root(self) -> Path:
        """Get the project root directory."""
        # Navigate up from overlaysync/utils to project root
        current = Path(__file__).resolve()
        return current.parent.parent.parent

    def _config_path(self) -> Path:
        override = os.environ.get(CONFIG_ENV_VAR)
        if override:
            return Path(override)
        return self._get_project_root() / "config" / "settings.yaml"

    def _load_config(self) -> None:
        """Load configuration from YAML file, layered over the defaults."""
        merged = self._get_defaults()
        config_path = self._config_path()

        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            _deep_merge(merged, loaded)

        self._config = merged

    def _get_defaults(self) -> Dict[str, Any]:
        """Return default configuration."""
        return {
            "paths": {
                "transcripts": "transcripts",
                "output": "output",
            },
            "aligner": {
                "python": "python3",
                "module": "aeneas.tools.execute_task",
                "version": "1.7.3",
                "timeout": 600,
                "extra_path": "",
            },
            "alignment": {
                "language": "eng",
                "granularity": "sentence",
            },
            "storage": {
                "lock_timeout": -1,
            },
            "epub": {
                "css_href": "styles.css",
                "audio_dir": "audio",
            },
            "logging": {
                "debug": False,
            },
        }

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Example:
            config.get("aligner", "timeout") -> 600
        """
        value = self._config
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return default
            if value is None:
                return default
        return value

    def set(self, *keys: str, value: Any) -> None:
        """Override a configuration value in memory."""
        node = self._config
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = value

    def get_path(self, key: str) -> Path:
        """Get a path configuration as absolute Path."""
        relative_path = Path(self.get("paths", key, default=key))
        if relative_path.is_absolute():
            return relative_path
        return self._get_project_root() / relative_path

    def snapshot(self) -> Dict[str, Any]:
        """Return a deep copy of the active configuration."""
        return copy.deepcopy(self._config)

    @property
    def project_root(self) -> Path:
        """Get the project root directory."""
        return self._get_project_root()

    @property
    def language(self) -> str:
        """Get the default alignment language."""
        return self.get("alignment", "language", default="eng")

    @property
    def granularity(self) -> str:
        """Get the default segmentation granularity."""
        return self.get("alignment", "granularity", default="sentence")

    @property
    def aligner_timeout(self) -> Optional[float]:
        """Get the aligner timeout in seconds (0 disables it)."""
        timeout = self.get("aligner", "timeout", default=600)
        return float(timeout) if timeout else None

    @property
    def aligner_version(self) -> str:
        """Get the aligner version recorded in transcript metadata."""
        return str(self.get("aligner", "version", default="1.7.3"))

    @property
    def debug(self) -> bool:
        """Check if debug logging is enabled."""
        return bool(self.get("logging", "debug", default=False))


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


# Singleton instance
config = Config()
