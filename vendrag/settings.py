"""
User settings at ~/.vendrag/config.yaml.

Controls how upgrades reach outside the process:

- package_name: published distribution name used for historical snapshots
- runners: ordered package-runner candidates for historical snapshots
- timeouts: per-subprocess limits in seconds (merge, runner, install, git)

The file is optional. User values are deep-merged over the defaults, and
VENDRAG_CONFIG points at an alternative file.
"""

import logging
import os
import yaml
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class Settings:
    """Settings loaded from YAML with defaults for every key."""

    CONFIG_PATH = Path.home() / ".vendrag" / "config.yaml"

    def __init__(self, data: dict):
        self._data = data

    @classmethod
    def get_default(cls) -> dict:
        return {
            "package_name": "vendrag",
            # Tried in order after the environment-specific runner.
            "runners": ["uvx", "pipx"],
            "timeouts": {
                "merge": 30,
                "runner": 300,
                "install": 600,
                "git": 15,
            },
        }

    @classmethod
    def config_path(cls) -> Path:
        override = os.environ.get("VENDRAG_CONFIG")
        if override:
            return Path(override).expanduser()
        return cls.CONFIG_PATH

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from YAML.

        Returns defaults if the file doesn't exist or can't be parsed.
        """
        defaults = cls.get_default()
        path = Path(path) if path else cls.config_path()

        if not path.exists():
            return cls(defaults)

        try:
            with open(path) as f:
                user_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", path, e)
            return cls(defaults)

        if not isinstance(user_data, dict):
            logger.warning("Ignoring settings file %s: expected a mapping", path)
            return cls(defaults)

        return cls(cls._deep_merge(defaults, user_data))

    @staticmethod
    def _deep_merge(base: dict, override: dict) -> dict:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = Settings._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    # ========================================================================
    # Property Accessors
    # ========================================================================

    @property
    def package_name(self) -> str:
        return self._data.get("package_name", "vendrag")

    @property
    def runners(self) -> list[str]:
        return list(self._data.get("runners", []))

    @property
    def timeouts(self) -> dict:
        return self._data.get("timeouts", {})

    def timeout(self, name: str) -> Optional[float]:
        """Timeout in seconds for a subprocess kind; 0 or null disables it."""
        value = self.timeouts.get(name)
        if not value:
            return None
        return float(value)

    @property
    def skip_install(self) -> bool:
        return os.environ.get("VENDRAG_SKIP_INSTALL") == "1"
