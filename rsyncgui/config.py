"""Engine settings for RsyncGUI.

Settings are stored as JSON under ``~/.rsyncgui/``.  Scoped-destination
grants are never written here; they live in the OS keyring.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "rsync_path": "/usr/bin/rsync",
    "kill_timeout": 5.0,
    "detach_timeout": 10.0,
    "hook_timeout": 300.0,
    "ssh_timeout": 15.0,
    "history_limit": 1000,
    "keyring_service": "RsyncGUI",
}


def default_base_dir() -> Path:
    """Return ``~/.rsyncgui``."""
    return Path.home() / ".rsyncgui"


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialise *data* as JSON and write atomically to *path*."""
    tmp = path.with_suffix(".tmp")
    try:
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(path)
    except OSError as exc:
        logger.error("Failed to write %s: %s", path, exc)
        raise


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Loads and persists engine settings.

    Writes are atomic (write-to-temp, then rename).  A corrupt config file
    triggers a warning and a reset to defaults, never a crash.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating the settings directory if necessary."""
        self._base = base_dir or default_base_dir()
        self._config_path = self._base / "config.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()

    @property
    def base_dir(self) -> Path:
        return self._base

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file, creating defaults")
            config = dict(DEFAULT_CONFIG)
            atomic_write_json(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s), resetting to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            atomic_write_json(self._config_path, config)
            return config

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        atomic_write_json(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    def get_float(self, key: str) -> float:
        """Return *key* as a float, falling back to the default if invalid."""
        value = self._config.get(key, DEFAULT_CONFIG.get(key))
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("Config %s=%r is not a number, using default", key, value)
            return float(DEFAULT_CONFIG[key])
