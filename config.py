#!/usr/bin/env python3
"""
Configuration management for Lichen.
Handles settings persistence in ~/.config/lichen/
Stores per-device volumes and the hearback volume.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "lichen"


CONFIG_FILE_NAME = "settings.json"

# Volume for devices that have never been adjusted (%)
DEFAULT_DEVICE_VOLUME = 100
# Hearback level applied when it first becomes available (%)
DEFAULT_HEARBACK_VOLUME = 70

# Default configuration
DEFAULTS = {
    "device_volumes": {},  # Per-device overrides: { "sink_or_source_name": percent }
    "hearback_volume": DEFAULT_HEARBACK_VOLUME,
}


def _clamp(value: Any) -> int:
    return max(0, min(100, int(round(value))))


class Config:
    """Configuration manager with persistence."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path else _config_dir() / CONFIG_FILE_NAME
        self._config: dict = {}
        self._load()

    def _ensure_dir(self):
        """Create config directory if it doesn't exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self):
        """Load configuration from file, using defaults for missing values."""
        self._config = DEFAULTS.copy()
        self._config["device_volumes"] = {}

        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    if isinstance(value, dict) and isinstance(self._config.get(key), dict):
                        self._config[key] = {**self._config[key], **value}
                    else:
                        self._config[key] = value
            except (json.JSONDecodeError, IOError, AttributeError) as e:
                logger.warning("Ignoring unreadable settings file %s: %s", self.path, e)

    def save(self):
        """Persist configuration to file."""
        self._ensure_dir()
        with open(self.path, 'w') as f:
            json.dump(self._config, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any, save: bool = True):
        """Set a configuration value."""
        self._config[key] = value
        if save:
            self.save()

    # --- Per-device volume management ---

    @property
    def device_volumes(self) -> dict[str, int]:
        return dict(self._config.get("device_volumes") or {})

    def get_device_volume(self, name: str) -> int:
        """Get the stored volume for a device, 100% if never set."""
        volumes = self._config.get("device_volumes") or {}
        try:
            return _clamp(volumes[name])
        except (KeyError, TypeError, ValueError):
            return DEFAULT_DEVICE_VOLUME

    def set_device_volume(self, name: str, percent: float):
        """Set volume for a specific device and persist."""
        if not isinstance(self._config.get("device_volumes"), dict):
            self._config["device_volumes"] = {}
        self._config["device_volumes"][name] = _clamp(percent)
        self.save()

    # --- Hearback ---

    @property
    def hearback_volume(self) -> int:
        try:
            return _clamp(self._config.get("hearback_volume", DEFAULT_HEARBACK_VOLUME))
        except (TypeError, ValueError):
            return DEFAULT_HEARBACK_VOLUME

    @hearback_volume.setter
    def hearback_volume(self, percent: float):
        self._config["hearback_volume"] = _clamp(percent)
        self.save()
