"""
Emergency Hub - Configuration Management

Handles loading, saving, and validating hub settings.
Settings persist to ~/.config/emergency-hub/settings.json and can be
overridden per-process with EMERGENCY_HUB_* environment variables.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "host": "0.0.0.0",
    "port": 8080,
    "heartbeat_interval_ms": 30000,
    "max_queue_size": 100,
    "replay_count": 5,
    "default_radius_km": 50.0,
    "broadcast_timeout_seconds": 5.0,
    # Optional MQTT trigger ingress
    "mqtt_enabled": False,
    "mqtt_broker": "localhost",
    "mqtt_port": 1883,
    "mqtt_topic_prefix": "emergency-hub",
    "mqtt_username": None,
    "mqtt_password": None,
}

# Environment variable -> (config key, converter)
ENV_OVERRIDES: Dict[str, tuple] = {
    "EMERGENCY_HUB_HOST": ("host", str),
    "EMERGENCY_HUB_PORT": ("port", int),
    "EMERGENCY_HUB_HEARTBEAT_MS": ("heartbeat_interval_ms", int),
}


class HubConfig:
    """Configuration manager for the emergency broadcast hub."""

    def __init__(self, config_path: Optional[Path] = None,
                 environ: Optional[Mapping[str, str]] = None):
        if config_path:
            self._config_path = config_path
        else:
            self._config_path = (
                Path.home()
                / ".config"
                / "emergency-hub"
                / "settings.json"
            )
        self._environ = os.environ if environ is None else environ
        self._settings: Dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    def load(self) -> None:
        """Load settings from disk, falling back to defaults, then apply env."""
        if self._config_path.exists():
            try:
                with open(self._config_path, "r") as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    if key in DEFAULT_CONFIG:
                        self._settings[key] = value
                logger.info("Loaded settings from %s", self._config_path)
            except (json.JSONDecodeError, OSError, AttributeError) as e:
                logger.warning("Failed to load settings: %s, using defaults", e)
        else:
            logger.info("No settings file found, using defaults")
        self._apply_env()

    def _apply_env(self) -> None:
        for var, (key, convert) in ENV_OVERRIDES.items():
            raw = self._environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                self._settings[key] = convert(raw)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", var, raw)

    def save(self) -> None:
        """Persist current settings to disk."""
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self._config_path, "w") as f:
                json.dump(self._settings, f, indent=2)
            logger.info("Saved settings to %s", self._config_path)
        except OSError as e:
            logger.error("Failed to save settings: %s", e)

    def get(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if key in DEFAULT_CONFIG:
            self._settings[key] = value

    def update(self, settings: Dict[str, Any]) -> None:
        for key, value in settings.items():
            self.set(key, value)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._settings)

    @property
    def heartbeat_interval(self) -> float:
        """Heartbeat period in seconds."""
        return float(self._settings["heartbeat_interval_ms"]) / 1000.0
