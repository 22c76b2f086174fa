"""Configuration management for tasksync.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument or
the TASKSYNC_CONFIG_DIR environment variable.

The same Config class serves both sides: the sync server reads the
database location and token settings, the client reads its device
identity, server URL and sync timings.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from uuid6 import uuid7

from .validation import ValidationError

logger = logging.getLogger(__name__)

__all__ = ["Config"]

CONFIG_FILE_NAME = "config.json"
DEFAULT_SERVER_URL = "http://127.0.0.1:5000"
DEFAULT_PUSH_DEBOUNCE_SECONDS = 2.0
DEFAULT_AUTO_SYNC_INTERVAL_SECONDS = 300
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_TOKEN_TTL_DAYS = 30


def default_config_dir() -> Path:
    """Get the config directory from the environment or ~/.config/tasksync/."""
    env_dir = os.environ.get("TASKSYNC_CONFIG_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".config" / "tasksync"


class Config:
    """Manages application configuration stored in JSON format.

    Every setter writes the file immediately.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses the default.
        """
        self.config_dir = Path(config_dir) if config_dir else default_config_dir()
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / CONFIG_FILE_NAME
        self.config_data: Dict[str, Any] = self.load_config()

    def _defaults(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "tasksync-server.db"),
            "local_store_file": str(self.config_dir / "local-store.json"),
            "device_name": socket.gethostname() or "Unknown",
            "server_url": DEFAULT_SERVER_URL,
            "push_debounce_seconds": DEFAULT_PUSH_DEBOUNCE_SECONDS,
            "auto_sync_interval_seconds": DEFAULT_AUTO_SYNC_INTERVAL_SECONDS,
            "request_timeout_seconds": DEFAULT_REQUEST_TIMEOUT_SECONDS,
            "token_ttl_days": DEFAULT_TOKEN_TTL_DAYS,
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration, falling back to defaults for missing keys.

        An unreadable or invalid file is replaced by the default config.
        """
        data = self._defaults()
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data.update(loaded)
                else:
                    logger.warning(f"Ignoring non-object config in {self.config_file}")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to read config {self.config_file}: {e}. Using defaults.")
        self.save_config(data)
        return data

    def save_config(self, config: Dict[str, Any]) -> None:
        """Write configuration to file."""
        tmp_file = self.config_file.with_suffix(".json.tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2, sort_keys=True)
        os.replace(tmp_file, self.config_file)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self.config_data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        self.config_data[key] = value
        self.save_config(self.config_data)

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    # ===== Device identity =====

    def get_device_id_hex(self) -> str:
        """Get this installation's device ID, generating it on first use."""
        device_id = self.get("device_id")
        if not device_id:
            device_id = uuid7().hex
            self.set("device_id", device_id)
            logger.info(f"Generated device ID {device_id}")
        return device_id

    def get_device_name(self) -> str:
        """Get the human-readable device name."""
        return self.get("device_name", "Unknown")

    def set_device_name(self, name: str) -> None:
        """Set the device name."""
        if not name or not name.strip():
            raise ValidationError("device_name", "cannot be empty")
        self.set("device_name", name.strip())

    # ===== Client sync settings =====

    def get_server_url(self) -> str:
        """Get the sync server base URL (no trailing slash)."""
        return str(self.get("server_url", DEFAULT_SERVER_URL)).rstrip("/")

    def set_server_url(self, url: str) -> None:
        """Set the sync server base URL."""
        if not url.startswith(("http://", "https://")):
            raise ValidationError("server_url", "must start with http:// or https://")
        self.set("server_url", url.rstrip("/"))

    def get_push_debounce_seconds(self) -> float:
        """Get the delay between the last local edit and the push it triggers."""
        return float(self.get("push_debounce_seconds", DEFAULT_PUSH_DEBOUNCE_SECONDS))

    def get_auto_sync_interval(self) -> float:
        """Get the periodic full sync interval in seconds (0 disables it)."""
        return float(self.get("auto_sync_interval_seconds", DEFAULT_AUTO_SYNC_INTERVAL_SECONDS))

    def get_request_timeout(self) -> float:
        """Get the HTTP request timeout in seconds."""
        return float(self.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS))

    def get_local_store_file(self) -> Path:
        """Get the path of the client's local key-value store."""
        return Path(self.get("local_store_file"))

    # ===== Server settings =====

    def get_database_file(self) -> Path:
        """Get the path of the server's SQLite database."""
        return Path(self.get("database_file"))

    def get_secret_key(self) -> str:
        """Get the token signing key.

        TASKSYNC_SECRET_KEY takes precedence; otherwise a random key is
        generated once and stored in the config file.
        """
        env_key = os.environ.get("TASKSYNC_SECRET_KEY")
        if env_key:
            return env_key
        key = self.get("secret_key")
        if not key:
            key = secrets.token_hex(32)
            self.set("secret_key", key)
            logger.info("Generated new token signing key")
        return key

    def get_token_ttl_days(self) -> int:
        """Get the bearer token lifetime in days."""
        return int(self.get("token_ttl_days", DEFAULT_TOKEN_TTL_DAYS))
