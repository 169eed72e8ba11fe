"""Configuration management for swarmdl.

Provides centralized configuration with TOML support, validation and
hierarchical loading from defaults, then config file, then environment.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError as PydanticValidationError

from swarmdl.exceptions import ConfigurationError
from swarmdl.logging_config import get_logger, setup_logging
from swarmdl.models import Config

CONFIG_FILENAME = "swarmdl.toml"

# Environment variable -> dotted config path
ENV_MAPPINGS: dict[str, str] = {
    # Network
    "SWARMDL_LISTEN_PORT": "network.listen_port",
    "SWARMDL_ENABLE_INCOMING": "network.enable_incoming",
    "SWARMDL_MAX_PEERS_PER_TORRENT": "network.max_peers_per_torrent",
    "SWARMDL_PIPELINE_DEPTH": "network.pipeline_depth",
    "SWARMDL_BLOCK_SIZE_KIB": "network.block_size_kib",
    "SWARMDL_CONNECTION_TIMEOUT": "network.connection_timeout",
    "SWARMDL_HANDSHAKE_TIMEOUT": "network.handshake_timeout",
    "SWARMDL_REQUEST_TIMEOUT": "network.request_timeout",
    "SWARMDL_PEER_TIMEOUT": "network.peer_timeout",
    "SWARMDL_KEEP_ALIVE_INTERVAL": "network.keep_alive_interval",
    "SWARMDL_MAX_UPLOAD_SLOTS": "network.max_upload_slots",
    "SWARMDL_UNCHOKE_INTERVAL": "network.unchoke_interval",
    "SWARMDL_DROP_PEERS_ON_PAUSE": "network.drop_peers_on_pause",
    # Tracker
    "SWARMDL_TRACKER_TIMEOUT": "tracker.timeout",
    "SWARMDL_TRACKER_MAX_RETRIES": "tracker.max_retries",
    "SWARMDL_TRACKER_BACKOFF_BASE": "tracker.backoff_base",
    "SWARMDL_TRACKER_BACKOFF_MAX": "tracker.backoff_max",
    "SWARMDL_TRACKER_NUMWANT": "tracker.numwant",
    # Strategy
    "SWARMDL_MAX_INFLIGHT_REQUESTS": "strategy.max_inflight_requests",
    "SWARMDL_ENDGAME_DUPLICATES": "strategy.endgame_duplicates",
    "SWARMDL_SEED_AFTER_COMPLETE": "strategy.seed_after_complete",
    # Disk
    "SWARMDL_DISK_WORKERS": "disk.disk_workers",
    "SWARMDL_HASH_WORKERS": "disk.hash_workers",
    # Observability
    "SWARMDL_LOG_LEVEL": "observability.log_level",
    "SWARMDL_LOG_FILE": "observability.log_file",
    "SWARMDL_STRUCTURED_LOGGING": "observability.structured_logging",
    # Catalog
    "SWARMDL_CATALOG_PATH": "catalog.path",
}

# Global configuration instance
_config_manager: ConfigManager | None = None

logger = get_logger(__name__)


def _parse_env_value(raw: str) -> bool | int | float | str:
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Loads and validates configuration."""

    def __init__(self, config_file: str | Path | None = None, configure_logging: bool = True):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for swarmdl.toml
            configure_logging: Apply the observability section to logging
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if configure_logging:
            self._setup_logging()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".config" / "swarmdl" / CONFIG_FILENAME,
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            if not self.config_file.exists():
                msg = f"Config file not found: {self.config_file}"
                raise ConfigurationError(msg)
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except toml.TomlDecodeError as e:
                msg = f"Failed to parse config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg, details={"errors": e.errors()}) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from SWARMDL_* environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            # Strings that only look numeric stay strings for these
            if cfg_path in ("observability.log_file", "catalog.path"):
                _set_nested(env_config, cfg_path, raw)
            else:
                _set_nested(env_config, cfg_path, _parse_env_value(raw))
        return env_config

    def _merge_config(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def export(self) -> str:
        """Export the current configuration as TOML."""
        data = self.config.model_dump(mode="json", exclude_none=True)
        return toml.dumps(data)

    def _setup_logging(self) -> None:
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager and logging."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    logger.debug("Configuration loaded from %s", _config_manager.config_file or "defaults")
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Components read the config when they are constructed, so already
    running sessions keep their previous values.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    _config_manager.config = new_config


def reset_config() -> None:
    """Drop the global configuration so the next get_config() reloads it."""
    global _config_manager
    _config_manager = None
