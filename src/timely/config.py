"""Configuration management for timely."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECS = 5
HEARTBEAT_MERGE_GAP_SECS = 65.0
SYNC_DEFAULT_INTERVAL_SECS = 300
SYNC_BATCH_SIZE = 1000
DB_FILENAME = "timely.db"
HUB_DB_FILENAME = "timely-hub.db"
PID_FILENAME = "timely.pid"
TRUE_VALUES = ("true", "1", "yes", "on")
FALSE_VALUES = ("false", "0", "no", "off")

DEFAULT_CONFIG = {
    "data_dir": "",
    "verbose_logging": True,
    "hub_url": "",
    "api_key": "",  # nosec B105 - X-API-Key sent to the hub
    "hub_api_key": "",  # nosec B105 - key this machine requires when acting as hub
    "sync_enabled": False,
    "sync_interval": SYNC_DEFAULT_INTERVAL_SECS,
    "hub_host": "127.0.0.1",
    "hub_port": 7890,
}


def get_default_config_dir() -> Path:
    """Get the default configuration directory for the current user."""
    return Path.home() / ".timely"


class Config:
    """Configuration manager for timely."""

    def __init__(self, config_dir: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Custom configuration directory path
        """
        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            self.config_dir = get_default_config_dir()

        self.config_file = self.config_dir / "settings.json"
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or create default."""
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    config = json.load(f)
                merged_config = DEFAULT_CONFIG.copy()
                merged_config.update(config)
                return merged_config
            except (json.JSONDecodeError, IOError) as e:
                logger.warning("Could not load config file %s: %s", self.config_file, e)
                logger.warning("Using default configuration.")

        return DEFAULT_CONFIG.copy()

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self._config, f, indent=2, ensure_ascii=False)
        except IOError as e:
            logger.warning("Could not save config file %s: %s", self.config_file, e)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        self._config[key] = value

    def set_from_string(self, key: str, value: str) -> Any:
        """Set a known key from command line text, converted to its default's type."""
        if key not in DEFAULT_CONFIG:
            known = ", ".join(sorted(DEFAULT_CONFIG))
            raise ConfigError(f"Unknown config key: {key} (known: {known})")

        default = DEFAULT_CONFIG[key]
        if isinstance(default, bool):
            lowered = value.lower()
            if lowered in TRUE_VALUES:
                converted: Any = True
            elif lowered in FALSE_VALUES:
                converted = False
            else:
                raise ConfigError(f"{key} expects a boolean, got {value!r}")
        elif isinstance(default, int):
            try:
                converted = int(value)
            except ValueError:
                raise ConfigError(f"{key} expects an integer, got {value!r}") from None
        else:
            converted = value

        self.set(key, converted)
        return converted

    def update(self, config_dict: Dict[str, Any]) -> None:
        """Update multiple configuration values.

        Args:
            config_dict: Dictionary of configuration updates
        """
        self._config.update(config_dict)

    def reset_to_defaults(self) -> None:
        """Reset configuration to default values."""
        self._config = DEFAULT_CONFIG.copy()

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration values."""
        return self._config.copy()

    @property
    def verbose_logging(self) -> bool:
        return bool(self.get("verbose_logging", True))

    @property
    def hub_url(self) -> str:
        """Hub base URL, without a trailing slash."""
        return (self.get("hub_url") or "").rstrip("/")

    @hub_url.setter
    def hub_url(self, value: str) -> None:
        self.set("hub_url", value)

    @property
    def api_key(self) -> Optional[str]:
        """Key sent to the hub in the X-API-Key header, if any."""
        return self.get("api_key") or None

    @api_key.setter
    def api_key(self, value: Optional[str]) -> None:
        self.set("api_key", value or "")

    @property
    def hub_api_key(self) -> Optional[str]:
        """Key the hub requires from clients; None means open mode."""
        return self.get("hub_api_key") or None

    @property
    def sync_enabled(self) -> bool:
        return bool(self.get("sync_enabled", False))

    @sync_enabled.setter
    def sync_enabled(self, value: bool) -> None:
        self.set("sync_enabled", bool(value))

    @property
    def sync_interval(self) -> int:
        return int(self.get("sync_interval", SYNC_DEFAULT_INTERVAL_SECS))

    @property
    def data_dir(self) -> Path:
        """Get data directory path."""
        data_dir = self.get("data_dir")
        if data_dir:
            return Path(data_dir)
        return self.config_dir

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @property
    def hub_db_path(self) -> Path:
        return self.data_dir / HUB_DB_FILENAME

    @property
    def pid_path(self) -> Path:
        return self.data_dir / PID_FILENAME


def load_config_from_env() -> Dict[str, Any]:
    """Load configuration from environment variables.

    Returns:
        Configuration dictionary from environment
    """
    env_config: Dict[str, Any] = {}

    env_mappings = {
        "TIMELY_DATA_DIR": "data_dir",
        "TIMELY_HUB_URL": "hub_url",
        "TIMELY_API_KEY": "api_key",  # nosec B105
        "TIMELY_HUB_API_KEY": "hub_api_key",  # nosec B105
        "TIMELY_SYNC_ENABLED": "sync_enabled",
        "TIMELY_SYNC_INTERVAL": "sync_interval",
        "TIMELY_VERBOSE": "verbose_logging",
    }

    for env_var, config_key in env_mappings.items():
        value = os.getenv(env_var)
        if value is not None:
            if config_key in ["sync_interval"]:
                try:
                    env_config[config_key] = int(value)
                except ValueError:
                    logger.warning("Invalid integer value for %s: %s", env_var, value)
            elif config_key in ["sync_enabled", "verbose_logging"]:
                env_config[config_key] = value.lower() in TRUE_VALUES
            else:
                env_config[config_key] = value

    return env_config


def configure_logging(verbose: bool = True) -> None:
    """Install the root log handler used by the CLI and daemon."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


# Global config instance
_global_config: Optional[Config] = None


def get_config() -> Config:
    """Get global configuration instance, with environment overrides applied."""
    global _global_config
    if _global_config is None:
        _global_config = Config()
        env_config = load_config_from_env()
        if env_config:
            _global_config.update(env_config)
    return _global_config


def reload_config() -> Config:
    """Reload configuration from file."""
    global _global_config
    _global_config = None
    return get_config()
