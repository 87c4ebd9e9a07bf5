"""
Configuration management using database storage.

Provides access to configuration values with defaults and type conversion.
Environment variables (SLIDEBOX_<KEY>) take priority over stored values.
The CONFIG_SCHEMA provides rich metadata for building user-friendly configuration UIs.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from .database import ConfigRepository, Database
from .models import CatalogFilters

ENV_PREFIX = "SLIDEBOX_"

# Configuration groups define the logical sections in the config UI
CONFIG_GROUPS = {
    "server": {"label": "Photo Server", "order": 1},
    "slideshow": {"label": "Slideshow", "order": 2},
    "filters": {"label": "Filters", "order": 3},
    "network": {"label": "Network & Storage", "order": 4},
}

# Schema defining metadata for each editable configuration key
CONFIG_SCHEMA = {
    # Photo Server
    "server_url": {
        "group": "server",
        "label": "Server URL",
        "description": "Base URL of the photo server, e.g. http://immich.local:2283",
        "control": "text",
        "placeholder": "http://immich.local:2283",
    },
    "api_key": {
        "group": "server",
        "label": "API Key",
        "description": "API key sent with every request to the photo server.",
        "control": "password",
    },
    # Slideshow
    "display_duration_ms": {
        "group": "slideshow",
        "label": "Photo Duration",
        "description": "How long each photo stays on screen. Videos play for their own length.",
        "control": "slider",
        "min": 3000,
        "max": 120000,
        "step": 1000,
        "display_format": "milliseconds",
    },
    "page_size": {
        "group": "slideshow",
        "label": "Page Size",
        "description": "How many assets to request from the server per page.",
        "control": "slider",
        "min": 10,
        "max": 1000,
        "step": 10,
    },
    # Filters
    "favorites_only": {
        "group": "filters",
        "label": "Favorites Only",
        "description": "Only show assets marked as favorite.",
        "control": "toggle",
    },
    "include_archived": {
        "group": "filters",
        "label": "Include Archived",
        "description": "Also show archived assets.",
        "control": "toggle",
    },
    "display_mode": {
        "group": "filters",
        "label": "Orientation",
        "description": "Only show assets matching the screen orientation.",
        "control": "select",
        "options": [
            {"value": "all", "label": "All"},
            {"value": "portrait", "label": "Portrait"},
            {"value": "landscape", "label": "Landscape"},
        ],
    },
    "max_video_duration_seconds": {
        "group": "filters",
        "label": "Max Video Length",
        "description": "Skip videos longer than this. Leave empty to show all videos.",
        "control": "text",
        "placeholder": "60",
    },
    # Network & Storage
    "fetch_timeout_seconds": {
        "group": "network",
        "label": "Download Timeout",
        "description": "Give up on a single download after this many seconds.",
        "control": "slider",
        "min": 1,
        "max": 60,
        "step": 1,
        "display_format": "seconds",
    },
    "cache_directory": {
        "group": "network",
        "label": "Media Directory",
        "description": "Where downloaded media is kept while on screen. Leave empty for default (~/.slidebox/media).",
        "control": "text",
        "placeholder": "~/.slidebox/media",
    },
}

# Keys whose values are never returned in full by the API
SECRET_KEYS = {"api_key"}


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""

    pass


class ConfigManager:
    """Manages configuration stored in database."""

    # Default configuration values
    DEFAULTS = {
        "server_url": None,
        "api_key": None,
        "page_size": "100",
        "display_duration_ms": "15000",
        "asset_retry_count": "1",
        "asset_retry_delay_seconds": "5",
        "fetch_timeout_seconds": "10",
        "catalog_retry_delay_seconds": "5",
        "catalog_retry_attempts": "3",
        "release_delay_seconds": "2",
        "progress_tick_ms": "100",
        "low_water_mark": "0",
        "max_consecutive_skips": "25",
        "favorites_only": "false",
        "include_archived": "false",
        "display_mode": "all",
        "max_video_duration_seconds": None,
        "cache_directory": None,  # Will default to ~/.slidebox/media
    }

    def __init__(self, database: Database):
        """
        Initialize ConfigManager.

        Args:
            database: Database instance
        """
        self.database = database
        self.repository = ConfigRepository(database)
        self.logger = logging.getLogger(__name__)
        self.repository.initialize_defaults(self.DEFAULTS)

    @staticmethod
    def env_name(key: str) -> str:
        """Environment variable that overrides a key (e.g. SLIDEBOX_SERVER_URL)."""
        return ENV_PREFIX + key.upper()

    def get(self, key: str, default: Any = None) -> Optional[str]:
        """
        Get a configuration value.

        Args:
            key: Configuration key
            default: Default value if not found (uses DEFAULTS if None)

        Returns:
            Configuration value as string, or None if not found
        """
        env_value = os.environ.get(self.env_name(key))
        if env_value:
            return env_value

        if default is None:
            default = self.DEFAULTS.get(key)

        entry = self.repository.get(key)
        if entry:
            return entry.value if entry.value else default
        return default

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        """Get configuration value as integer."""
        value = self.get(key)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError:
            self.logger.warning("Invalid integer value for %s: %s", key, value)
            return default

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        """Get configuration value as float."""
        value = self.get(key)
        if value is None or value == "":
            return default
        try:
            return float(value)
        except ValueError:
            self.logger.warning("Invalid float value for %s: %s", key, value)
            return default

    def get_bool(self, key: str, default: Optional[bool] = None) -> Optional[bool]:
        """Get configuration value as boolean."""
        value = self.get(key)
        if value is None or value == "":
            return default
        return value.lower() in ("true", "1", "yes", "on")

    def set(self, key: str, value: Any) -> bool:
        """
        Set a configuration value.

        Args:
            key: Configuration key
            value: Value to set (will be converted to string)

        Returns:
            True if successful
        """
        return self.repository.set(key, str(value))

    def get_all(self, mask_secrets: bool = False) -> dict:
        """
        Get all configuration values.

        Args:
            mask_secrets: Replace secret values (API key) with a placeholder

        Returns:
            Dictionary of all configuration key-value pairs
        """
        entries = self.repository.get_all()
        config = {entry.key: entry.value for entry in entries}

        # Merge with defaults to ensure all keys are present
        result = dict(self.DEFAULTS)
        result.update(config)

        for key in result:
            env_value = os.environ.get(self.env_name(key))
            if env_value:
                result[key] = env_value

        if mask_secrets:
            for key in SECRET_KEYS:
                if result.get(key):
                    result[key] = "********"
        return result

    def get_full_config(self) -> dict:
        """
        Get complete configuration data for the UI.

        Returns:
            Dictionary with 'values', 'schema', and 'groups' keys.
        """
        return {
            "values": self.get_all(mask_secrets=True),
            "schema": CONFIG_SCHEMA,
            "groups": CONFIG_GROUPS.copy(),
        }


@dataclass(frozen=True)
class SlideshowSettings:
    """Immutable snapshot of the configuration injected into each component."""

    server_url: Optional[str] = None
    api_key: Optional[str] = None
    page_size: int = 100
    display_duration_ms: int = 15000
    asset_retry_count: int = 1
    asset_retry_delay: float = 5.0
    fetch_timeout: float = 10.0
    catalog_retry_delay: float = 5.0
    catalog_retry_attempts: int = 3
    release_delay: float = 2.0
    progress_tick: float = 0.1
    low_water_mark: int = 0
    max_consecutive_skips: int = 25
    filters: CatalogFilters = field(default_factory=CatalogFilters)

    @property
    def display_duration(self) -> float:
        """Static photo display duration in seconds."""
        return self.display_duration_ms / 1000.0

    def validate(self) -> None:
        """
        Check required settings.

        Raises:
            ConfigError: If the server URL or API key is missing, or a
                duration, interval or size is not positive
        """
        if not self.server_url:
            raise ConfigError("Server URL is missing")
        if not self.api_key:
            raise ConfigError("API key is missing")

        for name, value in (
            ("display_duration_ms", self.display_duration_ms),
            ("progress_tick", self.progress_tick),
            ("page_size", self.page_size),
            ("fetch_timeout", self.fetch_timeout),
        ):
            if value is None or value <= 0:
                raise ConfigError(f"{name} must be positive (got {value})")

    @classmethod
    def from_config(cls, config_manager: ConfigManager) -> "SlideshowSettings":
        """Build settings from stored configuration."""
        defaults = cls()
        display_mode = (config_manager.get("display_mode") or "all").lower()
        if display_mode not in ("all", "portrait", "landscape"):
            config_manager.logger.warning("Unknown display mode %s, showing all", display_mode)
            display_mode = "all"

        filters = CatalogFilters(
            favorites_only=config_manager.get_bool("favorites_only", False),
            include_archived=config_manager.get_bool("include_archived", False),
            display_mode=display_mode,
            max_video_duration_seconds=config_manager.get_float("max_video_duration_seconds"),
        )

        server_url = config_manager.get("server_url")
        return cls(
            server_url=server_url.rstrip("/") if server_url else None,
            api_key=config_manager.get("api_key"),
            page_size=config_manager.get_int("page_size", defaults.page_size),
            display_duration_ms=config_manager.get_int(
                "display_duration_ms", defaults.display_duration_ms
            ),
            asset_retry_count=config_manager.get_int(
                "asset_retry_count", defaults.asset_retry_count
            ),
            asset_retry_delay=config_manager.get_float(
                "asset_retry_delay_seconds", defaults.asset_retry_delay
            ),
            fetch_timeout=config_manager.get_float("fetch_timeout_seconds", defaults.fetch_timeout),
            catalog_retry_delay=config_manager.get_float(
                "catalog_retry_delay_seconds", defaults.catalog_retry_delay
            ),
            catalog_retry_attempts=config_manager.get_int(
                "catalog_retry_attempts", defaults.catalog_retry_attempts
            ),
            release_delay=config_manager.get_float(
                "release_delay_seconds", defaults.release_delay
            ),
            progress_tick=config_manager.get_int("progress_tick_ms", 100) / 1000.0,
            low_water_mark=config_manager.get_int("low_water_mark", defaults.low_water_mark),
            max_consecutive_skips=config_manager.get_int(
                "max_consecutive_skips", defaults.max_consecutive_skips
            ),
            filters=filters,
        )
