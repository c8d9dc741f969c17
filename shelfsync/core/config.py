"""Configuration singleton with ENV > config file > default resolution."""

import json
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from shelfsync.core.logger import setup_logger

logger = setup_logger(__name__)

# Import lazily to avoid circular imports
_env_module = None


def _get_env():
    """Import env lazily; it is read at import time and tests patch it."""
    global _env_module
    if _env_module is None:
        from shelfsync.config import env
        _env_module = env
    return _env_module


DEFAULTS: Dict[str, Any] = {
    "MAX_CONCURRENT_TRANSFERS": 3,
    "TRANSFER_MAX_RETRIES": 3,
    "TRANSFER_RETRY_BASE_DELAY": 1.0,
    "TRANSFER_RETRY_MAX_DELAY": 30.0,
    "MAIN_LOOP_SLEEP_TIME": 0.5,
    "METADATA_TIMEOUT": 10.0,
    "METADATA_CACHE_MAX_SIZE": 0,
    "PROGRESS_MERGE_POLICY": "furthest",
    "REMOTE_STORE_URL": "",
    "REMOTE_TIMEOUT": 30.0,
    "REMOTE_CHUNK_SIZE": 65536,
    "NOTIFICATIONS_ENABLED": False,
    "NOTIFICATION_URLS": [],
    "NOTIFICATION_EVENTS": ["transfer_complete", "transfer_failed"],
}


def _coerce(raw: str, default: Any) -> Any:
    """Convert an ENV string to the type of the setting's default."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("true", "yes", "1", "y", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw


class Config:
    """
    Process-wide settings with live refresh.

    Each key resolves from its ENV var, then settings.json, then DEFAULTS.
    Resolved values are cached until refresh() re-reads both sources.
    """

    _instance: Optional['Config'] = None
    _lock = Lock()

    def __new__(cls) -> 'Config':
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._cache: Dict[str, Any] = {}
        self._env_keys: set = set()
        self._cache_lock = Lock()
        self._initialized = True
        self._loaded = False

    def _ensure_loaded(self) -> None:
        """Ensure settings are loaded."""
        if self._loaded:
            return
        with self._cache_lock:
            if self._loaded:
                return
            self._load_settings()

    def _read_settings_file(self, path: Path) -> Dict[str, Any]:
        try:
            if path.exists():
                data = json.loads(path.read_text())
                if isinstance(data, dict):
                    return data
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        return {}

    def _load_settings(self) -> None:
        """Load all settings from ENV, the settings file and defaults."""
        file_values = self._read_settings_file(_get_env().SETTINGS_FILE)

        self._cache.clear()
        self._env_keys.clear()

        for key, default in DEFAULTS.items():
            raw = os.environ.get(key)
            if raw is not None:
                try:
                    self._cache[key] = _coerce(raw, default)
                    self._env_keys.add(key)
                    continue
                except ValueError:
                    pass
            if key in file_values:
                self._cache[key] = file_values[key]
            else:
                self._cache[key] = default

        # Unknown keys in the settings file are kept for collaborators.
        for key, value in file_values.items():
            self._cache.setdefault(key, value)

        self._loaded = True

    def refresh(self) -> None:
        """Re-read ENV and the settings file."""
        with self._cache_lock:
            self._loaded = False
            self._load_settings()

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value by key.

        Args:
            key: The setting key (e.g., 'MAX_CONCURRENT_TRANSFERS')
            default: Default value if setting not found

        Returns:
            The setting value, or default if not found
        """
        self._ensure_loaded()
        return self._cache.get(key, default)

    def __getattr__(self, name: str) -> Any:
        """
        Allow attribute-style access to settings.

        Example: config.MAX_CONCURRENT_TRANSFERS instead of config.get('MAX_CONCURRENT_TRANSFERS')
        """
        if name.startswith('_'):
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        self._ensure_loaded()

        if name in self._cache:
            return self._cache[name]

        env = _get_env()
        if hasattr(env, name):
            return getattr(env, name)

        raise AttributeError(f"Setting '{name}' not found in config or env")

    def is_from_env(self, key: str) -> bool:
        """Check if a setting's value comes from an environment variable."""
        self._ensure_loaded()
        return key in self._env_keys

    def get_all(self) -> Dict[str, Any]:
        """Get all cached settings as a dictionary."""
        self._ensure_loaded()
        return dict(self._cache)


# Global singleton instance
config = Config()
