"""Process environment values read once at import time."""

import os
from pathlib import Path


def string_to_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "yes", "1", "y", "on")


LOG_ROOT = Path(os.getenv("LOG_ROOT", "/var/log/"))
LOG_DIR = LOG_ROOT / "shelfsync"
LOG_FILE = LOG_DIR / "shelfsync.log"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENABLE_LOGGING = string_to_bool(os.getenv("ENABLE_LOGGING", "true"))

CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/config"))
SETTINGS_FILE = CONFIG_DIR / "settings.json"
LIBRARY_FILE = CONFIG_DIR / "library.json"

LIBRARY_DIR = Path(os.getenv("LIBRARY_DIR", str(CONFIG_DIR / "books")))
