"""JSON file persistence for the book collection.

Stores the library in CONFIG_DIR so it survives restarts. The file holds a
version marker and a list of serialized BookRecords.
"""

import json
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from shelfsync.config import env
from shelfsync.core.interfaces import LibraryPersistence
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import BookRecord
from shelfsync.library.fs import atomic_replace

logger = setup_logger(__name__)

LIBRARY_FORMAT_VERSION = 1


class JsonLibraryPersistence(LibraryPersistence):
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else Path(env.LIBRARY_FILE)
        self._lock = Lock()

    def _read(self) -> Dict[str, Any]:
        try:
            if self.path.exists():
                return json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load library file {self.path}: {e}")
        return {"books": [], "version": LIBRARY_FORMAT_VERSION}

    def load(self) -> List[BookRecord]:
        with self._lock:
            data = self._read()

        records: List[BookRecord] = []
        for entry in data.get("books", []):
            if not isinstance(entry, dict):
                logger.warning(f"Skipping malformed library entry: {entry!r}")
                continue
            try:
                records.append(BookRecord.from_dict(entry))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable library entry {entry.get('hash')!r}: {e}")
        return records

    def save(self, records: List[BookRecord]) -> None:
        payload = {
            "version": LIBRARY_FORMAT_VERSION,
            "books": [record.to_dict() for record in records],
        }
        with self._lock:
            atomic_replace(self.path, json.dumps(payload, indent=2).encode("utf-8"))
