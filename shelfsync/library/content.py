"""Device-local book content storage keyed by content hash."""

from pathlib import Path
from threading import Lock
from typing import Optional

from shelfsync.config import env
from shelfsync.core.interfaces import ContentStore
from shelfsync.core.logger import setup_logger
from shelfsync.library.fs import atomic_replace, safe_unlink

logger = setup_logger(__name__)


class FileContentStore(ContentStore):
    """Stores each book as ``<root>/<hash[:2]>/<hash>``."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root is not None else Path(env.LIBRARY_DIR)
        self._lock = Lock()

    def path_for(self, book_hash: str) -> Path:
        if not book_hash or "/" in book_hash or book_hash.startswith("."):
            raise ValueError(f"Invalid book hash: {book_hash!r}")
        return self.root / book_hash[:2] / book_hash

    def read(self, book_hash: str) -> bytes:
        return self.path_for(book_hash).read_bytes()

    def write(self, book_hash: str, content: bytes) -> None:
        path = self.path_for(book_hash)
        with self._lock:
            atomic_replace(path, content)
        logger.debug(f"Stored {len(content)} bytes for {book_hash} at {path}")

    def delete(self, book_hash: str) -> bool:
        with self._lock:
            removed = safe_unlink(self.path_for(book_hash))
        if removed:
            logger.info(f"Deleted local content for {book_hash}")
        return removed

    def exists(self, book_hash: str) -> bool:
        return self.path_for(book_hash).is_file()
