"""Atomic filesystem writes for concurrently updated library files.

Writers stage into a sibling temp file and rename over the destination, so
readers never observe a partially written book or library file.
"""

import os
import tempfile
from pathlib import Path

from shelfsync.core.logger import setup_logger

logger = setup_logger(__name__)


def atomic_replace(dest_path: Path, data: bytes) -> Path:
    """Write data to dest_path, replacing any existing file atomically.

    Args:
        dest_path: Final location of the file
        data: Bytes to write

    Returns:
        The destination path
    """
    dest_path = Path(dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=str(dest_path.parent), prefix=f".{dest_path.name}.", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, dest_path)
    except Exception:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return dest_path


def safe_unlink(path: Path) -> bool:
    """Remove a file if present. Returns True if something was removed."""
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Cleanup failed for {path}: {e}")
        raise
