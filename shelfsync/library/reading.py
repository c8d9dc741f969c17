"""Reading-progress conflict resolution between device and remote store."""

from datetime import datetime, timezone
from typing import Optional

from shelfsync.core.config import config
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import ReadingProgress

logger = setup_logger(__name__)

FURTHEST = "furthest"
LATEST = "latest"
POLICIES = (FURTHEST, LATEST)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _timestamp(progress: ReadingProgress) -> datetime:
    return progress.updated_at or _EPOCH


def merge_progress(
    local: Optional[ReadingProgress],
    remote: Optional[ReadingProgress],
    policy: Optional[str] = None,
) -> Optional[ReadingProgress]:
    """Pick the reading position both sides should converge on.

    ``furthest`` keeps the larger percentage and falls back to the newer
    timestamp on a tie; ``latest`` keeps the newer timestamp and falls back to
    the larger percentage.
    """
    if local is None:
        return remote
    if remote is None:
        return local

    policy = (policy or config.get("PROGRESS_MERGE_POLICY", FURTHEST) or FURTHEST).lower()
    if policy not in POLICIES:
        logger.warning(f"Unknown progress merge policy '{policy}', using '{FURTHEST}'")
        policy = FURTHEST

    if policy == LATEST:
        key = lambda p: (_timestamp(p), p.percentage)  # noqa: E731
    else:
        key = lambda p: (p.percentage, _timestamp(p))  # noqa: E731

    # Ties keep the local position.
    return remote if key(remote) > key(local) else local
