"""Thread-safe in-memory cache with optional TTL and request coalescing."""

import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from shelfsync.core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CacheService:
    """Thread-safe in-memory cache.

    ``ttl=None`` keeps an entry until it is invalidated. When ``max_size`` is
    reached the oldest tenth of the entries is dropped; ``max_size=0`` never
    evicts.
    """

    def __init__(self, max_size: int = 1000):
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._max_size = max_size

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(time.time()):
                del self._entries[key]
                return None
            return entry.value

    def contains(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = time.time() + ttl if ttl is not None else None
        with self._lock:
            # Re-setting a key moves it to the young end
            self._entries.pop(key, None)
            if self._max_size and len(self._entries) >= self._max_size:
                self._evict_oldest()
            self._entries[key] = CacheEntry(value, expires_at)

    def invalidate(self, key: str) -> bool:
        """Remove one entry. Returns True if it was cached."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """Drop expired entries. Returns count removed."""
        now = time.time()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"Dropped {len(stale)} expired cache entries")
        return len(stale)

    def _evict_oldest(self) -> None:
        """Called with the lock held."""
        for _ in range(max(1, len(self._entries) // 10)):
            self._entries.popitem(last=False)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "max_size": self._max_size}


class RequestCoalescer:
    """Collapses concurrent loads of the same key into one shared Future.

    The first caller for a key becomes the leader and runs the loader; callers
    arriving while it runs receive the leader's Future.
    """

    def __init__(self):
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def claim(self, key: str) -> Tuple[Future, bool]:
        """Return (future, is_leader) for key."""
        with self._lock:
            future = self._inflight.get(key)
            if future is not None:
                return future, False
            future = Future()
            future.set_running_or_notify_cancel()
            self._inflight[key] = future
            return future, True

    def run(self, key: str, future: Future, loader: Callable[[], Any]) -> None:
        """Run loader as the leader for key and settle the shared future."""
        try:
            future.set_result(loader())
        except Exception as e:
            future.set_exception(e)
        finally:
            with self._lock:
                if self._inflight.get(key) is future:
                    del self._inflight[key]

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)
