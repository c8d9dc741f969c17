"""In-memory bookshelf: flat and series-grouped views over book records.

The bookshelf is the single source of truth for book state. Records are kept
in insertion order; replacing an existing hash keeps its original position.
Callers receive copies, so a listing is a consistent snapshot that later
writes do not mutate.
"""

import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Union

from shelfsync.core.events import EventBus
from shelfsync.core.interfaces import LibraryPersistence
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import BookRecord, LibraryChange, SeriesGroup, utcnow

logger = setup_logger(__name__)

LIBRARY_TOPIC = "library"

ShelfItem = Union[SeriesGroup, BookRecord]
BookFilter = Union[str, Callable[[BookRecord], bool], None]


def _matches_query(record: BookRecord, query: str) -> bool:
    needle = query.strip().lower()
    if not needle:
        return True
    haystack = (record.title, record.author, record.series)
    return any(needle in value.lower() for value in haystack if value)


def _series_sort_key(record: BookRecord):
    index = record.series_index
    return (index is None, index if index is not None else 0)


class Bookshelf:
    """Thread-safe index of BookRecords keyed by hash."""

    def __init__(self, events: Optional[EventBus] = None):
        self._records: "OrderedDict[str, BookRecord]" = OrderedDict()
        self._lock = threading.RLock()
        self._events = events if events is not None else EventBus()
        self._grouped: List[ShelfItem] = []

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert(self, record: BookRecord) -> BookRecord:
        """Insert or replace a record by hash."""
        stored = record.copy()
        with self._lock:
            self._records[stored.hash] = stored
            self._regroup()
        self._notify(LibraryChange("upserted", stored.hash))
        return stored.copy()

    def update(self, book_hash: str, **changes: Any) -> Optional[BookRecord]:
        """Apply field changes to a record atomically. Returns the new record, or None if absent."""
        with self._lock:
            current = self._records.get(book_hash)
            if current is None:
                return None
            changes.setdefault("updated_at", utcnow())
            updated = current.copy(**changes)
            self._records[book_hash] = updated
            self._regroup()
        self._notify(LibraryChange("upserted", book_hash))
        return updated.copy()

    def remove(self, book_hash: str) -> bool:
        with self._lock:
            if book_hash not in self._records:
                return False
            del self._records[book_hash]
            self._regroup()
        self._notify(LibraryChange("removed", book_hash))
        return True

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._regroup()
        self._notify(LibraryChange("loaded"))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, book_hash: str) -> Optional[BookRecord]:
        with self._lock:
            record = self._records.get(book_hash)
            return record.copy() if record else None

    def contains(self, book_hash: str) -> bool:
        with self._lock:
            return book_hash in self._records

    def hashes(self) -> List[str]:
        with self._lock:
            return list(self._records.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def list_flat(self) -> List[BookRecord]:
        with self._lock:
            return [record.copy() for record in self._records.values()]

    def list_grouped(self) -> List[ShelfItem]:
        """Books with a series folded into SeriesGroups; standalone books as-is."""
        with self._lock:
            return [
                SeriesGroup(item.name, [book.copy() for book in item.books])
                if isinstance(item, SeriesGroup) else item.copy()
                for item in self._grouped
            ]

    def get_group(self, series: str) -> Optional[SeriesGroup]:
        for item in self.list_grouped():
            if isinstance(item, SeriesGroup) and item.name == series:
                return item
        return None

    def count(self, book_filter: BookFilter = None) -> int:
        """Count books matching a search string or predicate.

        Series members count individually: a series of three matching books
        contributes three.
        """
        if book_filter is None:
            predicate = lambda record: True  # noqa: E731
        elif isinstance(book_filter, str):
            query = book_filter
            predicate = lambda record: _matches_query(record, query)  # noqa: E731
        else:
            predicate = book_filter

        total = 0
        with self._lock:
            for item in self._grouped:
                books = item.books if isinstance(item, SeriesGroup) else [item]
                total += sum(1 for book in books if predicate(book))
        return total

    def search(self, query: str) -> List[BookRecord]:
        with self._lock:
            return [r.copy() for r in self._records.values() if _matches_query(r, query)]

    # ------------------------------------------------------------------
    # Persistence and observers
    # ------------------------------------------------------------------

    def load(self, persistence: LibraryPersistence) -> int:
        """Replace the shelf with records from persistence. Returns count loaded."""
        records = persistence.load()
        with self._lock:
            self._records.clear()
            for record in records:
                self._records[record.hash] = record.copy()
            self._regroup()
            count = len(self._records)
        logger.info(f"Loaded {count} books into the bookshelf")
        self._notify(LibraryChange("loaded"))
        return count

    def save(self, persistence: LibraryPersistence) -> int:
        records = self.list_flat()
        persistence.save(records)
        logger.debug(f"Saved {len(records)} books")
        return len(records)

    def subscribe(self, callback: Callable[[LibraryChange], None]) -> Callable[[], None]:
        return self._events.subscribe(LIBRARY_TOPIC, callback)

    def snapshot(self) -> Dict[str, BookRecord]:
        with self._lock:
            return {h: r.copy() for h, r in self._records.items()}

    def _regroup(self) -> None:
        """Rebuild the grouped view. Called with lock held."""
        grouped: List[ShelfItem] = []
        groups: Dict[str, SeriesGroup] = {}
        for record in self._records.values():
            series = (record.series or "").strip()
            if not series:
                grouped.append(record)
                continue
            group = groups.get(series)
            if group is None:
                group = SeriesGroup(series)
                groups[series] = group
                grouped.append(group)
            group.books.append(record)

        for group in groups.values():
            group.books.sort(key=_series_sort_key)
        self._grouped = grouped

    def _notify(self, change: LibraryChange) -> None:
        self._events.publish(LIBRARY_TOPIC, change)
