"""Selection state and bulk upload/download/delete over selected books."""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from shelfsync.core.errors import AuthenticationRequired, TransferPreconditionError
from shelfsync.core.events import EventBus
from shelfsync.core.interfaces import ContentStore
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import SelectionChange, TransferDirection, TransferJob, TransferState
from shelfsync.library.bookshelf import Bookshelf
from shelfsync.sync.orchestrator import TransferOrchestrator

logger = setup_logger(__name__)

SELECTION_TOPIC = "selection"


class BulkItemStatus(str, Enum):
    QUEUED = "queued"
    SKIPPED = "skipped"
    FAILED = "failed"
    DELETED = "deleted"


@dataclass(frozen=True)
class BulkItem:
    status: BulkItemStatus
    reason: Optional[str] = None

    def __str__(self) -> str:
        label = self.status.value.capitalize()
        return f"{label}:{self.reason}" if self.reason else label


class BulkResult:
    """Per-book outcome of a bulk action.

    ``items`` is available immediately. Queued items keep running after the
    call returns; ``wait`` blocks until each of them reaches a terminal state.
    """

    def __init__(self, action: str):
        self.action = action
        self.items: Dict[str, BulkItem] = {}
        self.jobs: Dict[str, TransferJob] = {}

    def add(self, book_hash: str, status: BulkItemStatus, reason: Optional[str] = None,
            job: Optional[TransferJob] = None) -> None:
        self.items[book_hash] = BulkItem(status, reason)
        if job is not None:
            self.jobs[book_hash] = job

    def hashes_with(self, status: BulkItemStatus) -> List[str]:
        return [h for h, item in self.items.items() if item.status == status]

    @property
    def queued(self) -> List[str]:
        return self.hashes_with(BulkItemStatus.QUEUED)

    @property
    def skipped(self) -> List[str]:
        return self.hashes_with(BulkItemStatus.SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self.hashes_with(BulkItemStatus.FAILED)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued job finishes. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for job in self.jobs.values():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not job.wait(remaining):
                return False
        return True

    @property
    def finalized(self) -> bool:
        return all(job.is_terminal for job in self.jobs.values())

    def final_outcomes(self) -> Dict[str, str]:
        """Terminal state per queued book, or the bulk status for the rest."""
        outcomes: Dict[str, str] = {}
        for book_hash, item in self.items.items():
            job = self.jobs.get(book_hash)
            outcomes[book_hash] = job.state.value if job is not None else str(item)
        return outcomes

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in self.items.values():
            counts[item.status.value] = counts.get(item.status.value, 0) + 1
        return counts


class SelectionController:
    """Tracks the user's selected books and runs bulk actions over them."""

    def __init__(
        self,
        bookshelf: Bookshelf,
        orchestrator: TransferOrchestrator,
        content_store: Optional[ContentStore] = None,
        events: Optional[EventBus] = None,
    ):
        self.bookshelf = bookshelf
        self.orchestrator = orchestrator
        self.content = content_store
        self._events = events if events is not None else EventBus()
        self._selected: Dict[str, None] = {}  # insertion-ordered set
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, book_hash: str) -> bool:
        """Add a book to the selection. Hashes not on the bookshelf are ignored."""
        if not self.bookshelf.contains(book_hash):
            logger.debug(f"Ignoring selection of unknown book {book_hash}")
            return False
        with self._lock:
            if book_hash in self._selected:
                return False
            self._selected[book_hash] = None
        self._notify()
        return True

    def deselect(self, book_hash: str) -> bool:
        with self._lock:
            if book_hash not in self._selected:
                return False
            del self._selected[book_hash]
        self._notify()
        return True

    def toggle(self, book_hash: str) -> bool:
        """Flip a book's selection. Returns True if it is now selected."""
        if self.is_selected(book_hash):
            self.deselect(book_hash)
            return False
        return self.select(book_hash)

    def select_all(self, hashes: Optional[Iterable[str]] = None) -> int:
        """Select the given books (default: the whole shelf). Returns count added."""
        candidates = self.bookshelf.hashes() if hashes is None else list(hashes)
        added = 0
        with self._lock:
            for book_hash in candidates:
                if book_hash in self._selected or not self.bookshelf.contains(book_hash):
                    continue
                self._selected[book_hash] = None
                added += 1
        if added:
            self._notify()
        return added

    def deselect_all(self) -> None:
        with self._lock:
            had_selection = bool(self._selected)
            self._selected.clear()
        if had_selection:
            self._notify()

    def selected(self) -> List[str]:
        with self._lock:
            return list(self._selected)

    def is_selected(self, book_hash: str) -> bool:
        with self._lock:
            return book_hash in self._selected

    def subscribe(self, callback: Callable[[SelectionChange], None]) -> Callable[[], None]:
        return self._events.subscribe(SELECTION_TOPIC, callback)

    def _notify(self) -> None:
        self._events.publish(SELECTION_TOPIC, SelectionChange(frozenset(self.selected())))

    # ------------------------------------------------------------------
    # Bulk actions
    # ------------------------------------------------------------------

    def _resolve_selection(self, selection: Optional[Iterable[str]]) -> List[str]:
        hashes = self.selected() if selection is None else list(selection)
        # Keep selection order, drop duplicates
        return list(dict.fromkeys(hashes))

    def bulk_upload(self, selection: Optional[Iterable[str]] = None, force: bool = False,
                    priority: int = 0) -> BulkResult:
        return self._bulk_transfer(TransferDirection.UPLOAD, selection, force=force, priority=priority)

    def bulk_download(self, selection: Optional[Iterable[str]] = None, priority: int = 0) -> BulkResult:
        return self._bulk_transfer(TransferDirection.DOWNLOAD, selection, priority=priority)

    def _bulk_transfer(
        self,
        direction: TransferDirection,
        selection: Optional[Iterable[str]],
        force: bool = False,
        priority: int = 0,
    ) -> BulkResult:
        """Request one transfer per book; all share one priority, in selection order."""
        result = BulkResult(f"bulk_{direction.value}")

        for book_hash in self._resolve_selection(selection):
            try:
                if direction == TransferDirection.UPLOAD:
                    job = self.orchestrator.request_upload(book_hash, force=force, priority=priority)
                else:
                    job = self.orchestrator.request_download(book_hash, priority=priority)
            except TransferPreconditionError as e:
                result.add(book_hash, BulkItemStatus.SKIPPED, e.reason)
            except AuthenticationRequired:
                result.add(book_hash, BulkItemStatus.FAILED, "authentication_required")
            except Exception as e:
                logger.error_trace(f"Error requesting {direction.value} for {book_hash}: {e}")
                result.add(book_hash, BulkItemStatus.FAILED, f"{type(e).__name__}: {e}")
            else:
                result.add(book_hash, BulkItemStatus.QUEUED, job=job)

        logger.info(f"Bulk {direction.value}: {result.summary()}")
        return result

    def bulk_delete(self, selection: Optional[Iterable[str]] = None) -> BulkResult:
        """Remove books and their local content from the device.

        Books with a queued or running transfer are skipped.
        """
        result = BulkResult("bulk_delete")

        for book_hash in self._resolve_selection(selection):
            if not self.bookshelf.contains(book_hash):
                result.add(book_hash, BulkItemStatus.SKIPPED, "not_in_library")
                continue
            if self.orchestrator.state(book_hash) in (TransferState.QUEUED, TransferState.IN_PROGRESS):
                result.add(book_hash, BulkItemStatus.SKIPPED, "transfer_in_progress")
                continue
            try:
                if self.content is not None:
                    self.content.delete(book_hash)
            except OSError as e:
                logger.warning(f"Failed to delete local content for {book_hash}: {e}")
                result.add(book_hash, BulkItemStatus.FAILED, f"{type(e).__name__}: {e}")
                continue
            self.bookshelf.remove(book_hash)
            self.deselect(book_hash)
            result.add(book_hash, BulkItemStatus.DELETED)

        logger.info(f"Bulk delete: {result.summary()}")
        return result
