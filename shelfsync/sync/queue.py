"""Transfer queue with priority ordering and a bounded number of active slots."""

import heapq
import itertools
import threading
from typing import Any, Dict, List, Optional, Tuple

from shelfsync.core.config import config
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import TERMINAL_STATES, TransferJob, TransferState

logger = setup_logger(__name__)


class TransferQueue:
    """Pending and running transfer jobs, at most one per book hash.

    Jobs are ordered by ``(priority, arrival)``: lower priority values run
    sooner and equal priorities run FIFO. ``get_next`` only hands out a job
    while fewer than ``max_active`` jobs are in progress, which is the
    concurrency limit for the whole engine.
    """

    def __init__(self, max_active: Optional[int] = None):
        if max_active is None:
            max_active = int(config.get("MAX_CONCURRENT_TRANSFERS", 3))
        if max_active < 1:
            raise ValueError("max_active must be at least 1")
        self._max_active = max_active
        self._heap: List[Tuple[int, int, str]] = []
        self._entries: Dict[str, Tuple[int, int]] = {}
        self._jobs: Dict[str, TransferJob] = {}
        self._in_progress: set = set()
        self._finished: Dict[str, TransferJob] = {}
        self._sequence = itertools.count()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def max_active(self) -> int:
        return self._max_active

    def set_max_active(self, max_active: int) -> None:
        if max_active < 1:
            raise ValueError("max_active must be at least 1")
        with self._cond:
            self._max_active = max_active
            self._cond.notify_all()

    def add(self, job: TransferJob) -> bool:
        """Queue a job. Returns False if the book already has an active job."""
        with self._cond:
            if self._closed:
                raise RuntimeError("Transfer queue is closed")
            if job.book_hash in self._jobs:
                return False
            job.state = TransferState.QUEUED
            entry = (job.priority, next(self._sequence))
            self._entries[job.book_hash] = entry
            heapq.heappush(self._heap, (*entry, job.book_hash))
            self._jobs[job.book_hash] = job
            self._finished.pop(job.book_hash, None)
            self._cond.notify_all()
        logger.debug(f"Queued {job.direction.value} for {job.book_hash} (priority {job.priority})")
        return True

    def get_next(self) -> Optional[TransferJob]:
        """Claim the next queued job if a slot is free. Marks it in progress."""
        with self._cond:
            if len(self._in_progress) >= self._max_active:
                return None
            while self._heap:
                priority, seq, book_hash = heapq.heappop(self._heap)
                if self._entries.get(book_hash) != (priority, seq):
                    # Stale entry left by a cancel or reprioritisation
                    continue
                del self._entries[book_hash]
                job = self._jobs[book_hash]
                job.state = TransferState.IN_PROGRESS
                self._in_progress.add(book_hash)
                return job
            return None

    def release(self, book_hash: str, state: TransferState, reason: Optional[str] = None) -> Optional[TransferJob]:
        """Retire an active job in a terminal state and free its slot."""
        if state not in TERMINAL_STATES:
            raise ValueError(f"Cannot release a job in non-terminal state {state}")
        with self._cond:
            job = self._jobs.pop(book_hash, None)
            if job is None:
                return None
            self._entries.pop(book_hash, None)
            self._in_progress.discard(book_hash)
            job.state = state
            job.reason = reason
            self._finished[book_hash] = job
            self._cond.notify_all()
        job.done.set()
        return job

    def cancel(self, book_hash: str) -> Optional[TransferState]:
        """Cancel a book's active job.

        A queued job is retired immediately as CANCELLED. An in-progress job
        only has its cancel flag set; the worker stops at its next checkpoint.
        Returns the job's state before cancelling, or None if nothing was active.
        """
        with self._cond:
            job = self._jobs.get(book_hash)
            if job is None:
                return None
            previous = job.state
            if previous == TransferState.QUEUED:
                del self._jobs[book_hash]
                self._entries.pop(book_hash, None)
                job.state = TransferState.CANCELLED
                job.reason = "Cancelled before start"
                job.cancel_flag.set()
                self._finished[book_hash] = job
                self._cond.notify_all()
            else:
                job.cancel_flag.set()

        if previous == TransferState.QUEUED:
            job.done.set()
            logger.info(f"Removed queued {job.direction.value} for {book_hash}")
        else:
            logger.info(f"Cancellation requested for running {job.direction.value} of {book_hash}")
        return previous

    def get(self, book_hash: str) -> Optional[TransferJob]:
        """The active job for a book, else its most recent finished job."""
        with self._cond:
            return self._jobs.get(book_hash) or self._finished.get(book_hash)

    def get_active(self, book_hash: str) -> Optional[TransferJob]:
        with self._cond:
            return self._jobs.get(book_hash)

    def state(self, book_hash: str) -> TransferState:
        with self._cond:
            job = self._jobs.get(book_hash)
            return job.state if job else TransferState.IDLE

    def is_active(self, book_hash: str) -> bool:
        with self._cond:
            return book_hash in self._jobs

    def set_priority(self, book_hash: str, priority: int) -> bool:
        """Change a queued job's priority (lower = sooner). Keeps its arrival order."""
        with self._cond:
            entry = self._entries.get(book_hash)
            if entry is None:
                return False
            new_entry = (priority, entry[1])
            self._entries[book_hash] = new_entry
            heapq.heappush(self._heap, (*new_entry, book_hash))
            self._jobs[book_hash].priority = priority
            self._cond.notify_all()
            return True

    def reorder_queue(self, priorities: Dict[str, int]) -> bool:
        """Bulk reprioritise queued jobs. Returns True if any job changed."""
        changed = False
        for book_hash, priority in priorities.items():
            changed = self.set_priority(book_hash, priority) or changed
        return changed

    def get_queue_order(self) -> List[Dict[str, Any]]:
        """Queued jobs in the order they will be started."""
        with self._cond:
            ordered = sorted((entry, h) for h, entry in self._entries.items())
            return [
                {"hash": h, "priority": entry[0], "position": index, "direction": self._jobs[h].direction.value}
                for index, (entry, h) in enumerate(ordered)
            ]

    def get_status(self) -> Dict[TransferState, Dict[str, TransferJob]]:
        """Jobs grouped by state, including retained finished jobs."""
        status: Dict[TransferState, Dict[str, TransferJob]] = {
            state: {} for state in TransferState if state != TransferState.IDLE
        }
        with self._cond:
            for book_hash, job in self._finished.items():
                status[job.state][book_hash] = job
            for book_hash, job in self._jobs.items():
                status[job.state][book_hash] = job
        return status

    def get_active_transfers(self) -> List[str]:
        with self._cond:
            return sorted(self._in_progress)

    def in_progress_count(self) -> int:
        with self._cond:
            return len(self._in_progress)

    def queued_count(self) -> int:
        with self._cond:
            return len(self._entries)

    def __len__(self) -> int:
        with self._cond:
            return len(self._jobs)

    def clear_completed(self) -> int:
        """Forget finished jobs. Returns count removed."""
        with self._cond:
            removed = len(self._finished)
            self._finished.clear()
            return removed

    def has_startable_work(self) -> bool:
        with self._cond:
            return self._can_start()

    def _can_start(self) -> bool:
        return bool(self._entries) and len(self._in_progress) < self._max_active

    def wait_for_work(self, timeout: Optional[float] = None) -> bool:
        """Block until a job can be started or the queue closes."""
        with self._cond:
            return self._cond.wait_for(lambda: self._closed or self._can_start(), timeout=timeout)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is queued or in progress."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._jobs, timeout=timeout)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def wake(self) -> None:
        """Wake any thread blocked in wait_for_work."""
        with self._cond:
            self._cond.notify_all()
