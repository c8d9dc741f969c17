"""Transfer orchestration and worker management.

Requests are validated synchronously and queued; a coordinator thread feeds
queued jobs into a bounded thread pool. Workers stream content to or from the
remote store, publish typed progress events, and write timestamps back to the
bookshelf when a transfer succeeds.
"""

import random
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from shelfsync.core import notifications
from shelfsync.core.config import config
from shelfsync.core.errors import (
    AlreadyDownloaded,
    AlreadyUploaded,
    AuthenticationRequired,
    BookNotFound,
    IdentityError,
    NotUploadedYet,
    PermanentTransferError,
    TransferCancelled,
    TransferError,
    TransferFailed,
    TransferInProgress,
    TransientTransferError,
)
from shelfsync.core.events import EventBus
from shelfsync.core.interfaces import AuthProvider, ContentStore, RemoteStore
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import (
    BookRecord,
    TransferDirection,
    TransferEvent,
    TransferJob,
    TransferProgress,
    TransferQueued,
    TransferStarted,
    TransferState,
    TransferTerminal,
    utcnow,
)
from shelfsync.library.bookshelf import Bookshelf
from shelfsync.library.identity import BookIdentityResolver, compute_book_hash
from shelfsync.library.reading import merge_progress
from shelfsync.sync.queue import TransferQueue

logger = setup_logger(__name__)

TRANSFER_TOPIC = "transfers"


def _book_topic(book_hash: str) -> str:
    return f"{TRANSFER_TOPIC}:{book_hash}"


class TransferOrchestrator:
    """Drives uploads and downloads of books against the remote store."""

    def __init__(
        self,
        bookshelf: Bookshelf,
        remote_store: RemoteStore,
        auth: AuthProvider,
        content_store: ContentStore,
        resolver: Optional[BookIdentityResolver] = None,
        queue: Optional[TransferQueue] = None,
        events: Optional[EventBus] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        loop_sleep_time: Optional[float] = None,
    ):
        self.bookshelf = bookshelf
        self.remote = remote_store
        self.auth = auth
        self.content = content_store
        self.resolver = resolver
        self.queue = queue if queue is not None else TransferQueue()
        self.events = events if events is not None else EventBus()

        self.max_retries = int(config.get("TRANSFER_MAX_RETRIES", 3) if max_retries is None else max_retries)
        self.retry_base_delay = float(
            config.get("TRANSFER_RETRY_BASE_DELAY", 1.0) if retry_base_delay is None else retry_base_delay
        )
        self.retry_max_delay = float(
            config.get("TRANSFER_RETRY_MAX_DELAY", 30.0) if retry_max_delay is None else retry_max_delay
        )
        self.loop_sleep_time = float(
            config.get("MAIN_LOOP_SLEEP_TIME", 0.5) if loop_sleep_time is None else loop_sleep_time
        )

        self._coordinator_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lifecycle_lock = threading.Lock()

    # =========================================================================
    # Requests
    # =========================================================================

    def request_upload(self, book_hash: str, force: bool = False, priority: int = 0) -> TransferJob:
        """Queue an upload of a book's content and reading progress.

        Raises:
            AuthenticationRequired: no active session
            BookNotFound: the hash is not on the bookshelf
            TransferInProgress: the book already has a queued or running job
            AlreadyUploaded: the book was uploaded before and force is not set
        """
        job = TransferJob(book_hash=book_hash, direction=TransferDirection.UPLOAD, priority=priority, force=force)
        return self._submit(job)

    def request_download(self, book_hash: str, priority: int = 0) -> TransferJob:
        """Queue a download of a book from the remote store.

        Raises:
            AuthenticationRequired: no active session
            BookNotFound: the hash is not on the bookshelf
            TransferInProgress: the book already has a queued or running job
            NotUploadedYet: the remote store never received the book
            AlreadyDownloaded: the local copy is current
        """
        job = TransferJob(book_hash=book_hash, direction=TransferDirection.DOWNLOAD, priority=priority)
        return self._submit(job)

    def check_eligibility(self, direction: TransferDirection, book_hash: str, force: bool = False) -> BookRecord:
        """Run request preconditions without queueing anything."""
        if self.auth.get_session() is None:
            raise AuthenticationRequired("Sign in to sync books")

        record = self.bookshelf.get(book_hash)
        if record is None:
            raise BookNotFound(book_hash)

        if self.queue.is_active(book_hash):
            raise TransferInProgress(book_hash)

        if direction == TransferDirection.UPLOAD:
            if record.uploaded_at is not None and not force:
                raise AlreadyUploaded(book_hash)
        else:
            if record.uploaded_at is None:
                raise NotUploadedYet(book_hash)
            if not record.download_is_stale:
                raise AlreadyDownloaded(book_hash)
        return record

    def _submit(self, job: TransferJob) -> TransferJob:
        self.check_eligibility(job.direction, job.book_hash, force=job.force)

        if not self.queue.add(job):
            # Lost a race with a concurrent request for the same book
            raise TransferInProgress(job.book_hash)

        logger.info(f"{job.direction.value.capitalize()} queued for {job.book_hash} (priority {job.priority})")
        self._publish(TransferQueued(job.book_hash, job.direction))
        return job

    def cancel(self, book_hash: str) -> bool:
        """Cancel a book's active transfer. Returns False if none was active."""
        job = self.queue.get_active(book_hash)
        previous = self.queue.cancel(book_hash)
        if previous is None:
            return False
        if previous == TransferState.QUEUED and job is not None:
            self._publish(TransferTerminal(book_hash, job.direction, TransferState.CANCELLED, job.reason))
        return True

    def cancel_all(self) -> int:
        """Cancel every queued and running transfer. Returns count cancelled."""
        cancelled = 0
        for states in self.queue.get_status().values():
            for book_hash, job in states.items():
                if job.is_active and self.cancel(book_hash):
                    cancelled += 1
        return cancelled

    # =========================================================================
    # Queries and observers
    # =========================================================================

    def get_job(self, book_hash: str) -> Optional[TransferJob]:
        return self.queue.get(book_hash)

    def state(self, book_hash: str) -> TransferState:
        return self.queue.state(book_hash)

    def progress(self, book_hash: str) -> Optional[float]:
        """Progress of the book's active transfer, or None when idle."""
        job = self.queue.get_active(book_hash)
        return job.progress if job else None

    def queue_status(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Jobs grouped by state value, serialized for display."""
        status = self.queue.get_status()
        result: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for state, jobs in status.items():
            entries = {}
            for book_hash, job in jobs.items():
                entry = job.to_dict()
                record = self.bookshelf.get(book_hash)
                entry["title"] = record.title if record else None
                entries[book_hash] = entry
            result[state.value] = entries
        return result

    def clear_completed(self) -> int:
        return self.queue.clear_completed()

    def subscribe(
        self,
        callback: Callable[[TransferEvent], None],
        book_hash: Optional[str] = None,
    ) -> Callable[[], None]:
        """Receive transfer events for one book, or for all books when book_hash is None."""
        topic = _book_topic(book_hash) if book_hash else TRANSFER_TOPIC
        return self.events.subscribe(topic, callback)

    def _publish(self, event: TransferEvent) -> None:
        self.events.publish(_book_topic(event.book_hash), event)
        self.events.publish(TRANSFER_TOPIC, event)

    # =========================================================================
    # Worker lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the transfer coordinator thread. Safe to call multiple times."""
        with self._lifecycle_lock:
            if self._coordinator_thread is not None and self._coordinator_thread.is_alive():
                logger.debug("Transfer coordinator already started")
                return
            self._stop_event.clear()
            self._coordinator_thread = threading.Thread(
                target=self._coordinator_loop,
                daemon=True,
                name="TransferCoordinator",
            )
            self._coordinator_thread.start()
        logger.info(f"Transfer coordinator started with {self.queue.max_active} concurrent workers")

    def stop(self, cancel_running: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the coordinator, optionally cancelling running transfers first.

        Queued jobs are always retired as cancelled since nothing will start
        them once the coordinator exits.
        """
        with self._lifecycle_lock:
            thread = self._coordinator_thread
            self._stop_event.set()
            for entry in self.queue.get_queue_order():
                self.cancel(entry["hash"])
            if thread is None:
                return
            if cancel_running:
                for book_hash in self.queue.get_active_transfers():
                    self.cancel(book_hash)
            self.queue.wake()
        thread.join(timeout)
        with self._lifecycle_lock:
            if not thread.is_alive():
                self._coordinator_thread = None
        logger.info("Transfer coordinator stopped")

    @property
    def running(self) -> bool:
        thread = self._coordinator_thread
        return thread is not None and thread.is_alive()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        return self.queue.wait_until_idle(timeout)

    def _coordinator_loop(self) -> None:
        """Feed queued jobs to a thread pool sized to the concurrency limit."""
        max_workers = self.queue.max_active
        logger.info(f"Starting transfer loop with {max_workers} workers")

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="Transfer") as executor:
            active_futures: Dict[Future, str] = {}

            while not self._stop_event.is_set():
                completed_futures = [f for f in active_futures if f.done()]
                for future in completed_futures:
                    book_hash = active_futures.pop(future)
                    try:
                        future.result()
                    except Exception as e:
                        logger.error_trace(f"Transfer worker exception for {book_hash}: {e}")

                while len(active_futures) < max_workers:
                    job = self.queue.get_next()
                    if job is None:
                        break
                    future = executor.submit(self._process_job, job)
                    active_futures[future] = job.book_hash

                self.queue.wait_for_work(timeout=self.loop_sleep_time)

    # =========================================================================
    # Job execution
    # =========================================================================

    def _process_job(self, job: TransferJob) -> None:
        """Run one job to a terminal state. Never leaves a job in progress."""
        logger.info(f"Starting {job.direction.value} for {job.book_hash}")
        self._publish(TransferStarted(job.book_hash, job.direction))

        try:
            self._run_with_retries(job)
        except TransferCancelled as e:
            logger.info(f"{job.direction.value.capitalize()} cancelled: {job.book_hash}")
            self._finish(job, TransferState.CANCELLED, str(e) or "Cancelled")
        except TransferFailed as e:
            logger.warning(f"{job.direction.value.capitalize()} failed for {job.book_hash}: {e}")
            self._finish(job, TransferState.FAILED, str(e))
        except (PermanentTransferError, IdentityError) as e:
            logger.warning(f"{job.direction.value.capitalize()} failed for {job.book_hash}: {type(e).__name__}: {e}")
            self._finish(job, TransferState.FAILED, f"{type(e).__name__}: {e}")
        except Exception as e:
            if job.cancel_flag.is_set():
                logger.info(f"{job.direction.value.capitalize()} cancelled during error handling: {job.book_hash}")
                self._finish(job, TransferState.CANCELLED, "Cancelled")
            else:
                logger.error_trace(f"Error during {job.direction.value} of {job.book_hash}: {e}")
                self._finish(job, TransferState.FAILED, f"{type(e).__name__}: {e}")
        else:
            if job.progress < 100:
                self._report_progress(job, 100.0)
            logger.info(f"{job.direction.value.capitalize()} complete: {job.book_hash}")
            self._finish(job, TransferState.SUCCEEDED, None)

    def _run_with_retries(self, job: TransferJob) -> None:
        run = self._upload if job.direction == TransferDirection.UPLOAD else self._download

        while True:
            self._checkpoint(job)
            job.attempts += 1
            try:
                run(job)
                return
            except TransientTransferError as e:
                if job.attempts > self.max_retries:
                    raise TransferFailed(f"Retries exhausted after {job.attempts} attempts: {e}") from e
                delay = self._backoff_delay(job.attempts)
                logger.warning(
                    f"Transient error on {job.direction.value} of {job.book_hash} "
                    f"(attempt {job.attempts}/{self.max_retries + 1}): {e}; retrying in {delay:.1f}s"
                )
                if job.cancel_flag.wait(delay):
                    raise TransferCancelled("Cancelled during retry backoff") from e

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self.retry_max_delay, self.retry_base_delay * (2 ** (attempt - 1)))
        # Jitter so retries of a bulk batch do not hit the store in lockstep
        return delay + random.uniform(0, delay * 0.1) if delay > 0 else 0.0

    def _checkpoint(self, job: TransferJob) -> None:
        if job.cancel_flag.is_set():
            raise TransferCancelled("Cancelled")

    def _report_progress(self, job: TransferJob, value: float) -> None:
        """Publish a progress update, dropping values that would move backwards."""
        value = max(0.0, min(100.0, float(value)))
        if value < job.progress:
            if job.attempts > 1:
                logger.debug(f"Retry of {job.book_hash} at {value:.1f}% is behind reported {job.progress:.1f}%")
            else:
                logger.warning(
                    f"Regressive progress for {job.book_hash}: {value:.1f}% after {job.progress:.1f}%, ignoring"
                )
            return
        if value == job.progress:
            return
        job.progress = value
        self._publish(TransferProgress(job.book_hash, job.direction, value))

    def _verify_identity(self, content: bytes, book_hash: str) -> None:
        if self.resolver is not None:
            self.resolver.verify(content, book_hash)
        elif compute_book_hash(content) != book_hash:
            raise IdentityError(f"Content does not match hash {book_hash}")

    def _upload(self, job: TransferJob) -> None:
        try:
            content = self.content.read(job.book_hash)
        except (OSError, KeyError) as e:
            raise PermanentTransferError(f"Local content unavailable: {e}") from e
        self._verify_identity(content, job.book_hash)

        stream = self.remote.put(job.book_hash, content)
        try:
            for percentage in stream:
                self._checkpoint(job)
                self._report_progress(job, percentage)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        # Bytes already sent stay on the remote, but a cancelled job never reports success
        self._checkpoint(job)
        self._sync_reading_progress(job)

        now = utcnow()
        changes = {"uploaded_at": now, "remote_modified_at": now}
        record = self.bookshelf.get(job.book_hash)
        if record is not None and record.downloaded_at is not None:
            # The local copy is the one the remote now holds
            changes["downloaded_at"] = now
        self.bookshelf.update(job.book_hash, **changes)

    def _download(self, job: TransferJob) -> None:
        fetch = self.remote.get(job.book_hash)
        try:
            for percentage in fetch.iter_progress():
                self._checkpoint(job)
                self._report_progress(job, percentage)
        finally:
            fetch.close()

        self._checkpoint(job)
        content = fetch.content
        self._verify_identity(content, job.book_hash)
        self.content.write(job.book_hash, content)
        self._sync_reading_progress(job)

        now = utcnow()
        remote_modified = fetch.last_modified
        if isinstance(remote_modified, datetime) and remote_modified.tzinfo is None:
            remote_modified = remote_modified.replace(tzinfo=timezone.utc)
        if not isinstance(remote_modified, datetime) or remote_modified > now:
            remote_modified = now
        self.bookshelf.update(job.book_hash, downloaded_at=now, remote_modified_at=remote_modified)

    def _sync_reading_progress(self, job: TransferJob) -> None:
        """Merge reading progress between device and remote. Failures are logged only."""
        record = self.bookshelf.get(job.book_hash)
        if record is None:
            return
        try:
            remote_progress = self.remote.get_progress(job.book_hash)
            merged = merge_progress(record.progress, remote_progress)
            if merged is None:
                return
            if merged != record.progress:
                self.bookshelf.update(job.book_hash, progress=merged)
            if merged != remote_progress:
                self.remote.put_progress(job.book_hash, merged)
        except (TransferError, OSError, ValueError) as e:
            logger.warning(f"Reading progress sync failed for {job.book_hash}: {type(e).__name__}: {e}")

    def _finish(self, job: TransferJob, state: TransferState, reason: Optional[str]) -> None:
        # Observers see the terminal event before the job is retired, so a
        # waiter on job.done always finds the event already delivered.
        self._publish(TransferTerminal(job.book_hash, job.direction, state, reason))
        self.queue.release(job.book_hash, state, reason)
        self._notify(job, state, reason)

    def _notify(self, job: TransferJob, state: TransferState, reason: Optional[str]) -> None:
        if state == TransferState.SUCCEEDED:
            event = notifications.NotificationEvent.TRANSFER_COMPLETE
        elif state == TransferState.FAILED:
            event = notifications.NotificationEvent.TRANSFER_FAILED
        else:
            return
        record = self.bookshelf.get(job.book_hash)
        context = notifications.NotificationContext(
            event=event,
            title=record.title if record else "",
            author=record.author if record else "",
            direction=job.direction.value,
            book_hash=job.book_hash,
            error_message=reason,
        )
        notifications.notify(event, context)
