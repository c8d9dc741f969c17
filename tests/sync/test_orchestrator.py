"""Tests for transfer orchestration: requests, workers, retries and cancellation."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import book_bytes, wait_for
from shelfsync.core.errors import (
    AlreadyDownloaded,
    AlreadyUploaded,
    AuthenticationRequired,
    AuthorizationRejected,
    BookNotFound,
    NotUploadedYet,
    TransferInProgress,
    TransientTransferError,
)
from shelfsync.core.interfaces import RemoteFetch
from shelfsync.core.models import (
    ReadingProgress,
    TransferProgress,
    TransferQueued,
    TransferStarted,
    TransferState,
    TransferTerminal,
)

PAST = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _collect(orchestrator, book_hash=None):
    events = []
    orchestrator.subscribe(events.append, book_hash=book_hash)
    return events


def _progress_values(events):
    return [e.progress for e in events if isinstance(e, TransferProgress)]


# =============================================================================
# Request preconditions
# =============================================================================

def test_upload_of_unknown_book_is_rejected(make_orchestrator):
    orchestrator = make_orchestrator(start=False)

    with pytest.raises(BookNotFound) as exc_info:
        orchestrator.request_upload("0" * 32)

    assert exc_info.value.reason == "not_in_library"


def test_signed_out_request_creates_no_job(make_orchestrator, add_book, auth):
    orchestrator = make_orchestrator(start=False)
    book = add_book("signed-out")
    auth.sign_out()

    with pytest.raises(AuthenticationRequired):
        orchestrator.request_upload(book.hash)

    assert len(orchestrator.queue) == 0
    assert orchestrator.get_job(book.hash) is None


def test_download_of_never_uploaded_book_is_rejected(make_orchestrator, add_book):
    orchestrator = make_orchestrator(start=False)
    book = add_book("local-only")

    with pytest.raises(NotUploadedYet):
        orchestrator.request_download(book.hash)

    assert orchestrator.get_job(book.hash) is None
    assert orchestrator.state(book.hash) == TransferState.IDLE


def test_repeat_upload_requires_force(make_orchestrator, add_book):
    orchestrator = make_orchestrator(start=False)
    book = add_book("uploaded", uploaded_at=PAST)

    with pytest.raises(AlreadyUploaded):
        orchestrator.request_upload(book.hash)

    job = orchestrator.request_upload(book.hash, force=True)
    assert job.state == TransferState.QUEUED


def test_current_download_is_rejected_until_remote_changes(make_orchestrator, add_book):
    orchestrator = make_orchestrator(start=False)
    book = add_book("downloaded", uploaded_at=PAST, downloaded_at=PAST + timedelta(hours=1),
                    remote_modified_at=PAST)

    with pytest.raises(AlreadyDownloaded):
        orchestrator.request_download(book.hash)

    orchestrator.bookshelf.update(book.hash, remote_modified_at=PAST + timedelta(hours=2))
    assert orchestrator.request_download(book.hash).state == TransferState.QUEUED


def test_second_request_while_running_is_rejected(make_orchestrator, add_book, remote_store):
    remote_store.gate = threading.Event()
    orchestrator = make_orchestrator()
    book = add_book("busy")
    job = orchestrator.request_upload(book.hash)
    assert remote_store.entered.wait(5)

    with pytest.raises(TransferInProgress):
        orchestrator.request_upload(book.hash, force=True)
    with pytest.raises(TransferInProgress):
        orchestrator.request_download(book.hash)

    remote_store.gate.set()
    assert job.wait(5)
    assert job.state == TransferState.SUCCEEDED
    assert remote_store.put_calls == 1


# =============================================================================
# Successful transfers
# =============================================================================

def test_upload_reports_progress_and_records_timestamp(make_orchestrator, add_book, remote_store, bookshelf):
    orchestrator = make_orchestrator()
    book = add_book("upload")
    events = _collect(orchestrator, book.hash)

    job = orchestrator.request_upload(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.SUCCEEDED
    assert isinstance(events[0], TransferQueued)
    assert isinstance(events[1], TransferStarted)
    assert isinstance(events[-1], TransferTerminal)
    assert events[-1].outcome == TransferState.SUCCEEDED
    assert _progress_values(events) == [25.0, 50.0, 75.0, 100.0]

    record = bookshelf.get(book.hash)
    assert record.uploaded_at is not None
    assert record.remote_modified_at == record.uploaded_at
    assert remote_store.objects[book.hash] == book_bytes("upload")
    assert orchestrator.state(book.hash) == TransferState.IDLE


def test_regressive_progress_is_never_published(make_orchestrator, add_book, remote_store):
    remote_store.steps = [10.0, 60.0, 40.0, 100.0]
    orchestrator = make_orchestrator()
    book = add_book("regressive")
    events = _collect(orchestrator, book.hash)

    job = orchestrator.request_upload(book.hash)
    assert job.wait(5)

    assert _progress_values(events) == [10.0, 60.0, 100.0]


def test_download_stores_content_and_records_remote_time(
    make_orchestrator, add_book, remote_store, content_store, bookshelf
):
    orchestrator = make_orchestrator()
    book = add_book("download", uploaded_at=PAST)
    content = content_store.read(book.hash)
    content_store.delete(book.hash)
    remote_store.objects[book.hash] = content
    remote_store.modified[book.hash] = PAST
    events = _collect(orchestrator)

    job = orchestrator.request_download(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.SUCCEEDED
    assert content_store.read(book.hash) == content
    progress = _progress_values(events)
    assert progress == sorted(progress)
    assert progress[-1] == 100.0

    record = bookshelf.get(book.hash)
    assert record.downloaded_at is not None
    assert record.remote_modified_at == PAST
    assert not record.download_is_stale
    with pytest.raises(AlreadyDownloaded):
        orchestrator.request_download(book.hash)


def test_upload_pushes_local_reading_progress(make_orchestrator, add_book, remote_store):
    local = ReadingProgress(location="chapter-9", percentage=80.0, updated_at=PAST)
    orchestrator = make_orchestrator()
    book = add_book("progress-up", progress=local)

    assert orchestrator.request_upload(book.hash).wait(5)

    assert remote_store.reading[book.hash] == local


def test_download_adopts_further_remote_progress(make_orchestrator, add_book, remote_store, content_store, bookshelf):
    local = ReadingProgress(location="chapter-2", percentage=20.0, updated_at=PAST + timedelta(days=1))
    remote = ReadingProgress(location="chapter-7", percentage=70.0, updated_at=PAST)
    orchestrator = make_orchestrator()
    book = add_book("progress-down", uploaded_at=PAST, progress=local)
    remote_store.objects[book.hash] = content_store.read(book.hash)
    remote_store.reading[book.hash] = remote

    assert orchestrator.request_download(book.hash).wait(5)

    assert bookshelf.get(book.hash).progress == remote
    assert remote_store.reading[book.hash] == remote


# =============================================================================
# Failures and retries
# =============================================================================

def test_transient_failure_is_retried(make_orchestrator, add_book, remote_store, bookshelf):
    remote_store.failures = [TransientTransferError("connection reset")]
    orchestrator = make_orchestrator()
    book = add_book("retry")
    events = _collect(orchestrator, book.hash)

    job = orchestrator.request_upload(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.SUCCEEDED
    assert job.attempts == 2
    assert remote_store.put_calls == 2
    assert _progress_values(events) == [25.0, 50.0, 75.0, 100.0]
    assert bookshelf.get(book.hash).uploaded_at is not None


def test_exhausted_retries_fail_the_job(make_orchestrator, add_book, remote_store, bookshelf):
    remote_store.failures = [TransientTransferError("503")] * 3
    orchestrator = make_orchestrator(max_retries=2)
    book = add_book("exhausted")
    events = _collect(orchestrator, book.hash)

    job = orchestrator.request_upload(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.FAILED
    assert job.attempts == 3
    assert "Retries exhausted" in job.reason
    assert events[-1].outcome == TransferState.FAILED
    assert bookshelf.get(book.hash).uploaded_at is None


def test_permanent_failure_is_not_retried(make_orchestrator, add_book, remote_store):
    remote_store.failures = [AuthorizationRejected("HTTP 401")]
    orchestrator = make_orchestrator()
    book = add_book("denied")

    job = orchestrator.request_upload(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.FAILED
    assert job.attempts == 1
    assert job.reason.startswith("AuthorizationRejected")
    assert remote_store.put_calls == 1


def test_content_not_matching_hash_fails(make_orchestrator, add_book, remote_store, content_store):
    orchestrator = make_orchestrator()
    book = add_book("tampered")
    content_store.write(book.hash, book_bytes("something else"))

    job = orchestrator.request_upload(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.FAILED
    assert job.reason.startswith("IdentityError")
    assert remote_store.put_calls == 0


def test_missing_local_content_fails(make_orchestrator, add_book, content_store):
    orchestrator = make_orchestrator()
    book = add_book("vanished")
    content_store.delete(book.hash)

    job = orchestrator.request_upload(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.FAILED
    assert "Local content unavailable" in job.reason


def test_book_can_be_retried_after_failure(make_orchestrator, add_book, remote_store):
    remote_store.failures = [AuthorizationRejected("HTTP 403")]
    orchestrator = make_orchestrator()
    book = add_book("second-chance")

    assert orchestrator.request_upload(book.hash).wait(5)
    job = orchestrator.request_upload(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.SUCCEEDED


# =============================================================================
# Cancellation and concurrency
# =============================================================================

def test_cancel_queued_job_has_no_side_effects(make_orchestrator, add_book, remote_store, bookshelf):
    orchestrator = make_orchestrator(start=False)
    book = add_book("cancel-queued")
    events = _collect(orchestrator, book.hash)
    job = orchestrator.request_upload(book.hash)

    assert orchestrator.cancel(book.hash) is True

    assert job.state == TransferState.CANCELLED
    assert events[-1] == TransferTerminal(book.hash, job.direction, TransferState.CANCELLED, job.reason)
    assert remote_store.put_calls == 0
    assert bookshelf.get(book.hash).uploaded_at is None
    assert orchestrator.cancel(book.hash) is False


def test_cancel_running_upload(make_orchestrator, add_book, remote_store, bookshelf):
    remote_store.gate = threading.Event()
    orchestrator = make_orchestrator()
    book = add_book("cancel-running")
    job = orchestrator.request_upload(book.hash)
    assert remote_store.entered.wait(5)

    assert orchestrator.cancel(book.hash) is True
    remote_store.gate.set()
    assert job.wait(5)

    assert job.state == TransferState.CANCELLED
    record = bookshelf.get(book.hash)
    assert record.uploaded_at is None
    assert record.remote_modified_at is None
    assert book.hash not in remote_store.objects


def test_concurrency_limit_is_enforced(make_orchestrator, add_book, remote_store):
    remote_store.gate = threading.Event()
    orchestrator = make_orchestrator(max_active=2)
    books = [add_book(f"limit-{i}") for i in range(5)]
    jobs = [orchestrator.request_upload(book.hash) for book in books]

    assert wait_for(lambda: orchestrator.queue.in_progress_count() == 2)
    time.sleep(0.05)
    assert orchestrator.queue.in_progress_count() == 2
    assert orchestrator.queue.queued_count() == 3
    # FIFO within equal priority
    assert orchestrator.queue.get_active_transfers() == sorted(b.hash for b in books[:2])

    remote_store.gate.set()
    for job in jobs:
        assert job.wait(5)
    assert all(job.state == TransferState.SUCCEEDED for job in jobs)


def test_cancel_all_cancels_queued_and_running(make_orchestrator, add_book, remote_store):
    remote_store.gate = threading.Event()
    orchestrator = make_orchestrator(max_active=1)
    first = orchestrator.request_upload(add_book("all-1").hash)
    second = orchestrator.request_upload(add_book("all-2").hash)
    assert remote_store.entered.wait(5)

    assert orchestrator.cancel_all() == 2
    remote_store.gate.set()

    assert first.wait(5) and second.wait(5)
    assert first.state == TransferState.CANCELLED
    assert second.state == TransferState.CANCELLED


def test_queue_status_includes_titles(make_orchestrator, add_book):
    orchestrator = make_orchestrator(start=False)
    book = add_book("status", title="Status Report")
    orchestrator.request_upload(book.hash)

    status = orchestrator.queue_status()

    assert status["queued"][book.hash]["title"] == "Status Report"
    assert status["queued"][book.hash]["direction"] == "upload"


def test_stop_cancels_running_transfers(make_orchestrator, add_book, remote_store):
    remote_store.gate = threading.Event()
    orchestrator = make_orchestrator()
    job = orchestrator.request_upload(add_book("shutdown").hash)
    assert remote_store.entered.wait(5)

    stopper = threading.Thread(target=orchestrator.stop, kwargs={"timeout": 5})
    stopper.start()
    assert wait_for(job.cancel_flag.is_set)
    remote_store.gate.set()
    stopper.join(5)

    assert job.wait(5)
    assert job.state == TransferState.CANCELLED
    assert not orchestrator.running


def test_stop_retires_queued_jobs(make_orchestrator, add_book, remote_store):
    remote_store.gate = threading.Event()
    orchestrator = make_orchestrator(max_active=1)
    events = _collect(orchestrator)
    first = orchestrator.request_upload(add_book("stop-first").hash)
    second = orchestrator.request_upload(add_book("stop-second").hash)
    assert remote_store.entered.wait(5)

    stopper = threading.Thread(target=orchestrator.stop, kwargs={"timeout": 5})
    stopper.start()
    assert wait_for(first.cancel_flag.is_set)
    remote_store.gate.set()
    stopper.join(5)

    assert first.wait(5)
    assert second.wait(5)
    assert first.state == TransferState.CANCELLED
    assert second.state == TransferState.CANCELLED
    terminal = {e.book_hash: e.outcome for e in events if isinstance(e, TransferTerminal)}
    assert terminal == {first.book_hash: TransferState.CANCELLED, second.book_hash: TransferState.CANCELLED}
    assert remote_store.put_calls == 1


def test_stop_keeping_running_transfer_still_retires_queued(make_orchestrator, add_book, remote_store):
    remote_store.gate = threading.Event()
    orchestrator = make_orchestrator(max_active=1)
    first = orchestrator.request_upload(add_book("finish-first").hash)
    second = orchestrator.request_upload(add_book("finish-second").hash)
    assert remote_store.entered.wait(5)

    stopper = threading.Thread(target=orchestrator.stop, kwargs={"cancel_running": False, "timeout": 5})
    stopper.start()
    assert second.wait(5)
    remote_store.gate.set()
    stopper.join(5)

    assert first.wait(5)
    assert first.state == TransferState.SUCCEEDED
    assert second.state == TransferState.CANCELLED


# =============================================================================
# Download cancellation and remote timestamps
# =============================================================================

def test_cancel_running_download_leaves_local_state(make_orchestrator, add_book, remote_store, content_store, bookshelf):
    remote_store.gate = threading.Event()
    orchestrator = make_orchestrator()
    book = add_book("cancel-download", uploaded_at=PAST, remote_modified_at=PAST)
    remote_store.objects[book.hash] = content_store.read(book.hash)
    content_store.delete(book.hash)

    job = orchestrator.request_download(book.hash)
    assert remote_store.entered.wait(5)
    assert orchestrator.cancel(book.hash) is True
    remote_store.gate.set()
    assert job.wait(5)

    assert job.state == TransferState.CANCELLED
    record = bookshelf.get(book.hash)
    assert record.downloaded_at is None
    assert record.remote_modified_at == PAST
    assert not content_store.exists(book.hash)


def test_cancel_reaches_download_without_content_length(
    make_orchestrator, add_book, remote_store, content_store, monkeypatch
):
    orchestrator = make_orchestrator()
    book = add_book("chunked-download", uploaded_at=PAST)
    content = content_store.read(book.hash)
    content_store.delete(book.hash)
    first_chunk_taken = threading.Event()
    resume = threading.Event()
    sent = []

    def chunks():
        size = len(content) // 8
        for index in range(8):
            if index > 0:
                first_chunk_taken.set()
                resume.wait(5)
            sent.append(index)
            yield content[index * size:(index + 1) * size]

    monkeypatch.setattr(remote_store, "get", lambda book_hash: RemoteFetch(chunks(), total_size=None))

    job = orchestrator.request_download(book.hash)
    assert first_chunk_taken.wait(5)
    orchestrator.cancel(book.hash)
    resume.set()
    assert job.wait(5)

    assert job.state == TransferState.CANCELLED
    assert len(sent) < 8
    assert not content_store.exists(book.hash)


def test_download_accepts_last_modified_without_timezone(make_orchestrator, add_book, remote_store, content_store, bookshelf):
    orchestrator = make_orchestrator()
    book = add_book("naive-modified", uploaded_at=PAST)
    remote_store.objects[book.hash] = content_store.read(book.hash)
    remote_store.modified[book.hash] = datetime(2024, 1, 1)

    job = orchestrator.request_download(book.hash)
    assert job.wait(5)

    assert job.state == TransferState.SUCCEEDED
    assert bookshelf.get(book.hash).remote_modified_at == PAST


def test_upload_keeps_held_local_copy_current(make_orchestrator, add_book, bookshelf):
    orchestrator = make_orchestrator()
    book = add_book("held-copy", downloaded_at=PAST)

    assert orchestrator.request_upload(book.hash).wait(5)

    record = bookshelf.get(book.hash)
    assert record.downloaded_at == record.uploaded_at == record.remote_modified_at
    with pytest.raises(AlreadyDownloaded):
        orchestrator.request_download(book.hash)


def test_stop_before_start_retires_queued_jobs(make_orchestrator, add_book, remote_store):
    orchestrator = make_orchestrator(start=False)
    job = orchestrator.request_upload(add_book("never-started").hash)

    orchestrator.stop()

    assert job.wait(1)
    assert job.state == TransferState.CANCELLED
    assert remote_store.put_calls == 0
