"""
Pytest configuration and shared fixtures.
"""

import os
import sys
import tempfile
import threading
import time

# Set environment variables BEFORE importing the application
# These override the defaults that try to use system paths like /var/log
_temp_base = tempfile.mkdtemp(prefix="shelfsync_test_")

# LOG_ROOT is the base - LOG_DIR is computed as LOG_ROOT / "shelfsync"
os.environ["LOG_ROOT"] = _temp_base
os.environ["CONFIG_DIR"] = os.path.join(_temp_base, "config")
os.environ["LIBRARY_DIR"] = os.path.join(_temp_base, "books")

os.makedirs(os.path.join(_temp_base, "shelfsync"), exist_ok=True)  # LOG_DIR
os.makedirs(os.path.join(_temp_base, "config"), exist_ok=True)
os.makedirs(os.path.join(_temp_base, "books"), exist_ok=True)

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from shelfsync.core.auth import SessionHolder
from shelfsync.core.interfaces import ContentStore, MetadataSource, RemoteFetch, RemoteStore, Session
from shelfsync.core.models import BookRecord, Metadata, ReadingProgress
from shelfsync.library.bookshelf import Bookshelf
from shelfsync.library.identity import compute_book_hash
from shelfsync.sync.orchestrator import TransferOrchestrator
from shelfsync.sync.queue import TransferQueue


def book_bytes(label: str, size: int = 8192) -> bytes:
    """Deterministic pseudo-book content; distinct labels give distinct hashes."""
    seed = f"{label}:".encode("utf-8")
    return (seed * (size // len(seed) + 1))[:size]


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class MemoryContentStore(ContentStore):
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    def read(self, book_hash: str) -> bytes:
        return self.blobs[book_hash]

    def write(self, book_hash: str, content: bytes) -> None:
        self.blobs[book_hash] = content

    def delete(self, book_hash: str) -> bool:
        return self.blobs.pop(book_hash, None) is not None

    def exists(self, book_hash: str) -> bool:
        return book_hash in self.blobs


class FakeRemoteStore(RemoteStore):
    """In-memory remote store with controllable progress, gating and failures."""

    def __init__(self, steps=(25.0, 50.0, 75.0, 100.0)):
        self.objects: Dict[str, bytes] = {}
        self.modified: Dict[str, datetime] = {}
        self.reading: Dict[str, ReadingProgress] = {}
        self.steps = list(steps)
        self.failures: List[Exception] = []
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.put_calls = 0
        self.get_calls = 0
        self._lock = threading.Lock()

    def _next_failure(self) -> Optional[Exception]:
        with self._lock:
            return self.failures.pop(0) if self.failures else None

    def _wait_gate(self) -> None:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)

    def put(self, book_hash, content):
        with self._lock:
            self.put_calls += 1
        failure = self._next_failure()
        for step in self.steps:
            self._wait_gate()
            if failure is not None and step >= 50:
                raise failure
            yield step
        self.objects[book_hash] = content
        self.modified[book_hash] = datetime.now(timezone.utc)

    def get(self, book_hash):
        with self._lock:
            self.get_calls += 1
        failure = self._next_failure()
        content = self.objects[book_hash]
        quarter = max(1, len(content) // 4)

        def chunks():
            for offset in range(0, len(content), quarter):
                self._wait_gate()
                if failure is not None and offset > 0:
                    raise failure
                yield content[offset:offset + quarter]

        return RemoteFetch(chunks(), total_size=len(content), last_modified=self.modified.get(book_hash))

    def exists(self, book_hash):
        return book_hash in self.objects

    def get_progress(self, book_hash):
        return self.reading.get(book_hash)

    def put_progress(self, book_hash, progress):
        self.reading[book_hash] = progress


class FakeMetadataSource(MetadataSource):
    def __init__(self, metadata: Optional[Dict[bytes, Metadata]] = None):
        self.metadata = metadata or {}
        self.calls = 0
        self.gate: Optional[threading.Event] = None
        self.error: Optional[Exception] = None
        self._lock = threading.Lock()

    def open_metadata(self, content: bytes) -> Metadata:
        with self._lock:
            self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.metadata.get(content, Metadata(title=f"Book {len(content)}"))


@pytest.fixture
def auth():
    return SessionHolder(Session(token="test-token", user_id="reader"))


@pytest.fixture
def content_store():
    return MemoryContentStore()


@pytest.fixture
def remote_store():
    return FakeRemoteStore()


@pytest.fixture
def bookshelf():
    return Bookshelf()


@pytest.fixture
def add_book(bookshelf, content_store):
    """Put content on the device and a matching record on the shelf."""

    def _add(label: str, **fields) -> BookRecord:
        content = book_bytes(label)
        book_hash = compute_book_hash(content)
        content_store.write(book_hash, content)
        fields.setdefault("title", label)
        return bookshelf.upsert(BookRecord(hash=book_hash, **fields))

    return _add


@pytest.fixture
def make_orchestrator(bookshelf, remote_store, auth, content_store):
    """Build orchestrators with fast retries; started ones are stopped at teardown."""
    created: List[TransferOrchestrator] = []

    def _make(max_active: int = 3, start: bool = True, **kwargs) -> TransferOrchestrator:
        kwargs.setdefault("retry_base_delay", 0.0)
        kwargs.setdefault("loop_sleep_time", 0.01)
        orchestrator = TransferOrchestrator(
            bookshelf=bookshelf,
            remote_store=remote_store,
            auth=auth,
            content_store=content_store,
            queue=TransferQueue(max_active=max_active),
            **kwargs,
        )
        created.append(orchestrator)
        if start:
            orchestrator.start()
        return orchestrator

    yield _make

    if remote_store.gate is not None:
        remote_store.gate.set()
    for orchestrator in created:
        orchestrator.stop(timeout=5)
