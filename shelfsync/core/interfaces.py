"""Collaborator contracts consumed by the engine.

Concrete implementations live elsewhere (``shelfsync.remote``,
``shelfsync.library.content``, ``shelfsync.library.persistence``) or are
supplied by the host application.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Optional

from shelfsync.core.models import BookRecord, Metadata, ReadingProgress


@dataclass(frozen=True)
class Session:
    token: str
    user_id: Optional[str] = None


class AuthProvider(ABC):
    """Exposes the current user's session, or None when signed out."""

    @abstractmethod
    def get_session(self) -> Optional[Session]:
        ...


class RemoteFetch:
    """An in-flight download: iterate progress, then read ``content``.

    ``chunks`` is consumed lazily; closing the fetch (or abandoning iteration
    and calling ``close``) stops the transfer at the next chunk boundary.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        total_size: Optional[int],
        last_modified: Optional[datetime] = None,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self._chunks = chunks
        self.total_size = total_size
        self.last_modified = last_modified
        self._on_close = on_close
        self._buffer = bytearray()
        self._complete = False

    def iter_progress(self) -> Iterator[float]:
        """Yield a percentage after every chunk received.

        Without a known total size every chunk yields 0.0 until the body ends.
        """
        try:
            for chunk in self._chunks:
                if not chunk:
                    continue
                self._buffer.extend(chunk)
                if self.total_size:
                    yield min(100.0, len(self._buffer) * 100.0 / self.total_size)
                else:
                    yield 0.0
            self._complete = True
            yield 100.0
        finally:
            self.close()

    @property
    def content(self) -> bytes:
        if not self._complete:
            raise RuntimeError("Download has not completed")
        return bytes(self._buffer)

    def close(self) -> None:
        if self._on_close is not None:
            callback, self._on_close = self._on_close, None
            callback()


class RemoteStore(ABC):
    """Content-addressable remote storage for books and reading progress."""

    @abstractmethod
    def put(self, book_hash: str, content: bytes) -> Iterator[float]:
        """Upload content; the returned iterator yields increasing percentages."""

    @abstractmethod
    def get(self, book_hash: str) -> RemoteFetch:
        ...

    @abstractmethod
    def exists(self, book_hash: str) -> bool:
        ...

    def get_progress(self, book_hash: str) -> Optional[ReadingProgress]:
        return None

    def put_progress(self, book_hash: str, progress: ReadingProgress) -> None:
        return None


class MetadataSource(ABC):
    """Opens a book's content and extracts descriptive metadata."""

    @abstractmethod
    def open_metadata(self, content: bytes) -> Metadata:
        ...


class ContentStore(ABC):
    """Device-local storage of book content, keyed by hash."""

    @abstractmethod
    def read(self, book_hash: str) -> bytes:
        ...

    @abstractmethod
    def write(self, book_hash: str, content: bytes) -> None:
        ...

    @abstractmethod
    def delete(self, book_hash: str) -> bool:
        ...

    @abstractmethod
    def exists(self, book_hash: str) -> bool:
        ...


class LibraryPersistence(ABC):
    """Opaque load/save pair for the book collection."""

    @abstractmethod
    def load(self) -> List[BookRecord]:
        ...

    @abstractmethod
    def save(self, records: List[BookRecord]) -> None:
        ...
