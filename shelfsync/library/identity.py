"""Content-derived book identity and lazily resolved, cached metadata."""

import hashlib
import io
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import BinaryIO, Optional, Union

from shelfsync.core.cache import CacheService, RequestCoalescer
from shelfsync.core.config import config
from shelfsync.core.errors import IdentityError, MetadataTimeout, MetadataUnavailable
from shelfsync.core.interfaces import ContentStore, MetadataSource
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import BookRecord, Metadata

logger = setup_logger(__name__)

BookContent = Union[bytes, bytearray, memoryview, str, os.PathLike, BinaryIO]

# Sampled fingerprint shared with KOReader-compatible readers: 1 KiB windows at
# offsets 0, 1024, 4096, ... 1024 * 4**10.
SAMPLE_STEP = 1024
SAMPLE_SIZE = 1024


def _partial_md5(stream: BinaryIO, size: int) -> str:
    hasher = hashlib.md5()
    for i in range(-1, 11):
        offset = 0 if i < 0 else SAMPLE_STEP << (2 * i)
        if offset >= size:
            break
        stream.seek(offset)
        sample = stream.read(SAMPLE_SIZE)
        if not sample:
            break
        hasher.update(sample)
    return hasher.hexdigest()


def compute_book_hash(content: BookContent) -> str:
    """Fingerprint book content (bytes, a path, or a seekable binary file)."""
    try:
        if isinstance(content, (bytes, bytearray, memoryview)):
            data = bytes(content)
            if not data:
                raise IdentityError("Book content is empty")
            return _partial_md5(io.BytesIO(data), len(data))

        if isinstance(content, (str, os.PathLike)):
            path = Path(content)
            size = path.stat().st_size
            if size == 0:
                raise IdentityError(f"Book file is empty: {path}")
            with path.open("rb") as f:
                return _partial_md5(f, size)

        if hasattr(content, "read") and hasattr(content, "seek"):
            start = content.tell()
            content.seek(0, os.SEEK_END)
            size = content.tell()
            try:
                if size == 0:
                    raise IdentityError("Book stream is empty")
                return _partial_md5(content, size)
            finally:
                content.seek(start)
    except IdentityError:
        raise
    except (OSError, ValueError) as e:
        raise IdentityError(f"Cannot read book content: {e}") from e

    raise IdentityError(f"Unsupported book content type: {type(content).__name__}")


class BookIdentityResolver:
    """Resolves book hashes and metadata, caching metadata per hash.

    Cached metadata lives for the lifetime of the resolver. Concurrent
    ``fetch_metadata`` calls for the same hash share a single resolution.
    """

    def __init__(
        self,
        metadata_source: MetadataSource,
        content_store: ContentStore,
        cache: Optional[CacheService] = None,
        timeout: Optional[float] = None,
        max_workers: int = 4,
    ):
        self._source = metadata_source
        self._content = content_store
        self._cache = cache if cache is not None else CacheService(max_size=int(config.get("METADATA_CACHE_MAX_SIZE", 0)))
        self._timeout = timeout
        self._coalescer = RequestCoalescer()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="Metadata")

    def resolve_identity(self, content: BookContent) -> str:
        return compute_book_hash(content)

    def verify(self, content: BookContent, expected_hash: str) -> str:
        """Raise IdentityError unless content fingerprints to expected_hash."""
        actual = compute_book_hash(content)
        if actual != expected_hash:
            raise IdentityError(f"Content hash mismatch: expected {expected_hash}, got {actual}")
        return actual

    def cached_metadata(self, book_hash: str) -> Optional[Metadata]:
        return self._cache.get(book_hash)

    def fetch_metadata(self, book_hash: str, timeout: Optional[float] = None) -> Metadata:
        """Return metadata for a book, resolving it on a cache miss.

        Raises:
            MetadataUnavailable: the content could not be loaded or opened
            MetadataTimeout: resolution did not finish before the deadline
        """
        cached = self._cache.get(book_hash)
        if cached is not None:
            return cached

        future, is_leader = self._coalescer.claim(book_hash)
        if is_leader:
            self._executor.submit(self._coalescer.run, book_hash, future, lambda: self._load(book_hash))
        else:
            logger.debug(f"Joining in-flight metadata resolution for {book_hash}")

        deadline = timeout if timeout is not None else self._timeout
        if deadline is None:
            deadline = float(config.get("METADATA_TIMEOUT", 10.0))

        try:
            return future.result(timeout=deadline)
        except FutureTimeout:
            logger.warning(f"Metadata resolution for {book_hash} exceeded {deadline}s")
            raise MetadataTimeout(book_hash, f"Metadata resolution timed out after {deadline}s") from None

    def _load(self, book_hash: str) -> Metadata:
        try:
            content = self._content.read(book_hash)
        except (OSError, KeyError) as e:
            raise MetadataUnavailable(book_hash, f"Cannot read content for {book_hash}: {e}") from e

        try:
            metadata = self._source.open_metadata(content)
        except Exception as e:
            logger.warning(f"Failed to open metadata for {book_hash}: {type(e).__name__}: {e}")
            raise MetadataUnavailable(book_hash, f"Cannot open document for {book_hash}: {e}") from e

        if metadata is None:
            raise MetadataUnavailable(book_hash)

        self._cache.set(book_hash, metadata)
        logger.debug(f"Resolved metadata for {book_hash}: {metadata.title!r}")
        return metadata

    def invalidate(self, book_hash: str) -> bool:
        """Drop cached metadata after content changed under the same hash."""
        removed = self._cache.invalidate(book_hash)
        if removed:
            logger.warning(
                f"Metadata invalidated for {book_hash}: content changed under an existing hash"
            )
        return removed

    def apply_metadata(self, record: BookRecord, timeout: Optional[float] = None) -> BookRecord:
        """Return a copy of record with display fields filled from resolved metadata."""
        metadata = self.fetch_metadata(record.hash, timeout=timeout)
        return record.copy(
            title=metadata.title or record.title,
            author=metadata.author or record.author,
            primary_language=metadata.language or record.primary_language,
            series=metadata.series or record.series,
            series_index=metadata.series_index if metadata.series_index is not None else record.series_index,
        )

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
