"""Engine wiring: one bookshelf, resolver, queue, orchestrator and selection."""

from pathlib import Path
from typing import Optional

from shelfsync.core.config import config
from shelfsync.core.errors import MetadataError
from shelfsync.core.events import EventBus
from shelfsync.core.interfaces import (
    AuthProvider,
    ContentStore,
    LibraryPersistence,
    MetadataSource,
    RemoteStore,
)
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import BookRecord, utcnow
from shelfsync.library.bookshelf import Bookshelf
from shelfsync.library.content import FileContentStore
from shelfsync.library.identity import BookContent, BookIdentityResolver
from shelfsync.library.persistence import JsonLibraryPersistence
from shelfsync.sync.orchestrator import TransferOrchestrator
from shelfsync.sync.queue import TransferQueue
from shelfsync.sync.selection import SelectionController

logger = setup_logger(__name__)


class SyncEngine:
    """Owns the engine's state objects and their shared event bus."""

    def __init__(
        self,
        auth: AuthProvider,
        remote_store: RemoteStore,
        metadata_source: MetadataSource,
        content_store: Optional[ContentStore] = None,
        persistence: Optional[LibraryPersistence] = None,
        max_concurrent_transfers: Optional[int] = None,
    ):
        self.events = EventBus()
        self.auth = auth
        self.content = content_store if content_store is not None else FileContentStore()
        self.persistence = persistence if persistence is not None else JsonLibraryPersistence()
        self.bookshelf = Bookshelf(events=self.events)
        self.resolver = BookIdentityResolver(metadata_source, self.content)
        self.queue = TransferQueue(
            max_active=max_concurrent_transfers or int(config.get("MAX_CONCURRENT_TRANSFERS", 3))
        )
        self.orchestrator = TransferOrchestrator(
            bookshelf=self.bookshelf,
            remote_store=remote_store,
            auth=auth,
            content_store=self.content,
            resolver=self.resolver,
            queue=self.queue,
            events=self.events,
        )
        self.selection = SelectionController(
            bookshelf=self.bookshelf,
            orchestrator=self.orchestrator,
            content_store=self.content,
            events=self.events,
        )

    def import_book(self, content: BookContent, file_format: Optional[str] = None) -> BookRecord:
        """Add a book from bytes or a path: store its content and shelve its record.

        Metadata is resolved right away when possible; a failure leaves the
        record with empty display fields rather than rejecting the import.
        """
        if isinstance(content, (str, Path)):
            path = Path(content)
            data = path.read_bytes()
            file_format = file_format or path.suffix.lstrip(".").lower() or None
        else:
            data = bytes(content)

        book_hash = self.resolver.resolve_identity(data)
        existing = self.bookshelf.get(book_hash)
        if existing is not None:
            logger.info(f"Book already in library: {book_hash}")
            return existing

        self.content.write(book_hash, data)
        record = BookRecord(hash=book_hash, format=file_format, downloaded_at=utcnow())
        try:
            record = self.resolver.apply_metadata(record)
        except MetadataError as e:
            logger.warning(f"Imported {book_hash} without metadata: {type(e).__name__}: {e}")
        stored = self.bookshelf.upsert(record)
        logger.info(f"Imported book {book_hash}: {stored.title!r}")
        return stored

    def load(self) -> int:
        return self.bookshelf.load(self.persistence)

    def save(self) -> int:
        return self.bookshelf.save(self.persistence)

    def start(self) -> None:
        self.orchestrator.start()

    def shutdown(self, save: bool = True, timeout: Optional[float] = None) -> None:
        self.orchestrator.stop(cancel_running=True, timeout=timeout)
        self.resolver.shutdown()
        if save:
            self.save()
