"""Exception taxonomy for identity, metadata and transfer failures."""

from typing import Optional


class ShelfsyncError(Exception):
    """Base class for all engine errors."""


class IdentityError(ShelfsyncError):
    """Book content could not be read or fingerprinted."""


class MetadataError(ShelfsyncError):
    """Base class for metadata resolution failures."""

    def __init__(self, book_hash: str, message: Optional[str] = None):
        self.book_hash = book_hash
        super().__init__(message or f"Metadata unavailable for {book_hash}")


class MetadataUnavailable(MetadataError):
    """The source document could not be opened."""


class MetadataTimeout(MetadataError):
    """Metadata resolution exceeded its deadline."""


class AuthenticationRequired(ShelfsyncError):
    """No active session; transfers require a signed-in user."""


class TransferPreconditionError(ShelfsyncError):
    """A transfer request is not valid for the book's current state.

    Raised synchronously by the orchestrator; the request never reaches the queue.
    """

    reason = "precondition"

    def __init__(self, book_hash: str, message: Optional[str] = None):
        self.book_hash = book_hash
        super().__init__(message or f"{self.reason}: {book_hash}")


class BookNotFound(TransferPreconditionError):
    reason = "not_in_library"


class TransferInProgress(TransferPreconditionError):
    reason = "transfer_in_progress"


class AlreadyUploaded(TransferPreconditionError):
    reason = "already_uploaded"


class AlreadyDownloaded(TransferPreconditionError):
    reason = "already_downloaded"


class NotUploadedYet(TransferPreconditionError):
    reason = "not_uploaded"


class TransferError(ShelfsyncError):
    """Base class for errors raised while a transfer is running."""


class TransientTransferError(TransferError):
    """Network-level failure worth retrying (timeouts, 5xx, dropped connections)."""


class PermanentTransferError(TransferError):
    """Failure that retrying cannot fix."""


class AuthorizationRejected(PermanentTransferError):
    """The remote store refused the session's credentials."""


class QuotaExceeded(PermanentTransferError):
    """The remote store has no room for the book."""


class RemoteNotFound(PermanentTransferError):
    """The remote store does not hold the requested book."""


class TransferFailed(TransferError):
    """A transfer ended in failure (retries exhausted or non-transient error)."""


class TransferCancelled(TransferError):
    """A transfer observed its cancel flag at a checkpoint."""
