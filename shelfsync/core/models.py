"""Data structures for book records, transfer jobs and transfer events."""

import time
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from threading import Event
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds, as stored by the reader apps
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class TransferState(str, Enum):
    """Lifecycle of a book's transfer. IDLE means no job exists."""
    IDLE = "idle"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATES = frozenset({TransferState.QUEUED, TransferState.IN_PROGRESS})
TERMINAL_STATES = frozenset({TransferState.SUCCEEDED, TransferState.FAILED, TransferState.CANCELLED})


@dataclass
class ReadingProgress:
    """Reading position carried through sync without interpretation."""
    location: Optional[str] = None
    percentage: float = 0.0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "percentage": self.percentage,
            "updated_at": _format_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ReadingProgress"]:
        if not data:
            return None
        return cls(
            location=data.get("location"),
            percentage=float(data.get("percentage") or 0.0),
            updated_at=_parse_time(data.get("updated_at")),
        )


@dataclass
class Metadata:
    """Descriptive metadata extracted from a book's content."""
    title: Optional[str] = None
    author: Optional[str] = None
    language: Optional[str] = None
    series: Optional[str] = None
    series_index: Optional[float] = None
    identifier: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BookRecord:
    """One physical book in the user's collection, keyed by content hash."""
    hash: str
    title: Optional[str] = None
    author: Optional[str] = None
    primary_language: Optional[str] = None
    series: Optional[str] = None
    series_index: Optional[float] = None
    format: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    downloaded_at: Optional[datetime] = None
    remote_modified_at: Optional[datetime] = None
    progress: Optional[ReadingProgress] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_local_only(self) -> bool:
        return self.uploaded_at is None and self.downloaded_at is None

    @property
    def download_is_stale(self) -> bool:
        """True when the remote copy changed after the local copy was fetched."""
        if self.downloaded_at is None:
            return True
        if self.remote_modified_at is None:
            return False
        return self.remote_modified_at > self.downloaded_at

    def copy(self, **changes: Any) -> "BookRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = _format_time(value)
            elif isinstance(value, ReadingProgress):
                value = value.to_dict()
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookRecord":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in ("uploaded_at", "downloaded_at", "remote_modified_at"):
            values[key] = _parse_time(values.get(key))
        for key in ("created_at", "updated_at"):
            parsed = _parse_time(values.get(key))
            if parsed is None:
                values.pop(key, None)
            else:
                values[key] = parsed
        values["progress"] = ReadingProgress.from_dict(values.get("progress"))
        return cls(**values)


@dataclass
class SeriesGroup:
    """Books sharing a series label. Derived from records, never persisted."""
    name: str
    books: List[BookRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.books)


@dataclass
class TransferJob:
    """One upload or download of a book, owned by the transfer queue."""
    book_hash: str
    direction: TransferDirection
    priority: int = 0
    force: bool = False
    state: TransferState = TransferState.QUEUED
    progress: float = 0.0
    attempts: int = 0
    reason: Optional[str] = None
    added_time: float = field(default_factory=time.time)
    cancel_flag: Event = field(default_factory=Event, repr=False, compare=False)
    done: Event = field(default_factory=Event, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job reaches a terminal state."""
        return self.done.wait(timeout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.book_hash,
            "direction": self.direction.value,
            "state": self.state.value,
            "progress": self.progress,
            "priority": self.priority,
            "attempts": self.attempts,
            "reason": self.reason,
            "added_time": self.added_time,
        }


@dataclass(frozen=True)
class TransferEvent:
    book_hash: str
    direction: TransferDirection


@dataclass(frozen=True)
class TransferQueued(TransferEvent):
    pass


@dataclass(frozen=True)
class TransferStarted(TransferEvent):
    pass


@dataclass(frozen=True)
class TransferProgress(TransferEvent):
    progress: float


@dataclass(frozen=True)
class TransferTerminal(TransferEvent):
    outcome: TransferState
    reason: Optional[str] = None


@dataclass(frozen=True)
class LibraryChange:
    """Structural change to the bookshelf: 'upserted', 'removed' or 'loaded'."""
    kind: str
    book_hash: Optional[str] = None


@dataclass(frozen=True)
class SelectionChange:
    selected: frozenset
