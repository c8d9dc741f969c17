"""Core module - shared models, events, errors and utilities."""

from shelfsync.core.models import BookRecord, SeriesGroup, TransferDirection, TransferJob, TransferState
from shelfsync.core.events import EventBus
from shelfsync.core.logger import setup_logger
