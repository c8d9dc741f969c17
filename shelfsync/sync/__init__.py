"""Transfer queue, orchestration and bulk selection actions."""

from shelfsync.sync.orchestrator import TransferOrchestrator
from shelfsync.sync.queue import TransferQueue
from shelfsync.sync.selection import BulkItemStatus, BulkResult, SelectionController
