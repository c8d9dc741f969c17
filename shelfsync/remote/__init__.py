"""Remote store adapters."""

from shelfsync.remote.http_store import HttpRemoteStore
