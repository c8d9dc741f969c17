"""Apprise notifications for finished transfers.

Sends are queued on a small thread pool so a slow notification service never
holds up a transfer worker.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import apprise

from shelfsync.config.env import string_to_bool
from shelfsync.core.config import config as app_config
from shelfsync.core.logger import setup_logger

logger = setup_logger(__name__)

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="Notify")


class NotificationEvent(str, Enum):
    TRANSFER_COMPLETE = "transfer_complete"
    TRANSFER_FAILED = "transfer_failed"


@dataclass
class NotificationContext:
    """What a notification is about."""

    event: NotificationEvent
    title: str
    author: str
    direction: str
    book_hash: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class NotificationSettings:
    urls: tuple[str, ...] = ()
    events: frozenset[str] = frozenset()

    def wants(self, event: NotificationEvent) -> bool:
        return bool(self.urls) and event.value in self.events


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: str


def _split_setting(value: Any) -> list[str]:
    """Flatten a list, or a comma/newline separated string, into unique items."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        parts = list(value)
    else:
        parts = str(value).replace("\n", ",").split(",")

    items: list[str] = []
    for part in parts:
        text = str(part or "").strip()
        if text and text not in items:
            items.append(text)
    return items


def load_settings() -> NotificationSettings:
    """Read the notification settings; disabled notifications yield empty settings."""
    enabled = app_config.get("NOTIFICATIONS_ENABLED", False)
    if isinstance(enabled, str):
        enabled = string_to_bool(enabled)
    if not enabled:
        return NotificationSettings()
    return NotificationSettings(
        urls=tuple(_split_setting(app_config.get("NOTIFICATION_URLS"))),
        events=frozenset(_split_setting(app_config.get("NOTIFICATION_EVENTS"))),
    )


def _notify_type(event: NotificationEvent) -> Any:
    if event == NotificationEvent.TRANSFER_COMPLETE:
        return apprise.NotifyType.SUCCESS
    return apprise.NotifyType.FAILURE


def render_message(context: NotificationContext) -> tuple[str, str]:
    """Heading and body for a transfer notification."""
    title = (context.title or "").strip() or (context.book_hash or "").strip() or "Unknown title"
    author = (context.author or "").strip() or "Unknown author"
    action = "upload" if context.direction == "upload" else "download"

    if context.event == NotificationEvent.TRANSFER_COMPLETE:
        return f"{action.capitalize()} Complete", f'"{title}" by {author} {action}ed successfully.'

    body = f'Failed to {action} "{title}" by {author}.'
    error = (context.error_message or "").strip()
    if error:
        body += f"\nError: {error}"
    return f"{action.capitalize()} Failed", body


def send(urls: Sequence[str], event: NotificationEvent, context: NotificationContext) -> DispatchResult:
    """Deliver one notification synchronously through Apprise."""
    urls = _split_setting(list(urls))
    if not urls:
        return DispatchResult(False, "No notification URLs configured")

    client = apprise.Apprise()
    accepted = [url for url in urls if client.add(url)]
    if not accepted:
        return DispatchResult(False, "No valid notification URLs configured")

    title, body = render_message(context)
    try:
        delivered = client.notify(title=title, body=body, notify_type=_notify_type(event))
    except Exception as e:
        # Apprise plugins raise their own exception types
        return DispatchResult(False, f"Notification send failed: {type(e).__name__}: {e}")
    if not delivered:
        return DispatchResult(False, "Notification delivery failed")

    skipped = len(urls) - len(accepted)
    suffix = f" ({skipped} invalid URL(s) skipped)" if skipped else ""
    return DispatchResult(True, f"Notification sent to {len(accepted)} URL(s){suffix}")


def notify(event: NotificationEvent, context: NotificationContext) -> bool:
    """Queue a notification if the event is subscribed. Returns True if queued."""
    settings = load_settings()
    if not settings.wants(event):
        return False

    try:
        _executor.submit(_deliver, settings.urls, event, context)
    except RuntimeError as e:
        logger.warning(f"Failed to queue '{event.value}' notification: {e}")
        return False
    return True


def _deliver(urls: Sequence[str], event: NotificationEvent, context: NotificationContext) -> None:
    result = send(urls, event, context)
    if result.success:
        logger.debug(f"{event.value} notification for {context.book_hash}: {result.message}")
    else:
        logger.warning(f"{event.value} notification for {context.book_hash} failed: {result.message}")
