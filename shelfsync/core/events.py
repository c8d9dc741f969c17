"""Thread-safe publish/subscribe for library, selection and transfer events."""

import threading
from typing import Any, Callable, Dict, List

from shelfsync.core.logger import setup_logger

logger = setup_logger(__name__)

Callback = Callable[[Any], None]


class EventBus:
    """Delivers events to topic subscribers on the publishing thread.

    Subscriber errors are logged and never reach the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callback]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        """Register a callback for a topic. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.setdefault(topic, []).append(callback)
        logger.debug(f"Registered subscriber for '{topic}': {getattr(callback, '__name__', callback)}")

        def unsubscribe() -> None:
            self.unsubscribe(topic, callback)

        return unsubscribe

    def unsubscribe(self, topic: str, callback: Callback) -> bool:
        with self._lock:
            callbacks = self._subscribers.get(topic)
            if not callbacks or callback not in callbacks:
                return False
            callbacks.remove(callback)
            if not callbacks:
                del self._subscribers[topic]
            return True

    def publish(self, topic: str, event: Any) -> int:
        """Deliver an event to every subscriber of a topic. Returns delivery count."""
        with self._lock:
            callbacks = list(self._subscribers.get(topic, ()))

        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                logger.error_trace(f"Error in '{topic}' subscriber {getattr(callback, '__name__', callback)}: {e}")
        return delivered

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))
