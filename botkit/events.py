"""
Event Bus Module

In-process publish/subscribe channel. The core publishes lifecycle events
(document processed, response generated, errors) and external collaborators
publish content-change events into it; subscribers never sit in the core's
control flow.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

# Configure logging
logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]

# Event names
CONTENT_CHANGED = "content.changed"
DOCUMENT_QUEUED = "document.queued"
DOCUMENT_PROCESSED = "document.processed"
DOCUMENT_FAILED = "document.failed"
DOCUMENT_DELETED = "document.deleted"
RESPONSE_GENERATED = "response.generated"
EMBEDDINGS_BATCH_STARTED = "embeddings.batch_started"
EMBEDDINGS_BATCH_COMPLETED = "embeddings.batch_completed"
MIGRATION_COMPLETED = "migration.completed"
ERROR_OCCURRED = "error.occurred"


class EventBus:
    """
    Synchronous event bus.

    Handlers run in the publisher's thread in subscription order. A failing
    handler is logged and skipped so observers cannot break ingestion or chat.

    Example:
        bus = EventBus()
        bus.subscribe(DOCUMENT_PROCESSED, lambda payload: print(payload["document_id"]))
        bus.publish(DOCUMENT_PROCESSED, {"document_id": 7})
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(event_name, []):
                self._handlers[event_name].remove(handler)

    def publish(self, event_name: str, payload: Dict[str, Any] = None) -> int:
        """
        Deliver an event to every subscriber.

        Args:
            event_name: Name of the event
            payload: Event data

        Returns:
            Number of handlers that ran successfully
        """
        with self._lock:
            handlers = list(self._handlers.get(event_name, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(payload or {})
                delivered += 1
            except Exception as e:
                logger.exception(f"Event handler for '{event_name}' failed: {e}")

        logger.debug(f"Published {event_name} to {delivered}/{len(handlers)} handlers")
        return delivered

    def subscriber_count(self, event_name: str) -> int:
        with self._lock:
            return len(self._handlers.get(event_name, []))
