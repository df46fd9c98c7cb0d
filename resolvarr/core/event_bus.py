"""
Event Bus - Central event dispatching system
Carries search, job and link-health notifications between stores and the API layer
"""
from typing import Callable, Dict, List
import logging
import threading

logger = logging.getLogger(__name__)


class EventBus:
    """Thread-safe event bus for component communication"""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}
        self._lock = threading.RLock()

    def subscribe(self, event_type: str, callback: Callable):
        """Subscribe to an event type"""
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if callback not in handlers:
                handlers.append(callback)

    def unsubscribe(self, event_type: str, callback: Callable):
        with self._lock:
            handlers = self._subscribers.get(event_type)
            if handlers and callback in handlers:
                handlers.remove(callback)

    def emit(self, event_type: str, data=None):
        """Emit an event to all subscribers; a failing handler never breaks the emitter."""
        with self._lock:
            handlers = list(self._subscribers.get(event_type, ()))
        for callback in handlers:
            try:
                callback(data)
            except Exception:
                logger.exception("Error in event handler for %s", event_type)

    def clear(self):
        with self._lock:
            self._subscribers.clear()


# Event types
class Events:
    # Aggregation
    SEARCH_STARTED = "search_started"
    SEARCH_SNAPSHOT = "search_snapshot"
    SEARCH_COMPLETED = "search_completed"
    PROVIDER_FAILED = "provider_failed"

    # Resolution jobs
    JOB_CREATED = "job_created"
    JOB_PROGRESS = "job_progress"
    JOB_SOURCE_ATTEMPTED = "job_source_attempted"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    JOB_PURGED = "job_purged"

    # Shared stores
    LINK_CACHED = "link_cached"
    LINK_INVALIDATED = "link_invalidated"
    BAD_LINK_REPORTED = "bad_link_reported"
    SESSION_STARTED = "session_started"
    SESSION_DENIED = "session_denied"
    SESSION_ENDED = "session_ended"
