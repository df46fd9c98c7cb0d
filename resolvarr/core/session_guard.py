"""
Session Guard
Allows at most one live stream per debrid credential across distinct IP addresses.
Liveness (5s) is checked on start; rows are only garbage-collected after 30s of silence.
"""
from typing import Callable, List, Optional
import logging
import threading
import time

from .errors import ConcurrentSessionError, MalformedRequestError
from .event_bus import EventBus, Events
from .link_cache import hash_credential
from .sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

LIVENESS_WINDOW_SECONDS = 5
SWEEP_AFTER_SECONDS = 30


class SessionGuard:
    def __init__(self, store: SqliteStore, liveness_window: float = LIVENESS_WINDOW_SECONDS,
                 sweep_after: float = SWEEP_AFTER_SECONDS, clock: Callable[[], float] = time.time,
                 event_bus: Optional[EventBus] = None):
        self._store = store
        self._lock = threading.RLock()
        self._liveness_window = liveness_window
        self._sweep_after = sweep_after
        self._clock = clock
        self.event_bus = event_bus

    def _emit(self, event_type: str, data=None):
        if self.event_bus is not None:
            self.event_bus.emit(event_type, data)

    @staticmethod
    def _key(credential: str, ip_address: str):
        if not (credential or "").strip():
            raise MalformedRequestError("credential is required")
        return hash_credential(credential), (ip_address or "").strip() or "unknown"

    def check_and_start(self, credential: str, ip_address: str, user_id: str = "", username: str = "") -> dict:
        """
        Start (or refresh) the session for (credential, ip).
        Raises ConcurrentSessionError with the other session's details when the credential
        is live on a different IP.
        """
        cred_hash, ip = self._key(credential, ip_address)
        with self._lock:
            now = self._clock()
            conflicts = self._store.live_sessions_elsewhere(cred_hash, ip, now - self._liveness_window)
            if conflicts:
                other = conflicts[0].to_dict()
            else:
                self._store.upsert_session(cred_hash, ip, user_id, username, now)
                session = self._store.get_session(cred_hash, ip).to_dict()

        if conflicts:
            logger.warning("Denied stream for %s from %s: credential live on %s",
                           username or user_id, ip, other["ipAddress"])
            self._emit(Events.SESSION_DENIED, {"ipAddress": ip, "activeSession": other})
            raise ConcurrentSessionError(other)
        self._emit(Events.SESSION_STARTED, session)
        return session

    def heartbeat(self, credential: str, ip_address: str) -> bool:
        cred_hash, ip = self._key(credential, ip_address)
        with self._lock:
            return self._store.touch_session(cred_hash, ip, self._clock())

    def end(self, credential: str, ip_address: str) -> bool:
        cred_hash, ip = self._key(credential, ip_address)
        with self._lock:
            removed = self._store.delete_session(cred_hash, ip)
        if removed:
            logger.info("Session ended for %s", ip)
            self._emit(Events.SESSION_ENDED, {"ipAddress": ip})
        return removed

    def sweep(self) -> int:
        with self._lock:
            removed = self._store.delete_stale_sessions(self._clock() - self._sweep_after)
        if removed:
            logger.debug("Swept %d stale sessions", removed)
        return removed

    def active_sessions(self) -> List[dict]:
        with self._lock:
            rows = self._store.list_sessions(self._clock() - self._sweep_after)
        return [r.to_dict() for r in rows]
