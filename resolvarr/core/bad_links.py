"""
Bad Link Registry
Crowd-sourced quality flags for sources that failed playback.
Flags only penalize ranking; a flagged source can still be the only option.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set
import logging
import threading
import time

logger = logging.getLogger(__name__)

BAD_LINK_TTL_SECONDS = 48 * 60 * 60


@dataclass
class BadLinkFlag:
    identity: str
    reported_at: float
    expires_at: float
    reported_by: Set[str] = field(default_factory=set)
    report_count: int = 0
    reason: str = ""
    source: str = ""

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "reportedAt": self.reported_at,
            "expiresAt": self.expires_at,
            "reportedBy": sorted(self.reported_by),
            "reportCount": self.report_count,
            "reason": self.reason,
            "source": self.source,
        }


@dataclass(frozen=True)
class BadLinkStatus:
    flagged: bool
    report_count: int = 0
    reason: str = ""
    source: str = ""
    reported_at: Optional[float] = None
    expires_at: Optional[float] = None

    def __bool__(self) -> bool:
        return self.flagged


NOT_FLAGGED = BadLinkStatus(flagged=False)


def flag_key(hash: Optional[str] = None, stream_url: Optional[str] = None,
             magnet_uri: Optional[str] = None) -> Optional[str]:
    """First present of hash, stream url, magnet uri."""
    if hash:
        return hash.strip().lower()
    return stream_url or magnet_uri or None


class BadLinkRegistry:
    """In-memory flag store; one lock guards every check-then-act"""

    def __init__(self, ttl_seconds: int = BAD_LINK_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self._flags: Dict[str, BadLinkFlag] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds
        self._clock = clock

    @staticmethod
    def _normalize(identity: str) -> str:
        identity = (identity or "").strip()
        # Hashes compare case-insensitively
        if len(identity) == 40 and all(c in "0123456789abcdefABCDEF" for c in identity):
            return identity.lower()
        return identity

    def report(self, identity: str, reporter: str, reason: str = "", source: str = "") -> BadLinkFlag:
        """Flag identity; a repeat report from the same reporter is a no-op."""
        key = self._normalize(identity)
        if not key:
            raise ValueError("identity is required")
        reporter = (reporter or "").strip() or "anonymous"
        now = self._clock()
        with self._lock:
            flag = self._flags.get(key)
            if flag is not None and flag.expires_at <= now:
                del self._flags[key]
                flag = None
            if flag is None:
                flag = BadLinkFlag(
                    identity=key,
                    reported_at=now,
                    expires_at=now + self._ttl,
                    reported_by={reporter},
                    report_count=1,
                    reason=reason or "",
                    source=source or "",
                )
                self._flags[key] = flag
                logger.info("Flagged bad link %s (%s)", key[:60], reason or "no reason")
            elif reporter not in flag.reported_by:
                flag.reported_by.add(reporter)
                flag.report_count += 1
                if reason:
                    flag.reason = reason
            return BadLinkFlag(
                identity=flag.identity,
                reported_at=flag.reported_at,
                expires_at=flag.expires_at,
                reported_by=set(flag.reported_by),
                report_count=flag.report_count,
                reason=flag.reason,
                source=flag.source,
            )

    def is_flagged(self, identity: str) -> BadLinkStatus:
        key = self._normalize(identity)
        if not key:
            return NOT_FLAGGED
        with self._lock:
            flag = self._flags.get(key)
            if flag is None:
                return NOT_FLAGGED
            if flag.expires_at <= self._clock():
                del self._flags[key]
                return NOT_FLAGGED
            return BadLinkStatus(
                flagged=True,
                report_count=flag.report_count,
                reason=flag.reason,
                source=flag.source,
                reported_at=flag.reported_at,
                expires_at=flag.expires_at,
            )

    def is_any_flagged(self, *identities: Optional[str]) -> bool:
        return any(self.is_flagged(i).flagged for i in identities if i)

    def sweep(self) -> int:
        """Delete expired flags; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, f in self._flags.items() if f.expires_at <= now]
            for key in expired:
                del self._flags[key]
        if expired:
            logger.debug("Swept %d expired bad-link flags", len(expired))
        return len(expired)

    def all_active(self) -> List[dict]:
        now = self._clock()
        with self._lock:
            return [f.to_dict() for f in self._flags.values() if f.expires_at > now]

    def clear(self) -> None:
        with self._lock:
            self._flags.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._flags)
