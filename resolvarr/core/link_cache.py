"""
Link Cache
TTL cache of resolved stream URLs keyed by content, quality and a hashed credential.
The raw credential is never stored.
"""
from typing import Callable, Optional
import hashlib
import logging
import time

import requests

from ..models.content_request import ContentRequest
from .errors import StaleCacheError
from .sqlite_store import CachedLinkRow, SqliteStore

logger = logging.getLogger(__name__)

LINK_TTL_SECONDS = 24 * 60 * 60
VERIFY_TIMEOUT_SECONDS = 5
CREDENTIAL_HASH_LENGTH = 16


def hash_credential(credential: str) -> str:
    """Truncated SHA-256 of the credential."""
    return hashlib.sha256((credential or "").encode("utf-8")).hexdigest()[:CREDENTIAL_HASH_LENGTH]


class LinkCache:
    def __init__(self, store: SqliteStore, ttl_seconds: int = LINK_TTL_SECONDS,
                 verify_timeout: float = VERIFY_TIMEOUT_SECONDS, clock: Callable[[], float] = time.time):
        self._store = store
        self._ttl = ttl_seconds
        self._verify_timeout = verify_timeout
        self._clock = clock

    def _candidates(self, request: ContentRequest):
        now = self._clock()
        rows = self._store.find_links(
            request.content_identity,
            request.type.value,
            request.season,
            request.episode,
            hash_credential(request.credential),
            now,
        )
        return rows, now

    @staticmethod
    def _within_ceiling(row: CachedLinkRow, max_bitrate_mbps: Optional[float]) -> bool:
        if not max_bitrate_mbps or row.estimated_bitrate_mbps is None:
            return True
        return row.estimated_bitrate_mbps <= max_bitrate_mbps

    def get(self, request: ContentRequest, max_bitrate_mbps: Optional[float] = None) -> Optional[CachedLinkRow]:
        """Highest-resolution unexpired link whose bitrate fits the ceiling (or is unknown)."""
        ceiling = max_bitrate_mbps if max_bitrate_mbps is not None else request.max_bitrate_mbps
        rows, now = self._candidates(request)
        for row in rows:
            if self._within_ceiling(row, ceiling):
                self._store.touch_link(row.id, now)
                logger.debug("Link cache hit for %s at %sp", request.label(), row.resolution)
                return row
        return None

    def get_below(self, request: ContentRequest, max_resolution: int,
                  max_bitrate_mbps: Optional[float] = None) -> Optional[CachedLinkRow]:
        """Like get(), restricted to resolutions strictly below max_resolution."""
        ceiling = max_bitrate_mbps if max_bitrate_mbps is not None else request.max_bitrate_mbps
        rows, now = self._candidates(request)
        for row in rows:
            if row.resolution < max_resolution and self._within_ceiling(row, ceiling):
                self._store.touch_link(row.id, now)
                return row
        return None

    def put(self, request: ContentRequest, stream_url: str, file_name: str = "", resolution: int = 0,
            estimated_bitrate_mbps: Optional[float] = None,
            file_size_bytes: Optional[int] = None) -> CachedLinkRow:
        if not stream_url:
            raise ValueError("stream_url is required")
        now = self._clock()
        row = self._store.upsert_link(
            content_identity=request.content_identity,
            media_type=request.type.value,
            season=request.season,
            episode=request.episode,
            resolution=int(resolution or 0),
            credential_hash=hash_credential(request.credential),
            stream_url=stream_url,
            file_name=file_name or "",
            estimated_bitrate_mbps=estimated_bitrate_mbps,
            file_size_bytes=file_size_bytes,
            now=now,
            expires_at=now + self._ttl,
        )
        logger.info("Cached link for %s (%sp)", request.label(), row.resolution)
        return row

    def verify(self, url: str) -> bool:
        """Liveness probe: HEAD, falling back to GET when HEAD is not allowed; 2xx/3xx is alive."""
        if not url:
            return False
        try:
            response = requests.head(url, timeout=self._verify_timeout, allow_redirects=False)
            if response.status_code == 405:
                response = requests.get(url, timeout=self._verify_timeout, stream=True, allow_redirects=False)
                response.close()
            return 200 <= response.status_code < 400
        except requests.RequestException as e:
            logger.info("Cached link failed liveness check: %s", e)
            return False

    def ensure_live(self, row: CachedLinkRow) -> CachedLinkRow:
        """Verify a cached row before serving it; a dead row is invalidated and StaleCacheError raised."""
        if not self.verify(row.stream_url):
            self.invalidate(row.id)
            raise StaleCacheError(f"Cached link {row.id} failed its liveness check")
        return row

    def invalidate(self, link_id: int) -> bool:
        removed = self._store.delete_link(link_id)
        if removed:
            logger.info("Invalidated cached link %s", link_id)
        return removed

    def sweep(self) -> int:
        removed = self._store.delete_expired_links(self._clock())
        if removed:
            logger.debug("Swept %d expired cached links", removed)
        return removed

    def __len__(self) -> int:
        return self._store.count_links()
