"""
Prowlarr Indexer Provider

Integrates with a locally hosted Prowlarr instance (Indexer Manager).

Notes:
- One request issues several query variants in parallel (exact episode, season pack,
  "Season N", with and without year); each goes through the shared concurrency limiter.
- 502/503/504, timeouts and connection errors are retried with exponential backoff;
  a variant that keeps failing contributes nothing.
"""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

import requests

from .base import BatchCallback, IndexerProvider
from ..core.errors import TransientProviderError
from ..core.limiter import ConcurrencyLimiter
from ..models.content_request import ContentRequest
from ..models.source_candidate import GB, TorrentCandidate
from ..utils.bitrate import parse_resolution

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {502, 503, 504}
_GUID_HASH = re.compile(r"([a-fA-F0-9]{40})")


def build_queries(request: ContentRequest) -> List[str]:
    """Query variants for one request, most specific first."""
    title = request.title.strip()
    year = request.year
    queries: List[str] = []
    if request.is_tv:
        s = f"{int(request.season):02d}"
        e = f"{int(request.episode):02d}"
        queries.append(f"{title} S{s}E{e}")
        if year:
            queries.append(f"{title} {year} S{s}E{e}")
        queries.append(f"{title} S{s}")
        if year:
            queries.append(f"{title} {year} S{s}")
        queries.append(f"{title} Season {int(request.season)}")
    else:
        if year:
            queries.append(f"{title} {year}")
        queries.append(title)
    return queries


class ProwlarrProvider(IndexerProvider):
    name = "Prowlarr"

    def __init__(self, settings, limiter: Optional[ConcurrencyLimiter] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.last_error = ""
        self.limiter = limiter if limiter is not None else ConcurrencyLimiter()
        self._sleep = sleep
        self.session = requests.Session()
        self.session.headers.update(
            {
                "User-Agent": "resolvarr/0.1 (ProwlarrProvider)",
                "Accept": "application/json,text/plain,*/*",
            }
        )
        self._base_url = "http://localhost:9696"
        self._api_key = ""
        self._timeout_seconds = 30.0
        self._retries = 2
        self._backoff_seconds = 1.0
        self._min_seeders = 5
        self._min_size_gb = 0.05
        self._max_size_gb = 100.0
        self._max_results = 50
        self._blocked_groups: List[str] = []
        self.reload_from_settings()

    def reload_from_settings(self) -> None:
        self._base_url = str(self.settings.get("prowlarr_url", "http://localhost:9696") or "").strip().rstrip("/")
        self._api_key = str(self.settings.get("prowlarr_api_key", "") or "").strip()
        self._timeout_seconds = float(self.settings.get("prowlarr_request_timeout_seconds", 30.0) or 30.0)
        self._retries = max(0, int(self.settings.get("indexer_retries", 2)))
        self._backoff_seconds = float(self.settings.get("indexer_retry_backoff_seconds", 1.0))
        self._min_seeders = int(self.settings.get("prowlarr_min_seeders", 5))
        self._min_size_gb = float(self.settings.get("prowlarr_min_size_gb", 0.05))
        self._max_size_gb = float(self.settings.get("prowlarr_max_size_gb", 100.0))
        self._max_results = int(self.settings.get("prowlarr_max_results", 50))
        self._blocked_groups = [str(g).upper() for g in (self.settings.get("prowlarr_blocked_groups", []) or [])]

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._api_key)

    def search(self, query: ContentRequest, on_batch: BatchCallback) -> None:
        self.last_error = ""
        if not self.configured:
            self.last_error = "Prowlarr is not configured (prowlarr_url / prowlarr_api_key)."
            logger.warning(self.last_error)
            on_batch([], True)
            return

        queries = build_queries(query)
        remaining = len(queries)
        with ThreadPoolExecutor(max_workers=len(queries), thread_name_prefix="prowlarr") as pool:
            futures = {pool.submit(self._search_variant, q): q for q in queries}
            for future in as_completed(futures):
                remaining -= 1
                try:
                    batch = future.result()
                except Exception:
                    logger.exception("Prowlarr variant %r crashed", futures[future])
                    batch = []
                on_batch(batch, remaining == 0)

    def _search_variant(self, query: str) -> List[TorrentCandidate]:
        try:
            rows = self._request_with_retries(query)
        except TransientProviderError as e:
            self.last_error = str(e)
            logger.warning("Prowlarr gave up on %r: %s", query, e)
            return []
        except requests.RequestException as e:
            self.last_error = f"Prowlarr request failed: {e}"
            logger.warning("Prowlarr request failed for %r: %s", query, e)
            return []
        results = self._parse_rows(rows)
        logger.info("Prowlarr: %d torrent(s) for %r", len(results), query)
        return results

    def _request_with_retries(self, query: str) -> List[Dict[str, Any]]:
        last_error: Optional[Exception] = None
        for attempt in range(self._retries + 1):
            try:
                return self._request(query)
            except TransientProviderError as e:
                last_error = e
                if attempt < self._retries:
                    delay = self._backoff_seconds * (2 ** attempt)
                    logger.info("Prowlarr transient error for %r (%s); retrying in %.1fs", query, e, delay)
                    self._sleep(delay)
        raise TransientProviderError(f"Prowlarr failed after {self._retries + 1} attempts: {last_error}")

    def _request(self, query: str) -> List[Dict[str, Any]]:
        url = f"{self._base_url}/api/v1/search"
        params = {"query": query, "type": "search"}
        with self.limiter.slot():
            try:
                resp = self.session.get(
                    url,
                    params=params,
                    headers={"X-Api-Key": self._api_key},
                    timeout=max(2.0, self._timeout_seconds),
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                raise TransientProviderError(str(e))
        if resp.status_code in RETRYABLE_STATUS:
            raise TransientProviderError(f"HTTP {resp.status_code}", status_code=resp.status_code)
        if resp.status_code == 401:
            raise requests.HTTPError("Prowlarr auth failed (401). Check your API key.", response=resp)
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, list):
            raise requests.RequestException("Prowlarr returned unexpected response.")
        return payload

    def _parse_rows(self, rows: List[Dict[str, Any]]) -> List[TorrentCandidate]:
        kept = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            title = str(row.get("title") or "").strip()
            if not title:
                continue
            seeders = int(row.get("seeders") or 0)
            size = int(row.get("size") or 0)
            size_gb = size / GB
            if seeders < self._min_seeders:
                continue
            if not (self._min_size_gb < size_gb < self._max_size_gb):
                continue
            upper = title.upper()
            if any(group in upper for group in self._blocked_groups):
                continue
            kept.append((row, title, seeders, size))

        kept.sort(key=lambda item: item[2], reverse=True)

        out: List[TorrentCandidate] = []
        for row, title, seeders, size in kept[: self._max_results]:
            magnet, infohash = self._magnet_for(row, title)
            if not magnet or not infohash:
                logger.debug("Skipping %s: no magnet, infoHash or guid hash", title[:60])
                continue
            out.append(
                TorrentCandidate(
                    display_title=title,
                    resolution=parse_resolution(title),
                    hash=infohash,
                    magnet_uri=magnet,
                    size_bytes=size,
                    seeder_count=seeders,
                )
            )
        return out

    @staticmethod
    def _magnet_for(row: Dict[str, Any], title: str):
        magnet = str(row.get("magnetUrl") or "").strip()
        if magnet.startswith("magnet:"):
            return magnet, TorrentCandidate.extract_infohash(magnet)
        infohash = str(row.get("infoHash") or "").strip().lower()
        if infohash:
            return TorrentCandidate.build_magnet(infohash, title), infohash
        match = _GUID_HASH.search(str(row.get("guid") or ""))
        if match:
            infohash = match.group(1).lower()
            return TorrentCandidate.build_magnet(infohash, title), infohash
        return "", ""
