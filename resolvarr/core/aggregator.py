"""
Aggregator
Federated search over the cache-mount and indexer providers with progressive results.

The cache mount is queried first and awaited (it is fast and its hits are already
debrid-resident). Indexer batches then arrive on a queue from a background thread;
each batch is filtered, merged insert-if-absent, ranked and re-emitted as a snapshot.
Exactly one terminal snapshot closes the stream, at completion or at the ceiling.
"""
from typing import Callable, Dict, Iterator, List, Optional
import copy
import logging
import queue
import threading
import time

from ..models.content_request import ContentRequest
from ..models.source_candidate import FileCandidate, RankedResult, SourceCandidate, TorrentCandidate
from ..utils.bitrate import (
    default_runtime_minutes,
    estimate_bitrate_mbps,
    is_plausible_size,
    mb_per_min_to_mbps,
)
from . import matching, ranker
from .bad_links import BadLinkRegistry
from .event_bus import EventBus, Events

logger = logging.getLogger(__name__)

SEARCH_CEILING_SECONDS = 45.0


class CandidatePool:
    """Merged candidates keyed by identity; the first candidate seen for an identity wins"""

    def __init__(self):
        self._by_identity: Dict[str, SourceCandidate] = {}
        self._lock = threading.Lock()

    def add(self, candidate: SourceCandidate) -> bool:
        """Insert if absent. Returns False (and leaves the pool untouched) for a duplicate."""
        identity = candidate.identity
        with self._lock:
            if identity in self._by_identity:
                return False
            candidate.discovery_index = len(self._by_identity)
            self._by_identity[identity] = candidate
            return True

    def add_all(self, candidates: List[SourceCandidate]) -> int:
        return sum(1 for c in candidates if self.add(c))

    def candidates(self) -> List[SourceCandidate]:
        with self._lock:
            return list(self._by_identity.values())

    def __contains__(self, identity: str) -> bool:
        with self._lock:
            return identity in self._by_identity

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_identity)


class Aggregator:
    def __init__(self, filesystem=None, indexer=None, bad_links: Optional[BadLinkRegistry] = None,
                 availability=None, runtime_lookup=None, event_bus: Optional[EventBus] = None,
                 ceiling_seconds: float = SEARCH_CEILING_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.filesystem = filesystem
        self.indexer = indexer
        self.bad_links = bad_links if bad_links is not None else BadLinkRegistry()
        self.availability = availability
        self.runtime_lookup = runtime_lookup
        self.event_bus = event_bus
        self.ceiling_seconds = float(ceiling_seconds)
        self._clock = clock

    def _emit(self, event_type: str, data=None):
        if self.event_bus is not None:
            self.event_bus.emit(event_type, data)

    # ---- Public API ----
    def search(self, request: ContentRequest) -> RankedResult:
        """Block until the terminal snapshot is available."""
        result = RankedResult(is_complete=True)
        for snapshot in self.stream(request):
            result = snapshot
        return result

    def stream(self, request: ContentRequest) -> Iterator[RankedResult]:
        """Yield ranked snapshots; the last one has is_complete=True and is yielded exactly once."""
        request.validate()
        started = self._clock()
        self._emit(Events.SEARCH_STARTED, {"request": request.to_dict()})

        runtime = self.resolve_runtime(request)
        pool = CandidatePool()
        warnings: List[str] = []

        fs_batch = self._search_filesystem(request, runtime, warnings)
        if pool.add_all(self._prepare(fs_batch, request, runtime, from_indexer=False)):
            snapshot = self._snapshot(pool, request, False, warnings)
            self._emit(Events.SEARCH_SNAPSHOT, {"count": len(snapshot), "complete": False})
            yield snapshot

        if self.indexer is not None:
            batches: "queue.Queue" = queue.Queue()
            worker = threading.Thread(
                target=self._run_indexer, args=(request, batches), name="indexer-search", daemon=True
            )
            worker.start()
            deadline = started + self.ceiling_seconds
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    warnings.append(f"Indexer search stopped at the {int(self.ceiling_seconds)}s ceiling")
                    break
                try:
                    batch, done = batches.get(timeout=remaining)
                except queue.Empty:
                    warnings.append(f"Indexer search stopped at the {int(self.ceiling_seconds)}s ceiling")
                    break
                added = pool.add_all(self._prepare(batch, request, runtime, from_indexer=True))
                if done:
                    break
                if added:
                    snapshot = self._snapshot(pool, request, False, warnings)
                    self._emit(Events.SEARCH_SNAPSHOT, {"count": len(snapshot), "complete": False})
                    yield snapshot

        final = self._snapshot(pool, request, True, warnings)
        self._emit(Events.SEARCH_COMPLETED, {
            "count": len(final),
            "elapsed": round(self._clock() - started, 3),
            "warnings": list(warnings),
        })
        logger.info("Search for %s finished with %d candidate(s)", request.label(), len(final))
        yield final

    def resolve_runtime(self, request: ContentRequest) -> float:
        if self.runtime_lookup is not None:
            try:
                minutes = self.runtime_lookup.get_runtime_minutes(
                    request.external_id, request.type, request.season, request.episode
                )
                if minutes and minutes > 0:
                    return float(minutes)
            except Exception as e:
                logger.warning("Runtime lookup failed for %s: %s", request.label(), e)
        return float(default_runtime_minutes(request.is_tv))

    # ---- Providers ----
    def _search_filesystem(self, request: ContentRequest, runtime: float, warnings: List[str]) -> List[FileCandidate]:
        if self.filesystem is None:
            return []
        try:
            return list(self.filesystem.search(
                request.title, request.year, request.type, request.season, request.episode, runtime
            ) or [])
        except Exception as e:
            logger.warning("Cache mount search failed for %s: %s", request.label(), e)
            warnings.append(f"Cache mount unavailable: {e}")
            self._emit(Events.PROVIDER_FAILED, {"provider": "cache-mount", "error": str(e)})
            return []

    def _run_indexer(self, request: ContentRequest, batches: "queue.Queue") -> None:
        def on_batch(candidates, is_complete):
            batches.put((list(candidates or []), bool(is_complete)))

        try:
            self.indexer.search(request, on_batch)
        except Exception as e:
            logger.warning("Indexer search failed for %s: %s", request.label(), e)
            self._emit(Events.PROVIDER_FAILED, {"provider": "indexer", "error": str(e)})
        finally:
            # Guarantees completion even when the provider never reported it
            batches.put(([], True))

    # ---- Filtering ----
    def _prepare(self, batch: List[SourceCandidate], request: ContentRequest, runtime: float,
                 from_indexer: bool) -> List[SourceCandidate]:
        kept = [c for c in batch if not self._is_excluded(c, request) and self.accepts(c, request, runtime, from_indexer)]
        if from_indexer:
            self._mark_cached(kept, request)
        for candidate in kept:
            self._annotate(candidate, request, runtime)
        return kept

    @staticmethod
    def _is_excluded(candidate: SourceCandidate, request: ContentRequest) -> bool:
        if isinstance(candidate, TorrentCandidate):
            return request.is_hash_excluded(candidate.hash)
        if isinstance(candidate, FileCandidate):
            return candidate.file_path in request.excluded_file_paths
        return False

    @staticmethod
    def _size_bytes(candidate: SourceCandidate) -> int:
        if isinstance(candidate, TorrentCandidate):
            return int(candidate.size_bytes or 0)
        return int(candidate.size_mb * 1024 * 1024)

    @staticmethod
    def _release_text(candidate: SourceCandidate) -> str:
        if isinstance(candidate, FileCandidate):
            return f"{candidate.display_title} {candidate.file_name}"
        return candidate.display_title or ""

    def accepts(self, candidate: SourceCandidate, request: ContentRequest, runtime: float,
                from_indexer: bool) -> bool:
        """Apply plausibility, title, year and episode filters to one raw candidate."""
        if not is_plausible_size(self._size_bytes(candidate), candidate.resolution, runtime):
            logger.debug("Rejected implausible size: %s", candidate.display_title[:80])
            return False

        if isinstance(candidate, FileCandidate):
            if not matching.title_matches(candidate.file_path or candidate.display_title, request.title):
                return False
        elif matching.should_check_indexer_title(request.title):
            if not matching.title_matches(candidate.display_title, request.title):
                return False

        text = self._release_text(candidate)
        if request.is_tv:
            matcher = matching.EpisodeMatcher(request.season, request.episode)
            if not matcher.accepts(candidate.file_name if isinstance(candidate, FileCandidate) else text):
                return False
        else:
            if matching.year_conflicts(text, request.year):
                return False
            if from_indexer and matching.looks_like_tv_episode(text):
                return False
        return True

    def _mark_cached(self, candidates: List[SourceCandidate], request: ContentRequest) -> None:
        torrents = [c for c in candidates if isinstance(c, TorrentCandidate) and c.hash]
        if not torrents or self.availability is None:
            return
        try:
            cached = {h.lower() for h in self.availability.check_cached([t.hash for t in torrents], request.credential)}
        except Exception as e:
            logger.warning("Instant availability check failed: %s", e)
            cached = set()
        for torrent in torrents:
            torrent.is_cached = torrent.hash in cached

    def _annotate(self, candidate: SourceCandidate, request: ContentRequest, runtime: float) -> None:
        if isinstance(candidate, FileCandidate):
            bitrate = mb_per_min_to_mbps(candidate.mb_per_minute)
            if bitrate is None:
                bitrate = estimate_bitrate_mbps(self._size_bytes(candidate), runtime)
            flagged = self.bad_links.is_any_flagged(candidate.file_path, candidate.identity)
        else:
            bitrate = estimate_bitrate_mbps(self._size_bytes(candidate), runtime)
            flagged = self.bad_links.is_any_flagged(getattr(candidate, "hash", ""), getattr(candidate, "magnet_uri", ""))
        candidate.estimated_bitrate_mbps = bitrate
        ceiling = request.max_bitrate_mbps
        candidate.over_bandwidth = bool(ceiling and bitrate is not None and bitrate > ceiling)
        candidate.is_flagged_bad = flagged

    def _snapshot(self, pool: CandidatePool, request: ContentRequest, complete: bool,
                  warnings: List[str]) -> RankedResult:
        ordered = ranker.rank([copy.copy(c) for c in pool.candidates()], request.type, request.platform_hint)
        return RankedResult(candidates=tuple(ordered), is_complete=complete, warnings=tuple(warnings))
