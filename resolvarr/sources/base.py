"""
Provider SDK
Contracts for the content backends the aggregator fans out to.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..models.content_request import ContentRequest, MediaType
from ..models.source_candidate import FileCandidate, TorrentCandidate

# on_batch(candidates, is_complete)
BatchCallback = Callable[[List[TorrentCandidate], bool], None]


class BaseProvider(ABC):
    """Shared health bookkeeping for every provider"""
    api_version = 1
    name = "UnnamedProvider"
    last_error = ""

    def reload_from_settings(self) -> None:
        """Optional hook called when settings change."""
        return None

    def healthcheck(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ok": not bool(self.last_error),
            "error": self.last_error,
            "api_version": self.api_version,
        }


class FilesystemCacheProvider(BaseProvider):
    """Fast lookup over files already resident on the debrid service"""

    @abstractmethod
    def search(self, title: str, year: Optional[int], media_type: MediaType,
               season: Optional[int] = None, episode: Optional[int] = None,
               duration_hint_min: Optional[float] = None) -> List[FileCandidate]:
        raise NotImplementedError


class IndexerProvider(BaseProvider):
    """
    Push-based multi-query indexer search.
    Implementations call on_batch for every variant that returns, and exactly once
    with is_complete=True when every variant has resolved.
    """

    @abstractmethod
    def search(self, query: ContentRequest, on_batch: BatchCallback) -> None:
        raise NotImplementedError


class DebridAvailability(ABC):
    @abstractmethod
    def check_cached(self, hashes: Iterable[str], credential: str) -> Set[str]:
        """Return the subset of hashes (lowercase) the debrid service already holds."""
        raise NotImplementedError


class RuntimeLookup(ABC):
    @abstractmethod
    def get_runtime_minutes(self, external_id: Optional[str], media_type: MediaType,
                            season: Optional[int] = None, episode: Optional[int] = None) -> Optional[int]:
        raise NotImplementedError
