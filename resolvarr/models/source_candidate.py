"""
Source Candidate Model
A playable source found by one of the providers, plus the ranked snapshot type
"""
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple
import re


SOURCE_CACHE_MOUNT = "cache-mount"
SOURCE_INDEXER = "indexer"

MB = 1024 * 1024
GB = 1024 * 1024 * 1024


@dataclass
class SourceCandidate:
    """Fields shared by every candidate kind"""
    display_title: str
    resolution: int = 0
    is_cached: bool = False
    score: int = 0
    is_flagged_bad: bool = False
    over_bandwidth: bool = False
    estimated_bitrate_mbps: Optional[float] = None
    discovery_index: int = 0

    source = ""

    @property
    def identity(self) -> str:
        raise NotImplementedError

    @property
    def size_mb(self) -> float:
        raise NotImplementedError

    @property
    def seeders(self) -> int:
        return 0

    @property
    def meets_quality_threshold(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "title": self.display_title,
            "identity": self.identity,
            "resolution": self.resolution,
            "sizeMB": round(self.size_mb, 2),
            "isCached": self.is_cached,
            "score": self.score,
            "isFlaggedBad": self.is_flagged_bad,
            "overBandwidth": self.over_bandwidth,
            "estimatedBitrateMbps": (
                round(self.estimated_bitrate_mbps, 2) if self.estimated_bitrate_mbps is not None else None
            ),
        }


@dataclass
class FileCandidate(SourceCandidate):
    """File already resident on the debrid cache mount"""
    file_path: str = ""
    file_size_mb: float = 0.0
    mb_per_minute: Optional[float] = None
    quality_threshold_met: bool = False

    source = SOURCE_CACHE_MOUNT

    @property
    def identity(self) -> str:
        return f"{self.display_title}|{self.file_path}"

    @property
    def size_mb(self) -> float:
        return float(self.file_size_mb or 0.0)

    @property
    def meets_quality_threshold(self) -> bool:
        return bool(self.quality_threshold_met)

    @property
    def file_name(self) -> str:
        return self.file_path.rstrip("/").rsplit("/", 1)[-1] if self.file_path else self.display_title


@dataclass
class TorrentCandidate(SourceCandidate):
    """Release returned by the indexer"""
    hash: str = ""
    magnet_uri: str = ""
    size_bytes: int = 0
    seeder_count: int = 0

    source = SOURCE_INDEXER

    def __post_init__(self):
        if not self.hash and self.magnet_uri:
            self.hash = self.extract_infohash(self.magnet_uri)
        self.hash = (self.hash or "").strip().lower()

    @property
    def identity(self) -> str:
        if self.hash:
            return self.hash
        return f"{self.display_title}|"

    @property
    def size_mb(self) -> float:
        return float(self.size_bytes or 0) / MB

    @property
    def seeders(self) -> int:
        return int(self.seeder_count or 0)

    @staticmethod
    def extract_infohash(magnet: str) -> str:
        """Extract infohash from magnet link"""
        match = re.search(r'btih:([a-zA-Z0-9]{40})', magnet or "")
        if match:
            return match.group(1).lower()
        return ""

    @staticmethod
    def build_magnet(infohash: str, title: str) -> str:
        from urllib.parse import quote
        return f"magnet:?xt=urn:btih:{infohash}&dn={quote(title or '')}"

    @staticmethod
    def normalize_size(size_str) -> int:
        """
        Normalize size string to bytes
        Handles: "1.5 GB", "500 MB", "2.3 GiB", etc.
        """
        if isinstance(size_str, (int, float)):
            return int(size_str)

        size_str = str(size_str or "").strip().upper()
        match = re.match(r'([\d.]+)\s*([KMGT]I?B)', size_str)
        if not match:
            return 0

        value = float(match.group(1))
        unit = match.group(2)
        multipliers = {
            'B': 1,
            'KB': 1000, 'KIB': 1024,
            'MB': 1000**2, 'MIB': 1024**2,
            'GB': 1000**3, 'GIB': 1024**3,
            'TB': 1000**4, 'TIB': 1024**4,
        }
        return int(value * multipliers.get(unit, 1))


@dataclass(frozen=True)
class RankedResult:
    """Immutable snapshot of candidates, strictly ordered by descending score"""
    candidates: Tuple[SourceCandidate, ...] = ()
    is_complete: bool = False
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[SourceCandidate]:
        return iter(self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)

    def __getitem__(self, index):
        return self.candidates[index]

    @property
    def top(self) -> Optional[SourceCandidate]:
        return self.candidates[0] if self.candidates else None

    def to_list(self) -> List[dict]:
        return [c.to_dict() for c in self.candidates]
