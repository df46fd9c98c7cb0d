"""
Cache Mount Provider

Searches a mounted filesystem view of the debrid library (shows/, movies/, __all__/)
for video files that match the requested title and episode.

Notes:
- Only filesystem metadata is read; nothing is opened or streamed here.
- Title, year and size checks happen again in the aggregator; this provider only
  narrows the directory walk.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import List, Optional

from .base import FilesystemCacheProvider
from ..core.matching import title_matches
from ..models.content_request import MediaType
from ..models.source_candidate import FileCandidate, MB
from ..utils.bitrate import default_runtime_minutes, parse_resolution

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = (".mkv", ".mp4", ".avi", ".mov", ".webm", ".m4v")
MAX_WALK_DEPTH = 4


class CacheMountProvider(FilesystemCacheProvider):
    name = "CacheMount"

    def __init__(self, settings):
        self.settings = settings
        self.last_error = ""
        self._root: Optional[Path] = None
        self._quality_mb_per_min = 7.0
        self.reload_from_settings()

    def reload_from_settings(self) -> None:
        raw = str(self.settings.get("cache_mount_path", "") or "").strip()
        self._root = Path(raw).expanduser() if raw else None
        self._quality_mb_per_min = float(self.settings.get("cache_mount_quality_mb_per_min", 7.0) or 7.0)

    @property
    def enabled(self) -> bool:
        return self._root is not None

    def search(self, title, year, media_type, season=None, episode=None, duration_hint_min=None) -> List[FileCandidate]:
        self.last_error = ""
        if self._root is None:
            return []
        if not self._root.is_dir():
            self.last_error = f"Cache mount not accessible at {self._root}"
            logger.warning(self.last_error)
            return []

        is_tv = media_type is MediaType.TV
        runtime = float(duration_hint_min or default_runtime_minutes(is_tv))
        subdirs = ("shows", "__all__") if is_tv else ("movies", "__all__")

        seen = set()
        out: List[FileCandidate] = []
        for subdir in subdirs:
            base = self._root / subdir
            if not base.is_dir():
                continue
            for path, size in self._walk(base):
                if path in seen:
                    continue
                seen.add(path)
                directory = os.path.basename(os.path.dirname(path))
                name = os.path.basename(path)
                if not (title_matches(name, title) or title_matches(directory, title)):
                    continue
                if is_tv and not self._names_episode(name, season, episode):
                    continue
                out.append(self._build_candidate(path, directory, name, size, runtime))

        out.sort(key=lambda c: c.mb_per_minute or 0.0, reverse=True)
        logger.info("Cache mount: %d match(es) for %s", len(out), title)
        return out

    def _build_candidate(self, path: str, directory: str, name: str, size: int, runtime: float) -> FileCandidate:
        size_mb = float(size) / MB
        mb_per_minute = round(size_mb / runtime, 1) if runtime > 0 else None
        return FileCandidate(
            display_title=directory or name,
            resolution=parse_resolution(name),
            is_cached=True,
            file_path=path,
            file_size_mb=size_mb,
            mb_per_minute=mb_per_minute,
            quality_threshold_met=bool(mb_per_minute and mb_per_minute >= self._quality_mb_per_min),
        )

    @staticmethod
    def _names_episode(name: str, season: Optional[int], episode: Optional[int]) -> bool:
        if season is None or episode is None:
            return False
        s = f"{int(season):02d}"
        e = f"{int(episode):02d}"
        lower = name.lower()
        if re.search(rf"s{s}[._\s]?e{e}(?:[^0-9]|$)", lower) or re.search(rf"\b{int(season)}x{e}\b", lower):
            return True
        multi = re.search(rf"s{s}e(\d{{2}})-e?(\d{{2}})", lower)
        if multi:
            return int(multi.group(1)) <= int(episode) <= int(multi.group(2))
        return bool(
            re.search(rf"(season[._\s]?{int(season)}|s{s})", lower)
            and re.search(rf"e{e}(?:[^0-9]|$)", lower)
        )

    def _walk(self, base: Path):
        """Yield (path, size) for video files up to MAX_WALK_DEPTH levels below base."""
        base_depth = len(base.parts)
        for dirpath, dirnames, filenames in os.walk(base):
            depth = len(Path(dirpath).parts) - base_depth
            if depth >= MAX_WALK_DEPTH - 1:
                dirnames[:] = []
            for filename in filenames:
                if not filename.lower().endswith(VIDEO_EXTENSIONS):
                    continue
                full = os.path.join(dirpath, filename)
                try:
                    size = os.stat(full).st_size
                except OSError:
                    continue
                yield full, size
