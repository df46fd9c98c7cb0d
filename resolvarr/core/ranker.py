"""
Ranker
Additive scoring of source candidates and stable ordering of the merged pool
"""
from typing import Iterable, List, Optional
import re

from ..models.content_request import MediaType
from ..models.source_candidate import FileCandidate, GB, SourceCandidate

FLAGGED_BAD_PENALTY = -100000
OVER_BANDWIDTH_PENALTY = -50000
OVER_BANDWIDTH_PER_MBPS = -100
CACHED_BONUS = 5000
FILESYSTEM_BONUS = 50
UNCACHED_SEEDER_WEIGHT = 10
UNCACHED_SEEDER_CAP = 2000
CACHED_SEEDER_CAP = 500
QUALITY_THRESHOLD_BONUS = 300
SUBTITLE_BONUS = 500
ENGLISH_SUBTITLE_BONUS = 50
ENGLISH_AUDIO_BONUS = 50
FOREIGN_ONLY_PENALTY = -30
CONTAINER_MATCH_BONUS = 2000
CONTAINER_MISMATCH_PENALTY = -1000
SIZE_DISTANCE_WEIGHT = 50

IDEAL_SIZE_GB = {
    MediaType.TV: {2160: 3.0, 1080: 1.5, 720: 0.8},
    MediaType.MOVIE: {2160: 20.0, 1080: 6.0, 720: 2.5},
}
DEFAULT_IDEAL_SIZE_GB = {MediaType.TV: 0.5, MediaType.MOVIE: 1.5}

# Preferred container per playback target hint
PLATFORM_CONTAINERS = {
    "web": (".mp4", ".mkv"),
}

_SUBTITLES = re.compile(r"\b(SUBS?|SUBTITLES?|SUBBED|MULTISUBS?|MULTI[.\-_\s]?SUBS?)\b")
_ENGLISH_SUBTITLES = re.compile(r"\b(ENG[.\-_\s]?SUBS?|ENGLISH[.\-_\s]?SUBS?|ENGSUB)\b")
_ENGLISH_AUDIO = re.compile(r"\b(ENG|ENGLISH|DUAL[\s._-]?AUDIO|MULTI[\s._-]?AUDIO)\b")
_FOREIGN_AUDIO = re.compile(
    r"\b(ITA|ITALIAN|FRE|FRENCH|GER|GERMAN|SPA|SPANISH|JPN|JAPANESE|KOR|KOREAN|RUS|RUSSIAN|CHI|CHINESE)\b"
)


def ideal_size_gb(media_type: MediaType, resolution: int) -> float:
    return IDEAL_SIZE_GB[media_type].get(resolution, DEFAULT_IDEAL_SIZE_GB[media_type])


def _marker_text(candidate: SourceCandidate) -> str:
    if isinstance(candidate, FileCandidate):
        return f"{candidate.display_title} {candidate.file_name}".upper()
    return (candidate.display_title or "").upper()


def _container_score(candidate: SourceCandidate, platform_hint: Optional[str]) -> int:
    if not platform_hint:
        return 0
    containers = PLATFORM_CONTAINERS.get(platform_hint.lower())
    if not containers:
        return 0
    preferred, penalized = containers
    name = candidate.file_name if isinstance(candidate, FileCandidate) else candidate.display_title
    name = (name or "").lower()
    if name.endswith(preferred):
        return CONTAINER_MATCH_BONUS
    if name.endswith(penalized):
        return CONTAINER_MISMATCH_PENALTY
    return 0


def score(candidate: SourceCandidate, media_type: MediaType, platform_hint: Optional[str] = None) -> int:
    """Compute the additive integer score for one candidate."""
    total = 0.0

    if candidate.over_bandwidth:
        total += OVER_BANDWIDTH_PENALTY
        total += OVER_BANDWIDTH_PER_MBPS * (candidate.estimated_bitrate_mbps or 0.0)

    if candidate.is_cached:
        total += CACHED_BONUS

    if isinstance(candidate, FileCandidate):
        total += FILESYSTEM_BONUS

    total += candidate.resolution or 0

    seeders = candidate.seeders
    if candidate.is_cached:
        total += min(seeders, CACHED_SEEDER_CAP)
    else:
        total += min(seeders * UNCACHED_SEEDER_WEIGHT, UNCACHED_SEEDER_CAP)

    if candidate.meets_quality_threshold:
        total += QUALITY_THRESHOLD_BONUS

    text = _marker_text(candidate)
    if _SUBTITLES.search(text) or _ENGLISH_SUBTITLES.search(text):
        total += SUBTITLE_BONUS
        if _ENGLISH_SUBTITLES.search(text):
            total += ENGLISH_SUBTITLE_BONUS

    has_english = bool(_ENGLISH_AUDIO.search(text))
    if has_english:
        total += ENGLISH_AUDIO_BONUS
    elif _FOREIGN_AUDIO.search(text):
        total += FOREIGN_ONLY_PENALTY

    total += _container_score(candidate, platform_hint)

    size_gb = candidate.size_mb * (1024 * 1024) / GB
    if size_gb > 0:
        total -= SIZE_DISTANCE_WEIGHT * abs(size_gb - ideal_size_gb(media_type, candidate.resolution))

    result = int(round(total))
    if candidate.is_flagged_bad:
        result += FLAGGED_BAD_PENALTY
    return result


def rank(candidates: Iterable[SourceCandidate], media_type: MediaType,
         platform_hint: Optional[str] = None) -> List[SourceCandidate]:
    """Score every candidate in place and return them by descending score, discovery order on ties."""
    scored = list(candidates)
    for candidate in scored:
        candidate.score = score(candidate, media_type, platform_hint)
    return sorted(scored, key=lambda c: (-c.score, c.discovery_index))
