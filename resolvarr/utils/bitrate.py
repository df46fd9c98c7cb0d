"""
Bitrate estimation and size plausibility helpers
"""
import re
from typing import Optional

# Minimum MB/min by resolution; anything below is a mislabeled or fake file.
MIN_MB_PER_MIN_BY_RESOLUTION = {
    2160: 15.0,
    1080: 5.0,
    720: 2.0,
    480: 1.0,
    360: 0.5,
}
DEFAULT_MIN_MB_PER_MIN = 0.5

DEFAULT_MOVIE_RUNTIME_MIN = 120
DEFAULT_EPISODE_RUNTIME_MIN = 45


def mb_per_min_to_mbps(mb_per_minute: Optional[float]) -> Optional[float]:
    if not mb_per_minute:
        return None
    return (float(mb_per_minute) * 8.0) / 60.0


def estimate_bitrate_mbps(file_size_bytes: Optional[int], runtime_minutes: Optional[float]) -> Optional[float]:
    """Average bitrate implied by size over runtime, or None when either is unknown."""
    if not file_size_bytes or not runtime_minutes or runtime_minutes <= 0:
        return None
    size_mb = float(file_size_bytes) / (1024 * 1024)
    return mb_per_min_to_mbps(size_mb / float(runtime_minutes))


def is_plausible_size(file_size_bytes: Optional[int], resolution: int, runtime_minutes: Optional[float]) -> bool:
    if not file_size_bytes or not runtime_minutes or runtime_minutes <= 0:
        return True
    size_mb = float(file_size_bytes) / (1024 * 1024)
    mb_per_min = size_mb / float(runtime_minutes)
    return mb_per_min >= MIN_MB_PER_MIN_BY_RESOLUTION.get(resolution, DEFAULT_MIN_MB_PER_MIN)


def parse_resolution(title: str) -> int:
    """Parse resolution from a release title or file name (0 when unknown)."""
    if not title:
        return 0
    lower = title.lower()
    if re.search(r"2160p|4k|uhd", lower):
        return 2160
    if re.search(r"1080p|1080i|fullhd|fhd", lower):
        return 1080
    if re.search(r"720p", lower):
        return 720
    if re.search(r"480p|sd", lower):
        return 480
    if re.search(r"360p", lower):
        return 360
    return 0


def default_runtime_minutes(is_tv: bool) -> int:
    return DEFAULT_EPISODE_RUNTIME_MIN if is_tv else DEFAULT_MOVIE_RUNTIME_MIN
