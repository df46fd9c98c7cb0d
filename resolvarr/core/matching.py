"""
Candidate Matching
Title, year and episode heuristics applied to every raw candidate before scoring.
The patterns are intentionally loose; changing them changes which releases survive.
"""
from typing import Optional
import re

TITLE_MATCH_THRESHOLD = 0.7
SIGNIFICANT_WORD_MIN_LENGTH = 3

_YEAR_TOKEN = re.compile(r"\b(?:19|20)\d{2}\b")
_TV_EPISODE_LIKE = re.compile(r"s\d{1,2}[._\s]?e\d{1,2}", re.IGNORECASE)
_SPECIFIC_EPISODE = re.compile(r"s(\d{2})[._\s]?e(\d{2})", re.IGNORECASE)
_SEASON_TOKEN = re.compile(r"s\d{2}", re.IGNORECASE)
_SEASON_RANGE = re.compile(r"s(\d{2})[._\-\s]?s(\d{2})", re.IGNORECASE)
_MULTI_SEASON_PATTERNS = (
    re.compile(r"s\d{2}[._\-\s]?s\d{2}", re.IGNORECASE),
    re.compile(r"season[\s._]?\d+[\s._]?-[\s._]?season[\s._]?\d+", re.IGNORECASE),
    re.compile(r"seasons?[\s._]?\d+[\s._]?-[\s._]?\d+", re.IGNORECASE),
    re.compile(r"complete", re.IGNORECASE),
    re.compile(r"collection", re.IGNORECASE),
)


def normalize_title(title: str) -> str:
    """Lowercase, strip non-alphanumerics, collapse whitespace."""
    if not title:
        return ""
    lowered = re.sub(r"[^a-z0-9\s]", "", title.lower())
    return re.sub(r"\s+", " ", lowered).strip()


def significant_words(title: str) -> list:
    return [w for w in normalize_title(title).split(" ") if len(w) >= SIGNIFICANT_WORD_MIN_LENGTH]


def title_matches(candidate_text: str, expected_title: str) -> bool:
    """At least 70% of the expected title's significant words must appear in the candidate."""
    expected_words = significant_words(expected_title)
    if not expected_words:
        return True
    haystack = normalize_title(candidate_text)
    matching = [w for w in expected_words if w in haystack]
    return len(matching) / len(expected_words) >= TITLE_MATCH_THRESHOLD


def should_check_indexer_title(expected_title: str) -> bool:
    return len(significant_words(expected_title)) >= 2


def year_conflicts(candidate_text: str, year: Optional[int]) -> bool:
    """True when the text carries a year token that differs from the requested one."""
    if not year:
        return False
    match = _YEAR_TOKEN.search(candidate_text or "")
    return bool(match) and match.group(0) != str(year)


def looks_like_tv_episode(candidate_text: str) -> bool:
    return bool(_TV_EPISODE_LIKE.search(candidate_text or ""))


class EpisodeMatcher:
    """Decides whether a release can contain a given season/episode"""

    def __init__(self, season: int, episode: int):
        self.season = int(season)
        self.episode = int(episode)
        s = f"{self.season:02d}"
        e = f"{self.episode:02d}"
        self._episode_patterns = (
            re.compile(rf"s{s}[._\s]?e{e}(?:[^0-9]|$)", re.IGNORECASE),
            re.compile(rf"\b{self.season}x{e}\b", re.IGNORECASE),
        )
        self._season_pack_patterns = (
            re.compile(rf"s{s}(?:[^e0-9]|$)", re.IGNORECASE),
            re.compile(rf"season[._\s]?{self.season}(?:[^0-9]|$)", re.IGNORECASE),
        )
        self._our_season = re.compile(rf"s{s}(?:[^0-9]|$)", re.IGNORECASE)

    def matches_exact_episode(self, text: str) -> bool:
        return any(p.search(text) for p in self._episode_patterns)

    def is_season_pack(self, text: str) -> bool:
        return any(p.search(text) for p in self._season_pack_patterns) and not self.matches_exact_episode(text)

    def names_other_episode(self, text: str) -> bool:
        match = _SPECIFIC_EPISODE.search(text)
        if not match:
            return False
        return int(match.group(1)) != self.season or int(match.group(2)) != self.episode

    def is_multi_season_pack(self, text: str) -> bool:
        if not any(p.search(text) for p in _MULTI_SEASON_PATTERNS):
            return False

        range_match = _SEASON_RANGE.search(text)
        if range_match:
            start, end = int(range_match.group(1)), int(range_match.group(2))
            if self.season < start or self.season > end:
                return False

        seasons_named = _SEASON_TOKEN.findall(text)
        if len(seasons_named) > 1 and not self._our_season.search(text):
            return False
        return True

    def accepts(self, text: str, allow_multi_season: bool = True) -> bool:
        lowered = (text or "").lower()
        if self.names_other_episode(lowered):
            return False
        if self.matches_exact_episode(lowered) or self.is_season_pack(lowered):
            return True
        return allow_multi_season and self.is_multi_season_pack(lowered)
