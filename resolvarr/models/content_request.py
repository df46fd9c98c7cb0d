"""
Content Request Model
Ephemeral description of the movie or episode a client wants to play
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import re

from ..core.errors import MalformedRequestError


class MediaType(Enum):
    MOVIE = "movie"
    TV = "tv"


@dataclass(frozen=True)
class ContentRequest:
    """One resolution attempt; never persisted"""
    title: str
    type: MediaType
    user_id: str
    credential: str
    year: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    external_id: Optional[str] = None
    max_bitrate_mbps: Optional[float] = None
    excluded_hashes: List[str] = field(default_factory=list)
    excluded_file_paths: List[str] = field(default_factory=list)
    platform_hint: Optional[str] = None
    username: str = ""
    ip_address: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ContentRequest":
        """Build a request from an API payload (camelCase or snake_case keys)."""
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        raw_type = str(pick("type", default="") or "").strip().lower()
        try:
            media_type = MediaType(raw_type)
        except ValueError:
            raise MalformedRequestError(f"Unknown content type: {raw_type!r}")

        request = cls(
            title=str(pick("title", default="") or ""),
            type=media_type,
            user_id=str(pick("userId", "user_id", default="") or ""),
            credential=str(pick("credential", default="") or ""),
            year=_optional_int(pick("year"), "year"),
            season=_optional_int(pick("season"), "season"),
            episode=_optional_int(pick("episode"), "episode"),
            external_id=_optional_str(pick("externalId", "external_id")),
            max_bitrate_mbps=_optional_float(pick("maxBitrateMbps", "max_bitrate_mbps"), "maxBitrateMbps"),
            excluded_hashes=list(pick("excludedHashes", "excluded_hashes", default=[]) or []),
            excluded_file_paths=list(pick("excludedFilePaths", "excluded_file_paths", default=[]) or []),
            platform_hint=_optional_str(pick("platformHint", "platform_hint")),
            username=str(pick("username", default="") or ""),
            ip_address=str(pick("ipAddress", "ip_address", default="") or ""),
        )
        request.validate()
        return request

    def validate(self) -> None:
        if not isinstance(self.type, MediaType):
            raise MalformedRequestError(f"Unknown content type: {self.type!r}")
        if not (self.title or "").strip():
            raise MalformedRequestError("title is required")
        if not (self.credential or "").strip():
            raise MalformedRequestError("credential is required")
        if not (self.user_id or "").strip():
            raise MalformedRequestError("userId is required")
        if self.type is MediaType.TV and (self.season is None or self.episode is None):
            raise MalformedRequestError("season and episode are required for tv requests")
        if self.max_bitrate_mbps is not None and self.max_bitrate_mbps <= 0:
            raise MalformedRequestError("maxBitrateMbps must be positive")

    @property
    def is_tv(self) -> bool:
        return self.type is MediaType.TV

    @property
    def content_identity(self) -> str:
        """Stable identity used by the link cache (external id, else normalized title + year)."""
        if self.external_id:
            return str(self.external_id).strip()
        normalized = re.sub(r"[^a-z0-9]+", " ", self.title.lower()).strip()
        return f"{normalized}|{self.year or ''}"

    def is_hash_excluded(self, infohash: str) -> bool:
        if not infohash:
            return False
        wanted = infohash.strip().lower()
        return any((h or "").strip().lower() == wanted for h in self.excluded_hashes)

    def label(self) -> str:
        if self.is_tv:
            return f"{self.title} S{self.season:02d}E{self.episode:02d}"
        return f"{self.title} ({self.year})" if self.year else self.title

    def to_dict(self) -> dict:
        """Snapshot without the raw credential."""
        return {
            "title": self.title,
            "year": self.year,
            "type": self.type.value,
            "season": self.season,
            "episode": self.episode,
            "externalId": self.external_id,
            "userId": self.user_id,
            "maxBitrateMbps": self.max_bitrate_mbps,
            "excludedHashes": list(self.excluded_hashes),
            "excludedFilePaths": list(self.excluded_file_paths),
            "platformHint": self.platform_hint,
        }


def _optional_int(value, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedRequestError(f"{name} must be an integer")


def _optional_float(value, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedRequestError(f"{name} must be a number")


def _optional_str(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
