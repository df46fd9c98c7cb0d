"""
TMDB runtime lookup used to estimate bitrate from file size
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .base import RuntimeLookup
from ..models.content_request import MediaType

logger = logging.getLogger(__name__)


class TmdbRuntimeLookup(RuntimeLookup):
    BASE_URL = "https://api.themoviedb.org/3"

    def __init__(self, settings):
        self.settings = settings

    def _api_key(self) -> str:
        return str(self.settings.get("tmdb_api_key", "") or "").strip()

    def _timeout(self) -> float:
        try:
            return float(self.settings.get("tmdb_request_timeout_seconds", 10.0) or 10.0)
        except (TypeError, ValueError):
            return 10.0

    def _get(self, path: str) -> Dict[str, Any]:
        response = requests.get(
            f"{self.BASE_URL}/{path}",
            params={"api_key": self._api_key()},
            timeout=self._timeout(),
        )
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, dict) else {}

    def get_runtime_minutes(self, external_id, media_type, season=None, episode=None) -> Optional[int]:
        """Runtime in minutes, or None when unknown (callers fall back to defaults)."""
        if not external_id or not self._api_key():
            return None
        try:
            if media_type is MediaType.TV:
                if season is not None and episode is not None:
                    data = self._get(f"tv/{external_id}/season/{int(season)}/episode/{int(episode)}")
                    if data.get("runtime"):
                        return int(data["runtime"])
                show = self._get(f"tv/{external_id}")
                run_times = show.get("episode_run_time") or []
                return int(run_times[0]) if run_times else None
            data = self._get(f"movie/{external_id}")
            return int(data["runtime"]) if data.get("runtime") else None
        except (requests.RequestException, ValueError, TypeError) as e:
            logger.warning("Runtime lookup failed for %s: %s", external_id, e)
            return None
