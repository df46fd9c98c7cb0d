"""
RealDebrid Client
Per-credential torrent lifecycle (add, select, status, unrestrict) and instant availability
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, Set

import requests

from ..core.errors import DebridError, TransientProviderError
from ..sources.base import DebridAvailability

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".avi", ".mov", ".webm", ".wmv", ".m4v", ".ts")
FAILURE_STATUSES = frozenset({"error", "magnet_error", "virus", "dead"})
READY_STATUS = "downloaded"


def _normalize(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (text or "").lower())


class RealDebridClient(DebridAvailability):
    """RealDebrid API client; every call is authenticated with the caller's own API key"""

    BASE_URL = "https://api.real-debrid.com/rest/1.0"

    def __init__(self, settings_manager, event_bus=None):
        self.settings = settings_manager
        self.event_bus = event_bus

    def _timeout(self) -> float:
        try:
            return float(self.settings.get("debrid_request_timeout_seconds", 15.0) or 15.0)
        except (TypeError, ValueError):
            return 15.0

    def _base_url(self) -> str:
        return str(self.settings.get("debrid_api_url", self.BASE_URL) or self.BASE_URL).rstrip("/")

    def _api_request(self, method: str, endpoint: str, credential: str, **kwargs) -> requests.Response:
        """Make an authenticated API request"""
        if not credential:
            raise DebridError("Debrid credential is required", status_code=401)

        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {credential}"
        timeout = kwargs.pop("timeout", self._timeout())

        url = f"{self._base_url()}/{endpoint}"
        try:
            response = requests.request(method, url, headers=headers, timeout=timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientProviderError(f"RealDebrid {endpoint}: {e}")

        if response.status_code in (502, 503, 504):
            raise TransientProviderError(f"RealDebrid {endpoint}: HTTP {response.status_code}",
                                         status_code=response.status_code)
        if response.status_code >= 400:
            raise DebridError(self._error_message(response, endpoint), status_code=response.status_code)
        return response

    @staticmethod
    def _error_message(response: requests.Response, endpoint: str) -> str:
        try:
            payload = response.json()
            err = payload.get("error") or payload.get("error_code")
        except ValueError:
            err = (response.text or "").strip()[:200]
        return f"RealDebrid {endpoint} failed ({response.status_code}): {err}"

    # ---- Torrent lifecycle ----
    def add_magnet(self, magnet: str, credential: str) -> str:
        response = self._api_request("POST", "torrents/addMagnet", credential, data={"magnet": magnet})
        torrent_id = (response.json() or {}).get("id")
        if not torrent_id:
            raise DebridError("Failed to add magnet")
        return str(torrent_id)

    def get_status(self, torrent_id: str, credential: str) -> Dict:
        """Torrent info: status, progress, files, links."""
        response = self._api_request("GET", f"torrents/info/{torrent_id}", credential)
        data = response.json()
        return data if isinstance(data, dict) else {}

    def select_files(self, torrent_id: str, file_ids, credential: str) -> None:
        if isinstance(file_ids, (list, tuple, set)):
            files = ",".join(str(f) for f in file_ids)
        else:
            files = str(file_ids or "all")
        self._api_request("POST", f"torrents/selectFiles/{torrent_id}", credential, data={"files": files})

    def unrestrict_link(self, link: str, credential: str) -> Dict:
        """Returns the unrestrict payload (download, filename, filesize)."""
        response = self._api_request("POST", "unrestrict/link", credential, data={"link": link})
        data = response.json() or {}
        if not data.get("download"):
            raise DebridError("RealDebrid returned no download url")
        return data

    def delete_torrent(self, torrent_id: str, credential: str) -> None:
        self._api_request("DELETE", f"torrents/delete/{torrent_id}", credential)

    def list_torrents(self, credential: str, page: int = 1, limit: int = 100) -> List[Dict]:
        """List the user's torrents."""
        response = self._api_request(
            "GET",
            "torrents",
            credential,
            params={"page": max(1, page), "limit": max(1, min(limit, 500))},
        )
        data = response.json()
        return data if isinstance(data, list) else []

    @staticmethod
    def is_failure_status(status: str) -> bool:
        return str(status or "").strip().lower() in FAILURE_STATUSES

    @staticmethod
    def is_ready(info: Dict) -> bool:
        return str(info.get("status") or "") == READY_STATUS and bool(info.get("links"))

    # ---- Availability ----
    def check_cached(self, hashes: Iterable[str], credential: str) -> Set[str]:
        """Subset of hashes instantly available; any failure means none are."""
        wanted = [h.strip().lower() for h in hashes if h and h.strip()]
        if not wanted or not credential:
            return set()
        try:
            response = self._api_request("GET", f"torrents/instantAvailability/{'/'.join(wanted)}", credential)
            data = response.json()
        except (DebridError, TransientProviderError, ValueError) as e:
            logger.warning("RealDebrid instant availability check failed: %s", e)
            return set()
        if not isinstance(data, dict):
            return set()

        cached = set()
        for infohash in wanted:
            node = data.get(infohash) or data.get(infohash.upper()) or {}
            if isinstance(node, dict) and any(bool(v) for v in node.values()):
                cached.add(infohash)
        logger.info("RealDebrid cache: %d/%d torrents cached", len(cached), len(wanted))
        return cached

    # ---- File selection ----
    @staticmethod
    def find_best_video_file(files: List[Dict], season: Optional[int] = None,
                             episode: Optional[int] = None) -> Optional[Dict]:
        """
        Pick the file to stream from a torrent's file list.
        Episodes are matched by name (season context required for loose patterns);
        movies take the largest video file.
        """
        videos = [f for f in files or [] if str(f.get("path") or "").lower().endswith(VIDEO_EXTENSIONS)]
        if not videos:
            return None

        if season is not None and episode is not None:
            s = f"{int(season):02d}"
            e = f"{int(episode):02d}"
            specific = [
                re.compile(rf"s{s}[._]?e{e}(?:[^0-9]|$)", re.IGNORECASE),
                re.compile(rf"{int(season)}x{e}(?:[^0-9]|$)", re.IGNORECASE),
                re.compile(rf"season\s*{int(season)}.*episode\s*{int(episode)}(?:[^0-9]|$)", re.IGNORECASE),
                re.compile(rf"(?:^|[^0-9]){s}{e}(?:[^0-9]|$)", re.IGNORECASE),
            ]
            loose = [
                re.compile(rf"e{e}(?:[^0-9]|$)", re.IGNORECASE),
                re.compile(rf"[\s._-]{int(episode)}(?:[^0-9]|$)", re.IGNORECASE),
            ]
            season_context = (f"s{s}", f"season {int(season)}", f"season{int(season)}")

            for pattern in specific:
                for f in videos:
                    if pattern.search(f.get("path") or ""):
                        return f
            for pattern in loose:
                for f in videos:
                    path = f.get("path") or ""
                    if pattern.search(path) and any(marker in path.lower() for marker in season_context):
                        return f
            return None

        return max(videos, key=lambda f: int(f.get("bytes") or 0))

    def resolve_library_file(self, file_path: str, credential: str) -> Optional[Dict]:
        """
        Map a cache-mount path (.../__all__/<pack>/<file>) to an unrestricted link
        from the user's library. Returns None when the pack or file is not there.
        """
        parts = [p for p in (file_path or "").replace("\\", "/").split("/") if p]
        if "__all__" in parts:
            idx = parts.index("__all__")
            if len(parts) < idx + 3:
                return None
            pack_name = parts[idx + 1]
        elif len(parts) >= 2:
            pack_name = parts[-2]
        else:
            return None
        file_name = parts[-1]

        norm_pack = _normalize(pack_name)
        torrent = None
        for t in self.list_torrents(credential, limit=500):
            original = t.get("original_filename") or ""
            if not original:
                continue
            if original == pack_name or (norm_pack and norm_pack in _normalize(original)):
                torrent = t
                break
        if torrent is None:
            logger.warning("No library torrent matches pack %s", pack_name)
            return None

        info = self.get_status(str(torrent.get("id")), credential)
        files = info.get("files") or []
        norm_file = _normalize(file_name)
        match = None
        for f in files:
            path = str(f.get("path") or "")
            if path == file_name or path.rsplit("/", 1)[-1] == file_name or _normalize(path.rsplit("/", 1)[-1]) == norm_file:
                match = f
                break
        if match is None or int(match.get("selected") or 0) != 1:
            logger.warning("File %s not selected in library torrent", file_name)
            return None

        selected = [f for f in files if int(f.get("selected") or 0) == 1]
        index = next((i for i, f in enumerate(selected) if f.get("id") == match.get("id")), -1)
        links = info.get("links") or []
        if index < 0 or index >= len(links):
            return None
        return self.unrestrict_link(links[index], credential)
