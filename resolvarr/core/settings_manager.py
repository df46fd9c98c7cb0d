"""
Settings Manager
Handles persistent service settings in the data directory
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
import threading

logger = logging.getLogger(__name__)

# Environment variables that override the JSON file (secrets and endpoints)
ENV_OVERRIDES = {
    "RESOLVARR_PROWLARR_URL": "prowlarr_url",
    "RESOLVARR_PROWLARR_API_KEY": "prowlarr_api_key",
    "RESOLVARR_TMDB_API_KEY": "tmdb_api_key",
    "RESOLVARR_CACHE_MOUNT_PATH": "cache_mount_path",
    "RESOLVARR_MOUNT_URL_BASE": "mount_url_base",
    "RESOLVARR_DEBRID_API_URL": "debrid_api_url",
    "RESOLVARR_TRUST_PROXY_HEADERS": "trust_proxy_headers",
}


class SettingsManager:
    """Manages service settings with persistence"""

    DEFAULT_SETTINGS = {
        # Indexer
        "prowlarr_url": "http://localhost:9696",
        "prowlarr_api_key": "",
        "prowlarr_request_timeout_seconds": 30.0,
        "prowlarr_min_seeders": 5,
        "prowlarr_min_size_gb": 0.05,
        "prowlarr_max_size_gb": 100.0,
        "prowlarr_max_results": 50,
        "prowlarr_blocked_groups": ["YIFY", "YTS", "RARBG"],
        "indexer_retries": 2,
        "indexer_retry_backoff_seconds": 1.0,

        # Cache mount
        "cache_mount_path": "",
        "cache_mount_quality_mb_per_min": 7.0,
        "mount_url_base": "",

        # Metadata
        "tmdb_api_key": "",
        "tmdb_request_timeout_seconds": 10.0,

        # Debrid
        "debrid_api_url": "https://api.real-debrid.com/rest/1.0",
        "debrid_request_timeout_seconds": 15.0,
        "debrid_poll_interval_seconds": 3.0,
        "debrid_max_poll_seconds": 1800.0,

        # Aggregation
        "search_ceiling_seconds": 45.0,
        "max_concurrent_requests": 6,
        "max_source_attempts": 3,

        # Stores
        "link_ttl_hours": 24,
        "bad_link_ttl_hours": 48,
        "verify_cached_links": False,
        "verify_timeout_seconds": 5.0,
        "session_liveness_seconds": 5.0,
        "session_sweep_seconds": 30.0,

        # Jobs
        "completed_history_size": 20,
        "completed_job_retention_seconds": 300,
        "error_job_retention_seconds": 12 * 60 * 60,

        # Maintenance
        "job_sweep_interval_seconds": 60.0,
        "session_sweep_interval_seconds": 10.0,
        "store_sweep_interval_seconds": 3600.0,

        # Web
        "trust_proxy_headers": False,
    }

    def __init__(self, data_dir: Union[Path, str, None] = None, persist: bool = True):
        if data_dir is None:
            env_dir = str(os.environ.get("RESOLVARR_DATA_DIR", "") or "").strip()
            data_dir = Path(env_dir).expanduser() if env_dir else (Path.home() / ".resolvarr")
        self.settings_dir = Path(data_dir)
        self.settings_file = self.settings_dir / "settings.json"
        self._persist = persist
        if persist:
            self.settings_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._settings: Dict[str, Any] = {}
        self._load()

    def _load(self):
        """Load settings from file, then apply environment overrides"""
        with self._lock:
            self._settings = dict(self.DEFAULT_SETTINGS)
            if self._persist and self.settings_file.exists():
                try:
                    with open(self.settings_file, "r") as f:
                        loaded = json.load(f)
                    if isinstance(loaded, dict):
                        self._settings.update(loaded)
                except (OSError, ValueError) as e:
                    logger.warning("Error loading settings from %s: %s", self.settings_file, e)
            for env_name, key in ENV_OVERRIDES.items():
                value = str(os.environ.get(env_name, "") or "").strip()
                if value:
                    self._settings[key] = value

    def _save(self):
        if not self._persist:
            return
        with self._lock:
            try:
                with open(self.settings_file, "w") as f:
                    json.dump(self._settings, f, indent=2)
            except OSError as e:
                logger.error("Error saving settings: %s", e)

    def get(self, key: str, default=None) -> Any:
        with self._lock:
            return self._settings.get(key, default)

    def get_float(self, key: str, default: float = 0.0) -> float:
        try:
            return float(self.get(key, default))
        except (TypeError, ValueError):
            return float(default)

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get(key, default))
        except (TypeError, ValueError):
            return int(default)

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Booleans may arrive as strings from environment overrides."""
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    def set(self, key: str, value: Any):
        """Set a setting value and save"""
        with self._lock:
            self._settings[str(key)] = value
            self._save()

    def update(self, settings_dict: Optional[Dict[str, Any]]):
        """Update multiple settings at once"""
        with self._lock:
            self._settings.update(dict(settings_dict or {}))
            self._save()

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            return self._settings.copy()

    def reset(self):
        """Reset to default settings"""
        with self._lock:
            self._settings = dict(self.DEFAULT_SETTINGS)
            self._save()
