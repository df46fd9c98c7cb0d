"""
SQLite-backed persistence for resolved stream links and active playback sessions.

Design goals:
- Local-first; stdlib sqlite3 only.
- Every single-key write is an upsert (INSERT ... ON CONFLICT DO UPDATE) under the store lock.
- Timestamps are epoch seconds so callers can drive expiry with their own clock.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import List, Optional, Union

# NULL never conflicts in a UNIQUE index, so movies store -1 for season/episode
NO_EPISODE = -1


def _to_db(value: Optional[int]) -> int:
    return NO_EPISODE if value is None else int(value)


def _from_db(value) -> Optional[int]:
    if value is None or int(value) == NO_EPISODE:
        return None
    return int(value)


def _optional_float(value) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass(frozen=True)
class CachedLinkRow:
    id: int
    content_identity: str
    media_type: str
    season: Optional[int]
    episode: Optional[int]
    resolution: int
    credential_hash: str
    stream_url: str
    file_name: str
    estimated_bitrate_mbps: Optional[float]
    file_size_bytes: Optional[int]
    created_at: float
    expires_at: float
    last_accessed_at: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contentIdentity": self.content_identity,
            "type": self.media_type,
            "season": self.season,
            "episode": self.episode,
            "resolution": self.resolution,
            "streamUrl": self.stream_url,
            "fileName": self.file_name,
            "estimatedBitrateMbps": self.estimated_bitrate_mbps,
            "fileSizeBytes": self.file_size_bytes,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "lastAccessedAt": self.last_accessed_at,
        }


@dataclass(frozen=True)
class SessionRow:
    credential_hash: str
    ip_address: str
    user_id: str
    username: str
    stream_started_at: float
    last_heartbeat_at: float

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "username": self.username,
            "ipAddress": self.ip_address,
            "streamStartedAt": self.stream_started_at,
            "lastHeartbeatAt": self.last_heartbeat_at,
        }


class SqliteStore:
    def __init__(self, data_dir: Union[Path, str, None] = None, filename: str = "resolvarr.db"):
        self._lock = RLock()
        if data_dir is None:
            # Private in-memory database, used by tests and ephemeral runs
            self._db_path = None
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            self._db_path = Path(data_dir) / filename
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            if self._db_path is not None:
                self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._migrate()

    @property
    def db_path(self) -> Optional[Path]:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _migrate(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)"
            )
            row = self._conn.execute("SELECT version FROM schema_version").fetchone()
            if not row:
                self._conn.execute("INSERT INTO schema_version(version) VALUES (1)")

            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS link_cache (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  content_identity TEXT NOT NULL,
                  media_type TEXT NOT NULL,
                  season INTEGER NOT NULL DEFAULT -1,
                  episode INTEGER NOT NULL DEFAULT -1,
                  resolution INTEGER NOT NULL DEFAULT 0,
                  credential_hash TEXT NOT NULL,
                  stream_url TEXT NOT NULL,
                  file_name TEXT NOT NULL DEFAULT '',
                  estimated_bitrate_mbps REAL,
                  file_size_bytes INTEGER,
                  created_at REAL NOT NULL,
                  expires_at REAL NOT NULL,
                  last_accessed_at REAL NOT NULL,
                  UNIQUE(content_identity, media_type, season, episode, resolution, credential_hash)
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_link_cache_expires ON link_cache(expires_at)"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS active_sessions (
                  credential_hash TEXT NOT NULL,
                  ip_address TEXT NOT NULL,
                  user_id TEXT NOT NULL DEFAULT '',
                  username TEXT NOT NULL DEFAULT '',
                  stream_started_at REAL NOT NULL,
                  last_heartbeat_at REAL NOT NULL,
                  PRIMARY KEY(credential_hash, ip_address)
                )
                """
            )

    # ---- Link cache ----
    @staticmethod
    def _link_row(r) -> CachedLinkRow:
        return CachedLinkRow(
            id=int(r["id"]),
            content_identity=str(r["content_identity"]),
            media_type=str(r["media_type"]),
            season=_from_db(r["season"]),
            episode=_from_db(r["episode"]),
            resolution=int(r["resolution"] or 0),
            credential_hash=str(r["credential_hash"]),
            stream_url=str(r["stream_url"]),
            file_name=str(r["file_name"] or ""),
            estimated_bitrate_mbps=_optional_float(r["estimated_bitrate_mbps"]),
            file_size_bytes=int(r["file_size_bytes"]) if r["file_size_bytes"] is not None else None,
            created_at=float(r["created_at"]),
            expires_at=float(r["expires_at"]),
            last_accessed_at=float(r["last_accessed_at"]),
        )

    def find_links(self, content_identity: str, media_type: str, season: Optional[int],
                   episode: Optional[int], credential_hash: str, now: float) -> List[CachedLinkRow]:
        """Unexpired rows for one piece of content, highest resolution first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM link_cache
                WHERE content_identity = ? AND media_type = ? AND season = ? AND episode = ?
                  AND credential_hash = ? AND expires_at > ?
                ORDER BY resolution DESC, created_at DESC
                """,
                (content_identity, media_type, _to_db(season), _to_db(episode), credential_hash, float(now)),
            ).fetchall()
        return [self._link_row(r) for r in rows]

    def get_link(self, link_id: int) -> Optional[CachedLinkRow]:
        with self._lock:
            r = self._conn.execute("SELECT * FROM link_cache WHERE id = ?", (int(link_id),)).fetchone()
        return self._link_row(r) if r else None

    def touch_link(self, link_id: int, now: float) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE link_cache SET last_accessed_at = ? WHERE id = ?", (float(now), int(link_id))
            )

    def upsert_link(self, *, content_identity: str, media_type: str, season: Optional[int],
                    episode: Optional[int], resolution: int, credential_hash: str, stream_url: str,
                    file_name: str, estimated_bitrate_mbps: Optional[float],
                    file_size_bytes: Optional[int], now: float, expires_at: float) -> CachedLinkRow:
        key = (content_identity, media_type, _to_db(season), _to_db(episode), int(resolution or 0), credential_hash)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO link_cache(content_identity,media_type,season,episode,resolution,credential_hash,
                                       stream_url,file_name,estimated_bitrate_mbps,file_size_bytes,
                                       created_at,expires_at,last_accessed_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(content_identity, media_type, season, episode, resolution, credential_hash)
                DO UPDATE SET stream_url=excluded.stream_url, file_name=excluded.file_name,
                              estimated_bitrate_mbps=excluded.estimated_bitrate_mbps,
                              file_size_bytes=excluded.file_size_bytes,
                              expires_at=excluded.expires_at, last_accessed_at=excluded.last_accessed_at
                """,
                key + (stream_url, file_name or "", estimated_bitrate_mbps, file_size_bytes,
                       float(now), float(expires_at), float(now)),
            )
            r = self._conn.execute(
                """
                SELECT * FROM link_cache
                WHERE content_identity = ? AND media_type = ? AND season = ? AND episode = ?
                  AND resolution = ? AND credential_hash = ?
                """,
                key,
            ).fetchone()
        return self._link_row(r)

    def delete_link(self, link_id: int) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM link_cache WHERE id = ?", (int(link_id),))
            return cur.rowcount > 0

    def delete_expired_links(self, now: float) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM link_cache WHERE expires_at <= ?", (float(now),))
            return int(cur.rowcount)

    def count_links(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(1) AS n FROM link_cache").fetchone()
            return int(row["n"] if row else 0)

    # ---- Active sessions ----
    @staticmethod
    def _session_row(r) -> SessionRow:
        return SessionRow(
            credential_hash=str(r["credential_hash"]),
            ip_address=str(r["ip_address"]),
            user_id=str(r["user_id"] or ""),
            username=str(r["username"] or ""),
            stream_started_at=float(r["stream_started_at"]),
            last_heartbeat_at=float(r["last_heartbeat_at"]),
        )

    def live_sessions_elsewhere(self, credential_hash: str, ip_address: str, since: float) -> List[SessionRow]:
        """Rows for the credential at other IPs whose heartbeat is newer than since."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM active_sessions
                WHERE credential_hash = ? AND ip_address != ? AND last_heartbeat_at > ?
                ORDER BY stream_started_at ASC
                """,
                (credential_hash, ip_address, float(since)),
            ).fetchall()
        return [self._session_row(r) for r in rows]

    def get_session(self, credential_hash: str, ip_address: str) -> Optional[SessionRow]:
        with self._lock:
            r = self._conn.execute(
                "SELECT * FROM active_sessions WHERE credential_hash = ? AND ip_address = ?",
                (credential_hash, ip_address),
            ).fetchone()
        return self._session_row(r) if r else None

    def upsert_session(self, credential_hash: str, ip_address: str, user_id: str, username: str, now: float) -> None:
        """Insert a session, or refresh the heartbeat of an existing one keeping its start time."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO active_sessions(credential_hash,ip_address,user_id,username,stream_started_at,last_heartbeat_at)
                VALUES (?,?,?,?,?,?)
                ON CONFLICT(credential_hash, ip_address)
                DO UPDATE SET user_id=excluded.user_id, username=excluded.username,
                              last_heartbeat_at=excluded.last_heartbeat_at
                """,
                (credential_hash, ip_address, user_id or "", username or "", float(now), float(now)),
            )

    def touch_session(self, credential_hash: str, ip_address: str, now: float) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE active_sessions SET last_heartbeat_at = ? WHERE credential_hash = ? AND ip_address = ?",
                (float(now), credential_hash, ip_address),
            )
            return cur.rowcount > 0

    def delete_session(self, credential_hash: str, ip_address: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM active_sessions WHERE credential_hash = ? AND ip_address = ?",
                (credential_hash, ip_address),
            )
            return cur.rowcount > 0

    def delete_stale_sessions(self, older_than: float) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM active_sessions WHERE last_heartbeat_at < ?", (float(older_than),)
            )
            return int(cur.rowcount)

    def list_sessions(self, since: float) -> List[SessionRow]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM active_sessions WHERE last_heartbeat_at >= ? ORDER BY stream_started_at ASC",
                (float(since),),
            ).fetchall()
        return [self._session_row(r) for r in rows]
