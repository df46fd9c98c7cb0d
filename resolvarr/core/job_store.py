"""
Job Store
Runs stream resolutions as background jobs with a forward-only state machine
"""
from collections import deque
from typing import Callable, Deque, Dict, List, Optional
from urllib.parse import quote
import logging
import os
import threading
import time
import uuid

from ..models.content_request import ContentRequest
from ..models.resolution_job import AttemptedSource, JobState, ResolutionJob
from ..models.source_candidate import FileCandidate, SourceCandidate, TorrentCandidate
from .aggregator import Aggregator
from .bad_links import BadLinkRegistry
from .errors import DebridError, DownloadFailedError, NoCandidatesError, StaleCacheError, TransientProviderError
from .event_bus import EventBus, Events
from .link_cache import LinkCache
from .session_guard import SessionGuard

logger = logging.getLogger(__name__)

COMPLETED_HISTORY_SIZE = 20
COMPLETED_RETENTION_SECONDS = 5 * 60
ERROR_RETENTION_SECONDS = 12 * 60 * 60


class _JobGone(Exception):
    """The job was deleted while its worker was still running."""


class JobStore:
    """Owns every resolution job and its worker thread"""

    def __init__(self, aggregator: Aggregator, debrid, link_cache: LinkCache, session_guard: SessionGuard,
                 bad_links: BadLinkRegistry, settings=None, event_bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.time, sleep: Callable[[float], None] = time.sleep):
        self.aggregator = aggregator
        self.debrid = debrid
        self.link_cache = link_cache
        self.session_guard = session_guard
        self.bad_links = bad_links
        self.settings = settings
        self.event_bus = event_bus
        self._clock = clock
        self._sleep = sleep

        self._jobs: Dict[str, ResolutionJob] = {}
        self._workers: Dict[str, threading.Thread] = {}
        self._lock = threading.RLock()
        self._history: Deque[dict] = deque(maxlen=self._setting_int("completed_history_size", COMPLETED_HISTORY_SIZE))

    def _setting(self, key: str, default):
        if self.settings is None:
            return default
        value = self.settings.get(key, default)
        return default if value is None else value

    def _setting_int(self, key: str, default: int) -> int:
        try:
            return int(self._setting(key, default))
        except (TypeError, ValueError):
            return default

    def _setting_float(self, key: str, default: float) -> float:
        try:
            return float(self._setting(key, default))
        except (TypeError, ValueError):
            return default

    def _emit(self, event_type: str, data=None):
        if self.event_bus is not None:
            self.event_bus.emit(event_type, data)

    # ---- Public API ----
    def create_job(self, request: ContentRequest) -> str:
        """
        Validate, claim the playback session and start resolving in the background.
        Raises MalformedRequestError or ConcurrentSessionError without creating a job.
        """
        request.validate()
        self.session_guard.check_and_start(request.credential, request.ip_address, request.user_id, request.username)

        job_id = uuid.uuid4().hex
        job = ResolutionJob(job_id=job_id, request=request, created_at=self._clock())
        worker = threading.Thread(target=self._process_job, args=(job_id,), name=f"job-{job_id[:8]}", daemon=True)
        with self._lock:
            self._jobs[job_id] = job
            self._workers[job_id] = worker
        self._emit(Events.JOB_CREATED, {"job_id": job_id, "request": request.to_dict()})
        logger.info("Job %s created for %s", job_id, request.label())
        worker.start()
        return job_id

    def get_job(self, job_id: str) -> Optional[dict]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.to_dict() if job else None

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[dict]:
        """Join the job's worker, then return its snapshot."""
        with self._lock:
            worker = self._workers.get(job_id)
        if worker is not None:
            worker.join(timeout)
        return self.get_job(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Cancellation is deletion; the worker notices at its next existence check."""
        with self._lock:
            job = self._jobs.pop(job_id, None)
            self._workers.pop(job_id, None)
        if job is None:
            return False
        self._remove_temp_file(job)
        self._emit(Events.JOB_CANCELLED, {"job_id": job_id})
        logger.info("Job %s cancelled", job_id)
        return True

    def completed_history(self) -> List[dict]:
        with self._lock:
            return list(self._history)

    def active_jobs(self) -> List[dict]:
        with self._lock:
            return [j.to_dict() for j in self._jobs.values()]

    def sweep(self) -> int:
        """Purge finished jobs past their retention window and delete their temp files."""
        now = self._clock()
        completed_ttl = self._setting_float("completed_job_retention_seconds", COMPLETED_RETENTION_SECONDS)
        error_ttl = self._setting_float("error_job_retention_seconds", ERROR_RETENTION_SECONDS)
        purged: List[ResolutionJob] = []
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if not job.is_terminal or job.completed_at is None:
                    continue
                ttl = completed_ttl if job.state is JobState.COMPLETED else error_ttl
                if now - job.completed_at > ttl:
                    purged.append(self._jobs.pop(job_id))
                    self._workers.pop(job_id, None)
        for job in purged:
            self._remove_temp_file(job)
            self._emit(Events.JOB_PURGED, {"job_id": job.job_id})
        if purged:
            logger.debug("Swept %d finished job(s)", len(purged))
        return len(purged)

    def report_bad_link(self, identity: str, reporter: str, reason: str = ""):
        """
        Flag a source. identity may be a source identity or a job id, in which case
        the source that job resolved to is flagged.
        """
        source = ""
        with self._lock:
            job = self._jobs.get(identity)
            if job is None:
                job_snapshot = next((h for h in self._history if h.get("jobId") == identity), None)
                attempts = job_snapshot.get("attemptedSources", []) if job_snapshot else []
                resolved = [a for a in attempts if a.get("outcome") == "resolved"]
                if resolved:
                    identity, source = resolved[-1]["identity"], resolved[-1]["source"]
            else:
                resolved = [a for a in job.attempted_sources if a.outcome == "resolved"]
                if resolved:
                    identity, source = resolved[-1].identity, resolved[-1].source
        flag = self.bad_links.report(identity, reporter, reason, source)
        self._emit(Events.BAD_LINK_REPORTED, flag.to_dict())
        return flag

    def session_start(self, credential: str, ip_address: str, user_id: str = "", username: str = "") -> dict:
        return self.session_guard.check_and_start(credential, ip_address, user_id, username)

    def session_heartbeat(self, credential: str, ip_address: str) -> bool:
        return self.session_guard.heartbeat(credential, ip_address)

    def session_end(self, credential: str, ip_address: str) -> bool:
        return self.session_guard.end(credential, ip_address)

    # ---- Job mutation (store-then-check) ----
    def _update(self, job_id: str, **changes) -> ResolutionJob:
        """Apply field changes if the job still exists; raises _JobGone otherwise."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise _JobGone(job_id)
            state = changes.pop("state", None)
            for key, value in changes.items():
                setattr(job, key, value)
            if state is not None:
                reached_terminal = job.transition(state, self._clock())
                if reached_terminal:
                    self._history.appendleft(job.snapshot().to_dict())
            snapshot = job.to_dict()
        self._emit(Events.JOB_PROGRESS, snapshot)
        return job

    def _record_attempt(self, job_id: str, candidate: SourceCandidate) -> AttemptedSource:
        attempt = AttemptedSource(
            identity=candidate.identity,
            source=candidate.source,
            title=candidate.display_title,
            resolution=candidate.resolution,
            attempted_at=self._clock(),
        )
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise _JobGone(job_id)
            job.record_attempt(attempt)
        self._emit(Events.JOB_SOURCE_ATTEMPTED, {"job_id": job_id, "attempt": attempt.to_dict()})
        return attempt

    def _set_outcome(self, job_id: str, attempt: AttemptedSource, outcome: str) -> None:
        """Record an attempt's outcome; raises _JobGone if the job was deleted meanwhile."""
        with self._lock:
            if job_id not in self._jobs:
                raise _JobGone(job_id)
            attempt.outcome = outcome

    # ---- Worker ----
    def _process_job(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return
        request = job.request
        try:
            if self._serve_from_cache(job_id, request):
                return
            self._resolve_from_sources(job_id, request)
        except _JobGone:
            logger.info("Job %s was deleted; worker stopping", job_id)
        except Exception as e:
            logger.exception("Job %s failed unexpectedly", job_id)
            self._fail(job_id, str(e) or e.__class__.__name__)

    def _serve_from_cache(self, job_id: str, request: ContentRequest) -> bool:
        self._update(job_id, progress=5, message="Checking link cache...")
        cached = self.link_cache.get(request)
        if cached is None:
            return False
        if self._setting("verify_cached_links", False):
            try:
                self.link_cache.ensure_live(cached)
            except StaleCacheError:
                logger.info("Cached link for %s is stale; resolving fresh", request.label())
                self._emit(Events.LINK_INVALIDATED, {"id": cached.id})
                return False
        self._complete(
            job_id,
            stream_url=cached.stream_url,
            file_name=cached.file_name,
            file_size_bytes=cached.file_size_bytes,
            resolution=cached.resolution,
            source="link-cache",
        )
        return True

    def _resolve_from_sources(self, job_id: str, request: ContentRequest) -> None:
        self._update(job_id, progress=10, message="Searching for sources...")
        result = self.aggregator.search(request)
        if not len(result):
            self._fail(job_id, str(NoCandidatesError()))
            return

        max_attempts = max(1, self._setting_int("max_source_attempts", 3))
        last_error = ""
        for candidate in list(result)[:max_attempts]:
            attempt = self._record_attempt(job_id, candidate)
            self._update(job_id, message=f"Trying {candidate.display_title[:80]}")
            try:
                resolved = self._resolve_candidate(job_id, request, candidate)
            except (DownloadFailedError, DebridError, TransientProviderError) as e:
                last_error = str(e)
                self._set_outcome(job_id, attempt, f"failed: {last_error}")
                logger.warning("Job %s: source %s failed: %s", job_id, candidate.identity[:60], last_error)
                continue

            self._set_outcome(job_id, attempt, "resolved")
            self.link_cache.put(
                request,
                resolved["stream_url"],
                file_name=resolved.get("file_name") or "",
                resolution=candidate.resolution,
                estimated_bitrate_mbps=candidate.estimated_bitrate_mbps,
                file_size_bytes=resolved.get("file_size_bytes"),
            )
            self._emit(Events.LINK_CACHED, {"job_id": job_id})
            self._complete(
                job_id,
                stream_url=resolved["stream_url"],
                file_name=resolved.get("file_name"),
                file_size_bytes=resolved.get("file_size_bytes"),
                resolution=candidate.resolution,
                source=candidate.source,
            )
            return

        self._fail(job_id, last_error or str(NoCandidatesError()))

    def _resolve_candidate(self, job_id: str, request: ContentRequest, candidate: SourceCandidate) -> dict:
        if isinstance(candidate, FileCandidate):
            return self._resolve_file(request, candidate)
        if isinstance(candidate, TorrentCandidate):
            return self._resolve_torrent(job_id, request, candidate)
        raise DownloadFailedError(f"Unsupported candidate type: {type(candidate).__name__}")

    def _resolve_file(self, request: ContentRequest, candidate: FileCandidate) -> dict:
        base = str(self._setting("mount_url_base", "") or "").rstrip("/")
        size = int(candidate.size_mb * 1024 * 1024) if candidate.size_mb else None
        if base:
            root = str(self._setting("cache_mount_path", "") or "").rstrip("/")
            relative = candidate.file_path[len(root):] if root and candidate.file_path.startswith(root) else candidate.file_path
            return {
                "stream_url": f"{base}/{quote(relative.lstrip('/'))}",
                "file_name": candidate.file_name,
                "file_size_bytes": size,
            }
        unrestricted = self.debrid.resolve_library_file(candidate.file_path, request.credential)
        if not unrestricted:
            raise DownloadFailedError(f"{candidate.file_name} is not in the debrid library")
        return {
            "stream_url": unrestricted["download"],
            "file_name": unrestricted.get("filename") or candidate.file_name,
            "file_size_bytes": unrestricted.get("filesize") or size,
        }

    def _resolve_torrent(self, job_id: str, request: ContentRequest, candidate: TorrentCandidate) -> dict:
        credential = request.credential
        self._update(job_id, progress=15, message="Adding torrent to debrid service...")
        torrent_id = self.debrid.add_magnet(candidate.magnet_uri, credential)

        try:
            info = self.debrid.get_status(torrent_id, credential)
            chosen = self.debrid.find_best_video_file(info.get("files") or [], request.season, request.episode)
            if chosen is None:
                if request.is_tv:
                    raise DownloadFailedError(
                        f"Episode S{request.season:02d}E{request.episode:02d} not found in torrent"
                    )
                raise DownloadFailedError("No video file found in torrent")
            self.debrid.select_files(torrent_id, [chosen.get("id")], credential)

            if not candidate.is_cached:
                self._update(job_id, state=JobState.DOWNLOADING, progress=20, message="Downloading from seeders...")

            info = self._poll_until_ready(job_id, torrent_id, credential)
            unrestricted = self.debrid.unrestrict_link(info["links"][0], credential)
        except (DownloadFailedError, DebridError, TransientProviderError, _JobGone):
            self._discard_torrent(torrent_id, credential)
            raise
        return {
            "stream_url": unrestricted["download"],
            "file_name": unrestricted.get("filename") or os.path.basename(str(chosen.get("path") or "")),
            "file_size_bytes": unrestricted.get("filesize") or chosen.get("bytes"),
        }

    def _discard_torrent(self, torrent_id: str, credential: str) -> None:
        try:
            self.debrid.delete_torrent(torrent_id, credential)
        except (DebridError, TransientProviderError) as e:
            logger.debug("Could not delete unusable torrent %s: %s", torrent_id, e)

    def _poll_until_ready(self, job_id: str, torrent_id: str, credential: str) -> dict:
        """One loop per job: check existence, poll status, sleep, repeat."""
        interval = self._setting_float("debrid_poll_interval_seconds", 3.0)
        max_wait = self._setting_float("debrid_max_poll_seconds", 1800.0)
        started = self._clock()
        while True:
            with self._lock:
                if job_id not in self._jobs:
                    raise _JobGone(job_id)
            info = self.debrid.get_status(torrent_id, credential)
            status = str(info.get("status") or "")
            if self.debrid.is_ready(info):
                return info
            if self.debrid.is_failure_status(status):
                raise DownloadFailedError(f"Debrid transfer failed: {status}")
            progress = int(info.get("progress") or 0)
            self._update(job_id, progress=min(90, 20 + int(progress * 0.7)), message=f"Downloading: {progress}%")
            if self._clock() - started > max_wait:
                raise DownloadFailedError("Debrid transfer timed out")
            self._sleep(interval)

    # ---- Terminal states ----
    def _complete(self, job_id: str, stream_url: str, file_name=None, file_size_bytes=None,
                  resolution=None, source=None) -> None:
        self._update(
            job_id,
            state=JobState.COMPLETED,
            progress=100,
            message="Ready to stream",
            resolved_stream_url=stream_url,
            file_name=file_name,
            file_size_bytes=file_size_bytes,
            resolution=resolution,
            source=source,
        )
        self._emit(Events.JOB_COMPLETED, {"job_id": job_id})
        logger.info("Job %s completed from %s", job_id, source)

    def _fail(self, job_id: str, reason: str) -> None:
        try:
            self._update(job_id, state=JobState.ERROR, message=reason, error=reason)
        except _JobGone:
            return
        self._emit(Events.JOB_FAILED, {"job_id": job_id, "error": reason})
        logger.error("Job %s failed: %s", job_id, reason)

    @staticmethod
    def _remove_temp_file(job: ResolutionJob) -> None:
        path = job.temp_file_path
        if not path:
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not delete temp file %s: %s", path, e)
