"""Runtime bootstrap for the resolvarr web API."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional, Union

from ..core.aggregator import Aggregator
from ..core.bad_links import BadLinkRegistry
from ..core.event_bus import EventBus
from ..core.job_store import JobStore
from ..core.limiter import ConcurrencyLimiter
from ..core.link_cache import LinkCache
from ..core.maintenance import Maintenance
from ..core.session_guard import SessionGuard
from ..core.settings_manager import SettingsManager
from ..core.sqlite_store import SqliteStore
from ..services.realdebrid_client import RealDebridClient
from ..sources.cache_mount import CacheMountProvider
from ..sources.prowlarr import ProwlarrProvider
from ..sources.tmdb import TmdbRuntimeLookup


@dataclass
class ResolverRuntime:
    """Shared service graph used by web endpoints."""

    store: SqliteStore
    settings: SettingsManager
    event_bus: EventBus
    limiter: ConcurrencyLimiter
    realdebrid: RealDebridClient
    bad_links: BadLinkRegistry
    link_cache: LinkCache
    session_guard: SessionGuard
    aggregator: Aggregator
    job_store: JobStore
    maintenance: Maintenance


def build_runtime(data_dir: Union[Path, str, None] = None, persist: bool = True,
                  start_maintenance: bool = True) -> ResolverRuntime:
    """Create and wire core services. With persist=False everything lives in memory."""

    if data_dir is None and persist:
        env_dir = str(os.environ.get("RESOLVARR_DATA_DIR", "") or "").strip()
        data_dir = Path(env_dir).expanduser() if env_dir else (Path.home() / ".resolvarr")
    settings = SettingsManager(data_dir, persist=persist)
    store = SqliteStore(settings.settings_dir if persist else None)
    event_bus = EventBus()
    limiter = ConcurrencyLimiter(settings.get_int("max_concurrent_requests", 6))
    realdebrid = RealDebridClient(settings, event_bus)

    bad_links = BadLinkRegistry(ttl_seconds=int(settings.get_float("bad_link_ttl_hours", 48) * 3600))
    link_cache = LinkCache(
        store,
        ttl_seconds=int(settings.get_float("link_ttl_hours", 24) * 3600),
        verify_timeout=settings.get_float("verify_timeout_seconds", 5.0),
    )
    session_guard = SessionGuard(
        store,
        liveness_window=settings.get_float("session_liveness_seconds", 5.0),
        sweep_after=settings.get_float("session_sweep_seconds", 30.0),
        event_bus=event_bus,
    )
    aggregator = Aggregator(
        filesystem=CacheMountProvider(settings),
        indexer=ProwlarrProvider(settings, limiter=limiter),
        bad_links=bad_links,
        availability=realdebrid,
        runtime_lookup=TmdbRuntimeLookup(settings),
        event_bus=event_bus,
        ceiling_seconds=settings.get_float("search_ceiling_seconds", 45.0),
    )
    job_store = JobStore(
        aggregator,
        realdebrid,
        link_cache,
        session_guard,
        bad_links,
        settings=settings,
        event_bus=event_bus,
    )

    maintenance = Maintenance()
    maintenance.add("jobs", job_store.sweep, settings.get_float("job_sweep_interval_seconds", 60.0))
    maintenance.add("sessions", session_guard.sweep, settings.get_float("session_sweep_interval_seconds", 10.0))
    maintenance.add("links", link_cache.sweep, settings.get_float("store_sweep_interval_seconds", 3600.0))
    maintenance.add("bad-links", bad_links.sweep, settings.get_float("store_sweep_interval_seconds", 3600.0))
    if start_maintenance:
        maintenance.start()

    return ResolverRuntime(
        store=store,
        settings=settings,
        event_bus=event_bus,
        limiter=limiter,
        realdebrid=realdebrid,
        bad_links=bad_links,
        link_cache=link_cache,
        session_guard=session_guard,
        aggregator=aggregator,
        job_store=job_store,
        maintenance=maintenance,
    )
