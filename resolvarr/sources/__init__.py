from .base import BaseProvider, DebridAvailability, FilesystemCacheProvider, IndexerProvider, RuntimeLookup
from .cache_mount import CacheMountProvider
from .prowlarr import ProwlarrProvider, build_queries
from .tmdb import TmdbRuntimeLookup

__all__ = [
    "BaseProvider",
    "CacheMountProvider",
    "DebridAvailability",
    "FilesystemCacheProvider",
    "IndexerProvider",
    "ProwlarrProvider",
    "RuntimeLookup",
    "TmdbRuntimeLookup",
    "build_queries",
]
