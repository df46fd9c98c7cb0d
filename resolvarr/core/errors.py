"""
Resolver Errors
Exception taxonomy shared by providers, stores and the job pipeline
"""
from typing import Any, Dict, Optional


class ResolverError(Exception):
    """Base class for all resolver failures"""


class MalformedRequestError(ResolverError, ValueError):
    """Request is missing required fields or carries invalid values; never retried."""


class TransientProviderError(ResolverError):
    """Timeout or 5xx from a provider; retried, then treated as zero candidates."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NoCandidatesError(ResolverError):
    """No playable source survived aggregation."""

    def __init__(self, message: str = "Content not available"):
        super().__init__(message)


class ConcurrentSessionError(ResolverError):
    """The credential is already streaming from another IP address."""

    def __init__(self, active_session: Dict[str, Any]):
        self.active_session = dict(active_session or {})
        username = self.active_session.get("username") or "another user"
        ip = self.active_session.get("ipAddress") or "another device"
        super().__init__(f"Credential already streaming for {username} on {ip}")


class StaleCacheError(ResolverError):
    """A cached stream URL failed its liveness probe."""


class DownloadFailedError(ResolverError):
    """The debrid service reported a terminal failure for a transfer."""


class InvalidTransitionError(ResolverError):
    """A job state change that would move backwards or out of a terminal state."""


class DebridError(ResolverError):
    """Non-transient error returned by the debrid API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
