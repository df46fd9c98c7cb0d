"""
Resolution Job Model
Tracks one stream resolution through its forward-only state machine
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
import copy
import time

from ..core.errors import InvalidTransitionError
from .content_request import ContentRequest


class JobState(Enum):
    """Resolution job state"""
    SEARCHING = "searching"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.COMPLETED, JobState.ERROR})

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.SEARCHING: frozenset({JobState.DOWNLOADING, JobState.COMPLETED, JobState.ERROR}),
    JobState.DOWNLOADING: frozenset({JobState.COMPLETED, JobState.ERROR}),
    JobState.COMPLETED: frozenset(),
    JobState.ERROR: frozenset(),
}


@dataclass
class AttemptedSource:
    identity: str
    source: str
    title: str
    resolution: int
    attempted_at: float = field(default_factory=time.time)
    outcome: str = "pending"

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "source": self.source,
            "title": self.title,
            "resolution": self.resolution,
            "attemptedAt": self.attempted_at,
            "outcome": self.outcome,
        }


@dataclass
class ResolutionJob:
    """Represents one stream resolution with progress tracking"""
    job_id: str
    request: ContentRequest

    state: JobState = JobState.SEARCHING
    progress: int = 0  # 0-100
    message: str = "Searching for content..."
    resolved_stream_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size_bytes: Optional[int] = None
    resolution: Optional[int] = None
    source: Optional[str] = None
    error: Optional[str] = None
    attempted_sources: List[AttemptedSource] = field(default_factory=list)
    temp_file_path: Optional[str] = None

    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def transition(self, new_state: JobState, now: Optional[float] = None) -> bool:
        """
        Move to new_state. Re-entering the current non-terminal state is a no-op.
        Returns True when the job just reached a terminal state.
        """
        if new_state == self.state and not self.state.is_terminal:
            return False
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Job {self.job_id}: {self.state.value} -> {new_state.value} is not allowed")
        self.state = new_state
        if new_state.is_terminal:
            self.completed_at = now if now is not None else time.time()
            return True
        return False

    def record_attempt(self, attempt: AttemptedSource) -> None:
        self.attempted_sources.append(attempt)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def snapshot(self) -> "ResolutionJob":
        """Deep copy safe to hand out while the worker keeps mutating the original."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "request": self.request.to_dict(),
            "status": self.state.value,
            "progress": self.progress,
            "message": self.message,
            "streamUrl": self.resolved_stream_url,
            "fileName": self.file_name,
            "fileSizeBytes": self.file_size_bytes,
            "resolution": self.resolution,
            "source": self.source,
            "error": self.error,
            "attemptedSources": [a.to_dict() for a in self.attempted_sources],
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }
