# backend/jobs.py
"""
Job lifecycle and the job table.

Lifecycle::

    queued --start--> active --complete--> completed
                      active --fail------> failed --retry--> queued
                      active --stall-----> queued
    queued|active --cancel--> cancelled

A retryable failure passes through `failed` straight back to `queued`; the
job then waits out its backoff without a heap entry (`ready` is False).
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

from .errors import InvalidTransition
from .model import ErrorDetail, GenerationRequest, GenerationResult, Priority


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobEvent(str, Enum):
    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"
    RETRY = "retry"
    STALL = "stall"
    CANCEL = "cancel"


TRANSITIONS: Dict[tuple, JobState] = {
    (JobState.QUEUED, JobEvent.START): JobState.ACTIVE,
    (JobState.QUEUED, JobEvent.CANCEL): JobState.CANCELLED,
    (JobState.ACTIVE, JobEvent.COMPLETE): JobState.COMPLETED,
    (JobState.ACTIVE, JobEvent.FAIL): JobState.FAILED,
    (JobState.ACTIVE, JobEvent.STALL): JobState.QUEUED,
    (JobState.ACTIVE, JobEvent.CANCEL): JobState.CANCELLED,
    (JobState.FAILED, JobEvent.RETRY): JobState.QUEUED,
}

TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)

PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


def transition(state: JobState, event: JobEvent) -> JobState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"Cannot {event.value} a job that is {state.value}") from None


@dataclass
class QueueJob:
    id: str
    request: GenerationRequest
    fingerprint: str
    max_attempts: int
    state: JobState = JobState.QUEUED
    attempts: int = 0
    progress: int = 0
    seq: int = 0
    ready: bool = False
    run_token: int = 0
    stalls: int = 0
    cancel_requested: bool = False
    heartbeat: float = 0.0
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    retry_at: Optional[float] = None
    backoffs: List[float] = field(default_factory=list)
    result: Optional[GenerationResult] = None
    error: Optional[ErrorDetail] = None

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.request.priority]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def apply(self, event: JobEvent) -> JobState:
        self.state = transition(self.state, event)
        return self.state

    def ahead_of(self, other: "QueueJob") -> bool:
        """True if this job is served before `other` (both waiting)."""
        return (self.rank, self.seq) < (other.rank, other.seq)

    def snapshot(self) -> dict:
        return {
            "job_id": self.id,
            "state": self.state.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "error": self.error.model_dump() if self.error else None,
            "provider": self.result.provider if self.result else None,
            "cache_hit": self.result.cache_hit if self.result else None,
            "updated_at": time.time(),
        }


class JobTable:
    """
    Jobs indexed by id. Terminal history is bounded by count on every
    finish and by age on `prune`.
    """

    def __init__(self, max_completed: int = 100, max_failed: int = 50, max_cancelled: int = 100) -> None:
        self.max_completed = max_completed
        self.max_failed = max_failed
        self.max_cancelled = max_cancelled
        self._jobs: Dict[str, QueueJob] = {}

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __iter__(self) -> Iterator[QueueJob]:
        return iter(list(self._jobs.values()))

    def __len__(self) -> int:
        return len(self._jobs)

    def add(self, job: QueueJob) -> None:
        self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[QueueJob]:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> Optional[QueueJob]:
        return self._jobs.pop(job_id, None)

    def in_state(self, state: JobState) -> List[QueueJob]:
        return [j for j in self._jobs.values() if j.state is state]

    def count(self, state: JobState) -> int:
        return sum(1 for j in self._jobs.values() if j.state is state)

    def enforce_history(self) -> List[str]:
        """Drop the oldest finished jobs beyond the per-state caps; returns removed ids."""
        removed = []
        for state, limit in (
            (JobState.COMPLETED, self.max_completed),
            (JobState.FAILED, self.max_failed),
            (JobState.CANCELLED, self.max_cancelled),
        ):
            finished = sorted(self.in_state(state), key=lambda j: j.finished_at or 0.0)
            for job in finished[: max(0, len(finished) - limit)]:
                self.remove(job.id)
                removed.append(job.id)
        return removed

    def prune(self, now: float, completed_retention: float, failed_retention: float) -> List[str]:
        """Drop terminal jobs older than their retention; returns removed ids."""
        removed = []
        for job in self:
            if not job.is_terminal or job.finished_at is None:
                continue
            retention = failed_retention if job.state is JobState.FAILED else completed_retention
            if now - job.finished_at >= retention:
                self.remove(job.id)
                removed.append(job.id)
        return removed
