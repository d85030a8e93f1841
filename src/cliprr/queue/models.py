"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        queued → active       (worker dequeues, resource class assigned)
        active → completed    (detection succeeded)
        active → failed       (detection error, crash, cancellation)

    completed and failed are terminal. A retry is a new job.
    """

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class ResourceClass(str, Enum):
    """Execution context a job is admitted to."""

    CPU = "cpu"
    GPU = "gpu"


class Job(BaseModel):
    """One episode's detection work item.

    Instances are read-only views returned by the queue; only the queue writes
    job rows.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Monotonically assigned job id")
    episode_id: int = Field(..., description="Opaque episode identifier")
    show_id: int = Field(..., description="Opaque show identifier")
    queue_name: str = Field(..., description="Logical lane, e.g. show-processing")
    state: JobState = Field(default=JobState.QUEUED)
    resource_class: Optional[ResourceClass] = Field(
        default=None, description="Assigned at admission, not at enqueue"
    )
    attempt: int = Field(default=1, ge=1, description="1 for the first job of an episode")
    error: Optional[str] = Field(default=None, description="Human-readable failure reason")
    error_kind: Optional[str] = Field(default=None, description="Failure classification")
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    worker_id: Optional[str] = None


class QueueSnapshot(BaseModel):
    """Point-in-time job counts for one queue."""

    model_config = ConfigDict(frozen=True)

    queue_name: str
    queued: int = Field(default=0, ge=0)
    active: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.queued + self.active + self.completed + self.failed

    @property
    def is_idle(self) -> bool:
        """No work waiting or running."""
        return self.queued == 0 and self.active == 0


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: int
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    worker_id: Optional[str] = None
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
