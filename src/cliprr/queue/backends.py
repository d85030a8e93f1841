from __future__ import annotations

"""Abstract base classes for the job queue and its observers.

The queue is the single point of shared mutable state in the core. These
interfaces keep workers, the broadcaster and collaborators independent of the
SQLite implementation.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence

if TYPE_CHECKING:
    from .models import Job, QueueSnapshot, ResourceClass


class QueueListener(ABC):
    """Receives change notifications after a queue mutation commits.

    Notifications are delivered outside the queue lock, so listeners may read
    the queue (e.g. take a snapshot) without deadlocking.
    """

    @abstractmethod
    def on_job_state_change(self, job: "Job") -> None:
        """Called once per transition (including the initial enqueue)."""

    @abstractmethod
    def on_jobs_deleted(self, queue_name: str, job_ids: List[int]) -> None:
        """Called once per queue affected by a deletion."""


class QueueBackend(ABC):
    """Abstract queue interface.

    Implementations must provide:
    - Mutual exclusion between enqueue, dequeue_next, complete, fail and deletes
    - Atomic admission (exactly one caller receives a given job)
    - FIFO admission by enqueue time, ties broken by id
    - Snapshots that never observe a partially applied transition
    """

    @abstractmethod
    def enqueue(self, episode_id: int, show_id: int, queue_name: str) -> "Job":
        """Create a queued job.

        Raises:
            DuplicateJobError: If the episode already has a queued or active
                job in the same queue
        """

    @abstractmethod
    def dequeue_next(
        self,
        resource_class: "ResourceClass",
        max_active: Optional[int] = None,
        queue_names: Optional[Sequence[str]] = None,
        worker_id: Optional[str] = None,
    ) -> Optional["Job"]:
        """Atomically admit the oldest eligible queued job.

        Args:
            resource_class: Class the job is admitted to
            max_active: Admission limit for the class; None means unlimited
            queue_names: Lanes to pull from; None means all lanes
            worker_id: Identifier recorded on the job

        Returns:
            The now-active Job, or None if nothing is admissible
        """

    @abstractmethod
    def complete(self, job_id: int) -> "Job":
        """Transition active → completed.

        Raises:
            InvalidTransitionError: If the job is not active
        """

    @abstractmethod
    def fail(self, job_id: int, error: str, kind: Optional[str] = None) -> "Job":
        """Transition active → failed, recording the error.

        Raises:
            InvalidTransitionError: If the job is not active
        """

    @abstractmethod
    def snapshot(self, queue_name: str) -> "QueueSnapshot":
        """Atomic aggregate of job counts for one queue."""

    @abstractmethod
    def bulk_delete(self, job_ids: Iterable[int]) -> int:
        """Delete jobs in any non-active state.

        Raises:
            JobBusyError: If any requested job is active (nothing is deleted)
        """

    @abstractmethod
    def get_job(self, job_id: int) -> "Job":
        """Fetch one job.

        Raises:
            JobNotFoundError: If the id is unknown
        """

    @abstractmethod
    def list_jobs(
        self,
        queue_name: Optional[str] = None,
        state: Optional[str] = None,
        show_id: Optional[int] = None,
    ) -> List["Job"]:
        """Query jobs, ordered by id."""

    @abstractmethod
    def touch(self, job_ids: Iterable[int]) -> None:
        """Refresh the heartbeat of active jobs."""

    @abstractmethod
    def find_stale_active(self, threshold_s: float) -> List["Job"]:
        """Active jobs whose heartbeat is older than threshold_s."""
