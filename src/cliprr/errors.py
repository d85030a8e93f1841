"""Exception taxonomy for the processing core.

Every error that can terminate a job or reject a queue operation derives from
``CliprrError`` so collaborators (CLI, API) can map them without catching
unrelated exceptions.
"""

from enum import Enum
from typing import Iterable, List, Optional


class CliprrError(Exception):
    """Base class for all cliprr errors."""


class JobNotFoundError(CliprrError):
    """Raised when a job id does not exist in the queue."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class DuplicateJobError(CliprrError):
    """Episode already has a queued or active job in the same queue."""

    def __init__(self, episode_id: int, queue_name: str, existing_job_id: Optional[int] = None):
        self.episode_id = episode_id
        self.queue_name = queue_name
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Episode {episode_id} already has an outstanding job in '{queue_name}'"
            + (f" (job {existing_job_id})" if existing_job_id is not None else "")
        )


class InvalidTransitionError(CliprrError):
    """A state transition was requested from a state that does not allow it."""

    def __init__(self, job_id: int, from_state: Optional[str], to_state: str):
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Job {job_id}: invalid transition {from_state} -> {to_state}")


class JobBusyError(CliprrError):
    """Deletion was requested for jobs that are currently active."""

    def __init__(self, job_ids: Iterable[int]):
        self.job_ids: List[int] = sorted(job_ids)
        super().__init__(f"Cannot delete active jobs: {self.job_ids}")


class HardwareProbeError(CliprrError):
    """Accelerator probing failed. Never propagated out of the profiler."""


class DetectionErrorKind(str, Enum):
    """Classification recorded on failed jobs."""

    DECODE = "decode"  # Media missing, unreadable or ffmpeg could not decode it
    TIMEOUT = "timeout"  # Extraction exceeded its time budget
    CANCELLED = "cancelled"  # Shutdown or explicit cancellation
    NO_MATCH = "no_match"  # Nothing recurring found, or nothing to compare against


class DetectionError(CliprrError):
    """Segment detection failed for one episode."""

    def __init__(self, kind: DetectionErrorKind, message: str):
        self.kind = DetectionErrorKind(kind)
        self.message = message
        super().__init__(f"{self.kind.value}: {message}")
