"""Durable job queue and worker pool for per-episode detection."""

from .backends import QueueBackend, QueueListener
from .models import Job, JobState, QueueSnapshot, ResourceClass, StateTransition
from .sqlite_backend import SQLiteJobQueue
from .worker import JobGuard, WorkerPool

__all__ = [
    "QueueBackend",
    "QueueListener",
    "Job",
    "JobState",
    "QueueSnapshot",
    "ResourceClass",
    "StateTransition",
    "SQLiteJobQueue",
    "JobGuard",
    "WorkerPool",
]
