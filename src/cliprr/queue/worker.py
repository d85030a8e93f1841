"""Worker pool: one thread per budget slot, per resource class.

This module provides the execution side of the queue with:
- Two independently sized pools (cpu, gpu) driven by the CapacityPlanner
- Periodic supervisor tick: resize pools, refresh heartbeats, report stale jobs
- Condition-based waiting for work (no busy-spin), woken on enqueue/resume/stop
- A JobGuard guaranteeing every held job reaches completed or failed
- Cooperative cancellation of in-flight detection on shutdown
- Escalation of repeated InvalidTransitionError to a process-level alarm
"""

import itertools
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import DetectionError, DetectionErrorKind, InvalidTransitionError, JobNotFoundError
from ..models import WorkerConfig
from .models import Job, ResourceClass
from .sqlite_backend import SQLiteJobQueue

logger = logging.getLogger(__name__)

INTERNAL_KIND = "internal"

# handler(job, cancel_event, resource_class, slot) -> None; raises DetectionError on failure
JobHandler = Callable[[Job, threading.Event, ResourceClass, int], None]
AlarmCallback = Callable[[str, dict], None]


@dataclass
class _Worker:
    resource_class: ResourceClass
    slot: int
    name: str
    retire: threading.Event = field(default_factory=threading.Event)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    current_job_id: Optional[int] = None
    thread: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class JobGuard:
    """Scoped guard settling one active job.

    Usage:
        with JobGuard(pool, job) as guard:
            handler(...)
            guard.complete()

    Leaving the block without settling fails the job: DetectionError keeps
    its kind, any other exception is recorded as "internal". Exceptions are
    contained so one job never takes its worker down; BaseExceptions such as
    KeyboardInterrupt still propagate after the job is failed.
    """

    def __init__(self, pool: "WorkerPool", job: Job):
        self.pool = pool
        self.job = job
        self.settled = False

    def __enter__(self) -> "JobGuard":
        return self

    def complete(self) -> None:
        self.settled = True
        self.pool._settle(self.job.id, None, None)

    def fail(self, error: str, kind: str) -> None:
        self.settled = True
        self.pool._settle(self.job.id, error, kind)

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.settled:
            return False

        if exc is None:
            self.fail(f"{INTERNAL_KIND}: worker returned without settling the job", INTERNAL_KIND)
            return False

        if isinstance(exc, DetectionError):
            logger.info("Job %s failed: %s", self.job.id, exc)
            self.fail(str(exc), exc.kind.value)
        else:
            logger.error(
                "Job %s crashed with %s", self.job.id, type(exc).__name__,
                exc_info=(exc_type, exc, tb),
            )
            self.fail(f"{INTERNAL_KIND}: {type(exc).__name__}: {exc}", INTERNAL_KIND)

        return isinstance(exc, Exception)


class WorkerPool:
    """Thread-based worker pools for cpu and gpu admission classes.

    Features:
    - Pool size per class follows CapacityBudget on each supervisor tick
    - Excess workers retire after their current job (no preemption)
    - Admission limit also enforced atomically by dequeue_next(max_active)
    - stop() cancels in-flight detection and fails jobs still held after grace
    """

    def __init__(
        self,
        queue: SQLiteJobQueue,
        planner,
        handler: JobHandler,
        config: Optional[WorkerConfig] = None,
        queue_names: Optional[Sequence[str]] = None,
        stale_after_s: float = 3600,
        on_alarm: Optional[AlarmCallback] = None,
    ):
        """Initialize worker pool.

        Args:
            queue: Job queue (the only writer of job state)
            planner: CapacityPlanner providing the budget
            handler: Runs detection for one job; raises DetectionError on failure
            config: Pool timing and alarm settings
            queue_names: Lanes to serve (None = all)
            stale_after_s: Heartbeat age that makes an active job stale
            on_alarm: Called with (message, details) on a process-level alarm
        """
        self.queue = queue
        self.planner = planner
        self.handler = handler
        self.config = config or WorkerConfig()
        self.queue_names = list(queue_names) if queue_names else None
        self.stale_after_s = stale_after_s
        self.on_alarm = on_alarm

        self._lock = threading.Lock()
        self._workers: Dict[ResourceClass, Dict[int, _Worker]] = {rc: {} for rc in ResourceClass}
        self._names = itertools.count(1)
        self._stopping = threading.Event()
        self._supervisor: Optional[threading.Thread] = None
        self._invalid_transitions = 0
        self.stale_jobs: List[Job] = []

        # Resume / budget changes wake idle workers immediately
        planner.add_listener(lambda budget: self.queue.wake_waiters())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()

    @property
    def running(self) -> bool:
        return self._supervisor is not None and not self._stopping.is_set()

    def start(self) -> None:
        if self._supervisor is not None:
            raise RuntimeError("Worker pool already started")

        self._stopping.clear()
        self.resize()
        self._supervisor = threading.Thread(
            target=self._supervise, name="cliprr-supervisor", daemon=True
        )
        self._supervisor.start()
        logger.info("Worker pool started: %s", self.worker_counts())

    def stop(self, grace_s: Optional[float] = None) -> List[int]:
        """Cancel in-flight work and stop all workers.

        Args:
            grace_s: Time allowed for workers to settle (default from config)

        Returns:
            Ids of jobs force-failed because their worker did not stop in time
        """
        grace = self.config.shutdown_grace_s if grace_s is None else grace_s
        self._stopping.set()
        self.queue.wake_waiters()

        with self._lock:
            workers = [w for pool in self._workers.values() for w in pool.values()]
        for worker in workers:
            worker.cancel_event.set()

        deadline = time.monotonic() + grace
        for worker in workers:
            if worker.thread is not None:
                worker.thread.join(max(0.0, deadline - time.monotonic()))

        if self._supervisor is not None:
            self._supervisor.join(timeout=max(1.0, self.config.tick_interval_s))
            self._supervisor = None

        forced = []
        for worker in workers:
            job_id = worker.current_job_id
            if worker.alive and job_id is not None:
                try:
                    self.queue.fail(
                        job_id,
                        f"{DetectionErrorKind.CANCELLED.value}: worker did not stop within shutdown grace period",
                        DetectionErrorKind.CANCELLED.value,
                    )
                    forced.append(job_id)
                except (InvalidTransitionError, JobNotFoundError):
                    # Worker settled the job after all
                    pass

        if forced:
            logger.warning("Force-failed %d job(s) on shutdown: %s", len(forced), forced)
        logger.info("Worker pool stopped")
        return forced

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------

    def _supervise(self) -> None:
        while not self._stopping.wait(self.config.tick_interval_s):
            try:
                self.tick()
            except Exception:
                logger.exception("Supervisor tick failed")

    def tick(self) -> List[Job]:
        """Resize pools, refresh heartbeats of held jobs, report stale jobs."""
        self.resize()

        held = self.held_job_ids()
        if held:
            self.queue.touch(held)

        stale = self.queue.find_stale_active(self.stale_after_s)
        for job in stale:
            logger.warning(
                "Job %s (episode %s) active since %s with no heartbeat for over %ss",
                job.id, job.episode_id, job.started_at, self.stale_after_s,
            )
        self.stale_jobs = stale
        return stale

    def resize(self) -> None:
        """Match the worker count of each class to the current budget."""
        if self._stopping.is_set():
            return

        budget = self.planner.budget
        retired = False
        with self._lock:
            for rc in ResourceClass:
                target = budget.limit_for(rc)
                workers = self._workers[rc]

                for slot, worker in list(workers.items()):
                    if not worker.alive:
                        del workers[slot]

                for slot, worker in workers.items():
                    if slot >= target and not worker.retire.is_set():
                        worker.retire.set()
                        retired = True
                    elif slot < target and worker.retire.is_set():
                        worker.retire.clear()

                for slot in range(target):
                    if slot not in workers:
                        workers[slot] = self._spawn(rc, slot)

        if retired:
            self.queue.wake_waiters()

    def _spawn(self, rc: ResourceClass, slot: int) -> _Worker:
        worker = _Worker(resource_class=rc, slot=slot, name=f"{rc.value}-worker-{next(self._names)}")
        worker.thread = threading.Thread(
            target=self._run_worker, args=(worker,), name=f"cliprr-{worker.name}", daemon=True
        )
        worker.thread.start()
        return worker

    def worker_counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                rc.value: sum(1 for w in pool.values() if w.alive and not w.retire.is_set())
                for rc, pool in self._workers.items()
            }

    def held_job_ids(self) -> List[int]:
        with self._lock:
            return sorted(
                w.current_job_id
                for pool in self._workers.values()
                for w in pool.values()
                if w.current_job_id is not None
            )

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _run_worker(self, worker: _Worker) -> None:
        rc = worker.resource_class
        worker_id = f"{worker.name}@{os.getpid()}"
        logger.debug("Worker %s started", worker_id)

        while not self._stopping.is_set() and not worker.retire.is_set():
            generation = self.queue.generation
            limit = self.planner.budget.limit_for(rc)

            try:
                job = self.queue.dequeue_next(
                    rc, max_active=limit, queue_names=self.queue_names, worker_id=worker_id
                )
            except Exception:
                logger.exception("Worker %s could not dequeue", worker_id)
                self._stopping.wait(self.config.poll_interval_s)
                continue

            if job is None:
                self.queue.wait_for_work(generation, self.config.poll_interval_s)
                continue

            self._execute(worker, job)

        logger.debug("Worker %s exiting", worker_id)

    def _execute(self, worker: _Worker, job: Job) -> None:
        cancel_event = threading.Event()
        with self._lock:
            worker.cancel_event = cancel_event
            worker.current_job_id = job.id
        if self._stopping.is_set():
            cancel_event.set()

        logger.info(
            "Job %s (episode %s) admitted to %s by %s",
            job.id, job.episode_id, worker.resource_class.value, worker.name,
        )
        try:
            with JobGuard(self, job) as guard:
                self.handler(job, cancel_event, worker.resource_class, worker.slot)
                guard.complete()
        finally:
            with self._lock:
                worker.current_job_id = None

    def _settle(self, job_id: int, error: Optional[str], kind: Optional[str]) -> None:
        """Apply the terminal transition; invalid transitions are counted, not raised."""
        try:
            if error is None:
                self.queue.complete(job_id)
                logger.info("Job %s completed", job_id)
            else:
                self.queue.fail(job_id, error, kind)
        except (InvalidTransitionError, JobNotFoundError) as e:
            self._record_integrity_error(e)

    def _record_integrity_error(self, error: Exception) -> None:
        with self._lock:
            self._invalid_transitions += 1
            count = self._invalid_transitions

        logger.error("Queue integrity error: %s", error)
        threshold = self.config.invalid_transition_alarm_threshold
        if count % threshold == 0:
            message = f"{count} invalid job transitions observed; queue state may be corrupt"
            logger.critical(message)
            if self.on_alarm:
                self.on_alarm(message, {"count": count, "last_error": str(error)})

    @property
    def invalid_transition_count(self) -> int:
        with self._lock:
            return self._invalid_transitions
