"""Processing service: the contract collaborators (API, CLI) use.

This module composes the queue, hardware profiler, capacity planner, worker
pool, segment detector and status broadcaster behind one facade.

Usage:
    service = ProcessingService(config, LibraryCatalog.from_directory("/tv"))
    service.start()
    service.submit_scan([101, 102, 103])      # {"enqueued": 3, ...}
    service.get_queue_status()                # QueueSnapshot
    service.pause("gpu"); service.resume("gpu")
    service.stop()
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from .broadcaster import Subscriber, StatusBroadcaster
from .catalog import EpisodeCatalog
from .detector import SegmentDetector
from .errors import DetectionError, DetectionErrorKind, DuplicateJobError
from .hardware import HardwareProfile, HardwareProfiler
from .models import CliprrConfig, SegmentMatch
from .planner import CapacityBudget, CapacityPlanner
from .queue import Job, JobState, QueueSnapshot, ResourceClass, SQLiteJobQueue, WorkerPool
from .store import SQLiteSegmentStore
from .tempfiles import cleanup_temp_files

logger = logging.getLogger(__name__)


class ProcessingService:
    """Facade over the processing core.

    The planner and worker pool are created lazily: the first call needing a
    budget triggers hardware detection (cached by the profiler).
    """

    def __init__(
        self,
        config: CliprrConfig,
        catalog: EpisodeCatalog,
        queue: Optional[SQLiteJobQueue] = None,
        profiler: Optional[HardwareProfiler] = None,
        detector: Optional[SegmentDetector] = None,
        segment_store: Optional[SQLiteSegmentStore] = None,
    ):
        self.config = config
        self.catalog = catalog
        self.queue = queue or SQLiteJobQueue(config.queue.db_path)
        self.segment_store = segment_store or SQLiteSegmentStore(config.queue.db_path)
        self.profiler = profiler or HardwareProfiler(config.hardware, temp_dir=config.paths.temp_dir)
        self.detector = detector or SegmentDetector(config.detection, temp_root=config.paths.temp_dir)

        self.broadcaster = StatusBroadcaster(self.queue)
        self.queue.add_listener(self.broadcaster)

        self._lock = threading.Lock()
        self._planner: Optional[CapacityPlanner] = None
        self._pool: Optional[WorkerPool] = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    @property
    def planner(self) -> CapacityPlanner:
        with self._lock:
            if self._planner is None:
                self._planner = CapacityPlanner(
                    self.profiler.get_profile(), self.config.workers, self.config.hardware
                )
                self.profiler.add_listener(self._planner.set_profile)
            return self._planner

    @property
    def pool(self) -> WorkerPool:
        planner = self.planner
        with self._lock:
            if self._pool is None:
                self._pool = WorkerPool(
                    self.queue,
                    planner,
                    self._process_job,
                    config=self.config.workers,
                    stale_after_s=self.config.queue.stale_after_s,
                    on_alarm=lambda message, details: self.broadcaster.publish_alarm(message, **details),
                )
            return self._pool

    @property
    def workers_running(self) -> bool:
        return self._pool is not None and self._pool.running

    @property
    def default_queue(self) -> str:
        return self.config.queue.default_queue

    def start(self) -> None:
        """Reconcile orphans from a previous run, then start the workers."""
        if self.config.queue.requeue_orphans_on_startup:
            self.reconcile_orphans()
        self.pool.start()

    def stop(self, grace_s: Optional[float] = None) -> List[int]:
        if self.workers_running:
            return self._pool.stop(grace_s)
        return []

    def close(self) -> None:
        self.stop()
        self.queue.close()
        self.segment_store.close()

    def reconcile_orphans(self) -> List[Job]:
        """Fail active jobs left by a dead process and enqueue fresh attempts."""
        requeued = self.queue.reconcile_orphans(self.config.queue.stale_after_s)
        if requeued:
            logger.warning("Requeued %d orphaned job(s)", len(requeued))
        return requeued

    # ------------------------------------------------------------------
    # Job handler (runs on worker threads)
    # ------------------------------------------------------------------

    def _process_job(
        self, job: Job, cancel_event: threading.Event, resource_class: ResourceClass, slot: int
    ) -> None:
        episode = self.catalog.get_episode(job.episode_id)
        if episode is None:
            raise DetectionError(
                DetectionErrorKind.DECODE, f"episode {job.episode_id} is not in the library"
            )

        siblings = self.catalog.get_siblings(episode, limit=self.config.detection.max_siblings)

        hwaccel_args = None
        if ResourceClass(resource_class) == ResourceClass.GPU:
            accelerator = self.planner.profile.accelerator_for_slot(slot)
            if accelerator is not None:
                hwaccel_args = accelerator.hwaccel_args()

        matches = self.detector.detect(
            episode,
            siblings,
            cancel_event=cancel_event,
            hwaccel_args=hwaccel_args,
            job_id=job.id,
            # Extraction progress keeps a long-running job's heartbeat fresh
            progress_callback=lambda _progress: self.queue.touch([job.id]),
        )
        self.segment_store.replace_for_episode(episode.id, matches)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def submit_scan(self, episode_ids: Iterable[int], queue_name: Optional[str] = None) -> Dict[str, int]:
        """Enqueue one job per episode.

        Episodes with an outstanding job are skipped and counted as duplicates;
        ids the catalog does not know are counted as unknown.
        """
        queue_name = queue_name or self.default_queue
        stats = {"enqueued": 0, "duplicates": 0, "unknown": 0}

        for episode_id in episode_ids:
            episode = self.catalog.get_episode(int(episode_id))
            if episode is None:
                logger.warning("Unknown episode %s skipped", episode_id)
                stats["unknown"] += 1
                continue
            try:
                self.queue.enqueue(episode.id, episode.show_id, queue_name)
                stats["enqueued"] += 1
            except DuplicateJobError as e:
                logger.info("%s", e)
                stats["duplicates"] += 1

        logger.info(
            "Scan submitted to %s: %d enqueued, %d duplicate(s), %d unknown",
            queue_name, stats["enqueued"], stats["duplicates"], stats["unknown"],
        )
        return stats

    def submit_show_scan(
        self, show_ids: Iterable[int], queue_name: Optional[str] = None, rescan: bool = False
    ) -> Dict[str, int]:
        """Enqueue every episode of the given shows.

        With rescan, stored segments of those episodes are cleared first so
        stale results are not served while the new jobs wait.
        """
        episode_ids: List[int] = []
        for show_id in show_ids:
            episodes = self.catalog.episodes_for_show(int(show_id))
            if not episodes:
                logger.warning("Show %s has no episodes in the library", show_id)
            for episode in episodes:
                if rescan:
                    self.segment_store.replace_for_episode(episode.id, [])
                episode_ids.append(episode.id)

        stats = self.submit_scan(episode_ids, queue_name=queue_name)
        stats["episodes"] = len(episode_ids)
        return stats

    def retry_failed(
        self, queue_name: Optional[str] = None, max_attempts: Optional[int] = None
    ) -> Dict[str, int]:
        """Re-enqueue episodes whose latest job failed and has attempts left."""
        queue_name = queue_name or self.default_queue
        max_attempts = max_attempts or self.config.queue.max_attempts

        latest: Dict[int, Job] = {}
        for job in self.queue.list_jobs(queue_name=queue_name):
            if job.episode_id not in latest or job.id > latest[job.episode_id].id:
                latest[job.episode_id] = job

        stats = {"enqueued": 0, "exhausted": 0}
        for job in latest.values():
            if job.state != JobState.FAILED:
                continue
            if job.attempt >= max_attempts:
                stats["exhausted"] += 1
                continue
            try:
                self.queue.enqueue(job.episode_id, job.show_id, queue_name)
                stats["enqueued"] += 1
            except DuplicateJobError:
                pass
        return stats

    def delete_jobs(self, job_ids: Iterable[int]) -> Dict[str, int]:
        return {"deleted": self.queue.bulk_delete(job_ids)}

    def delete_by_show(self, show_id: int) -> Dict[str, int]:
        return {"deleted": self.queue.delete_by_show(show_id)}

    def get_queue_status(self, queue_name: Optional[str] = None) -> QueueSnapshot:
        return self.queue.snapshot(queue_name or self.default_queue)

    def get_all_queue_status(self) -> Dict[str, QueueSnapshot]:
        names = set(self.queue.queue_names()) | {self.default_queue}
        return {name: self.queue.snapshot(name) for name in sorted(names)}

    def list_jobs(self, queue_name: Optional[str] = None, state: Optional[str] = None) -> List[Job]:
        return self.queue.list_jobs(queue_name=queue_name, state=state)

    def jobs_by_state(self, queue_name: Optional[str] = None) -> Dict[str, List[int]]:
        grouped: Dict[str, List[int]] = defaultdict(list)
        for job in self.queue.list_jobs(queue_name=queue_name or self.default_queue):
            grouped[job.state.value].append(job.id)
        return dict(grouped)

    # ------------------------------------------------------------------
    # Hardware and capacity
    # ------------------------------------------------------------------

    def get_hardware_info(self) -> HardwareProfile:
        return self.profiler.get_profile()

    # An existing planner follows both through its profiler listener; a lazily
    # created one starts from the cached profile.
    def detect_hardware(self) -> HardwareProfile:
        return self.profiler.detect()

    def run_benchmark(self) -> HardwareProfile:
        return self.profiler.benchmark()

    def get_budget(self) -> CapacityBudget:
        return self.planner.budget

    def pause(self, resource_class: ResourceClass) -> CapacityBudget:
        return self.planner.pause(ResourceClass(resource_class))

    def resume(self, resource_class: ResourceClass) -> CapacityBudget:
        return self.planner.resume(ResourceClass(resource_class))

    # ------------------------------------------------------------------
    # Maintenance, results and events
    # ------------------------------------------------------------------

    def cleanup_temp_files(self) -> Dict[str, int]:
        active = [job.id for job in self.queue.list_jobs(state=JobState.ACTIVE.value)]
        return {"removed_count": cleanup_temp_files(self.config.paths.temp_dir, active)}

    def get_segments(self, show_id: int, season: Optional[int] = None) -> List[SegmentMatch]:
        return self.segment_store.get_segments(show_id, season)

    def subscribe(self, callback: Subscriber):
        """Register for queue_status / job_update / alarm events; returns unsubscribe."""
        return self.broadcaster.subscribe(callback)
