import threading
import time
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from cliprr.api.main import create_app
from cliprr.catalog import Episode, InMemoryCatalog
from cliprr.errors import DetectionError, DetectionErrorKind
from cliprr.hardware import Accelerator, AcceleratorKind, HardwareProfile, HardwareProfiler
from cliprr.models import CliprrConfig, SegmentMatch
from cliprr.processing import ProcessingService
from cliprr.queue import SQLiteJobQueue


class FixedProfiler(HardwareProfiler):
    """Profiler that reports a fixed profile instead of probing the host."""

    def __init__(self, profile: HardwareProfile, **kwargs):
        super().__init__(**kwargs)
        self.fixed = profile
        self.probe_count = 0

    def _probe(self) -> HardwareProfile:
        self.probe_count += 1
        return self.fixed.model_copy()

    def benchmark(self, profile=None) -> HardwareProfile:
        from datetime import datetime

        base = profile or self.get_profile()
        return self._store(
            base.model_copy(update={"cpu_benchmark_fps": 250.0, "benchmarked_at": datetime.now()})
        )


class FakeDetector:
    """Stands in for SegmentDetector; one intro per episode unless told otherwise."""

    def __init__(self, delay_s: float = 0.0):
        self.delay_s = delay_s
        self.failures = {}
        self.calls = []
        self.progress_callbacks = {}
        self.release = threading.Event()
        self.release.set()
        self._lock = threading.Lock()

    def detect(self, episode, siblings, cancel_event=None, hwaccel_args=None, job_id=None,
               progress_callback=None):
        with self._lock:
            self.calls.append((episode.id, [s.id for s in siblings], hwaccel_args, job_id))
            self.progress_callbacks[episode.id] = progress_callback

        while not self.release.wait(0.01):
            if cancel_event is not None and cancel_event.is_set():
                raise DetectionError(DetectionErrorKind.CANCELLED, "detection cancelled")
        if self.delay_s:
            time.sleep(self.delay_s)

        if episode.id in self.failures:
            raise self.failures[episode.id]

        return [
            SegmentMatch(
                show_id=episode.show_id,
                episode_id=episode.id,
                season_number=episode.season_number,
                start_offset=12.0,
                end_offset=42.0,
                confidence=0.93,
                label="intro",
            )
        ]


def make_episodes(tmp_path: Path, show_id: int = 7, ids=(101, 102, 103), season: int = 1):
    episodes = []
    for number, episode_id in enumerate(ids, start=1):
        media = tmp_path / f"show{show_id}-s{season:02d}e{number:02d}.mkv"
        media.write_bytes(b"\x00" * 16)
        episodes.append(
            Episode(
                id=episode_id,
                show_id=show_id,
                season_number=season,
                episode_number=number,
                path=str(media),
                show_name=f"Show {show_id}",
            )
        )
    return episodes


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def config(tmp_path):
    return CliprrConfig.from_dict(
        {
            "queue": {"db_path": str(tmp_path / "cliprr.db"), "stale_after_s": 60},
            "paths": {"temp_dir": str(tmp_path / "temp")},
            "workers": {"tick_interval_s": 0.05, "poll_interval_s": 0.05, "shutdown_grace_s": 2.0},
        }
    )


@pytest.fixture
def cpu_profile():
    return HardwareProfile(cpu_cores=3)


@pytest.fixture
def gpu_profile():
    return HardwareProfile(
        cpu_cores=4,
        accelerators=[
            Accelerator(name="NVIDIA GeForce RTX 3060", kind=AcceleratorKind.NVIDIA, device="0", max_sessions=3)
        ],
    )


@pytest.fixture
def queue(tmp_path):
    q = SQLiteJobQueue(str(tmp_path / "queue.db"))
    yield q
    q.close()


@pytest.fixture
def episodes(tmp_path):
    return make_episodes(tmp_path)


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def service(config, episodes, cpu_profile, detector):
    svc = ProcessingService(
        config,
        InMemoryCatalog(episodes),
        profiler=FixedProfiler(cpu_profile),
        detector=detector,
    )
    yield svc
    svc.close()


@pytest.fixture(scope="function")
async def client(service):
    app = create_app(service, start_workers=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
