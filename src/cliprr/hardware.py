"""Hardware capability detection and decode benchmark.

Supports:
- NVIDIA (nvidia-smi + ffmpeg "cuda" hwaccel)
- VAAPI render nodes under /dev/dri (Intel / AMD)
- VideoToolbox on macOS
- CPU core count via psutil

Probing never raises: failures are recorded on the profile as
HardwareProbeError messages and the profile degrades towards CPU-only.

Usage:
    profiler = HardwareProfiler(config.hardware)
    profile = profiler.get_profile()        # detects on first use, then cached
    profile = profiler.benchmark()          # explicit, slow (bounded by timeouts)
"""

import logging
import platform
import subprocess
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import psutil
from pydantic import BaseModel, Field

from .errors import HardwareProbeError
from .ffmpeg_runner import FfmpegResult, FfmpegRunner
from .models import HardwareConfig

logger = logging.getLogger(__name__)

DRI_PATH = Path("/dev/dri")
SYS_DRM_PATH = Path("/sys/class/drm")

PCI_VENDORS = {
    "0x10de": "NVIDIA",
    "0x8086": "Intel",
    "0x1002": "AMD",
}

# NVIDIA consumer GPU concurrent session limits
NVIDIA_SESSION_LIMITS = {
    "RTX 4090": 5,
    "RTX 4080": 5,
    "RTX 4070": 5,
    "RTX 3090": 3,
    "RTX 3080": 3,
    "RTX 3070": 3,
    "RTX 3060": 3,
    "RTX 2080": 3,
    "RTX 2070": 3,
    "RTX 2060": 3,
    "GTX 1080": 2,
    "GTX 1070": 2,
    "GTX 1060": 2,
    # Datacenter GPUs - unlimited
    "A100": 999,
    "A10": 999,
    "T4": 999,
    "L4": 999,
    "H100": 999,
}


def _get_nvidia_session_limit(gpu_name: str) -> int:
    for model, limit in NVIDIA_SESSION_LIMITS.items():
        if model in gpu_name:
            return limit
    return 3  # Conservative default for unknown GPUs


class AcceleratorKind(str, Enum):
    """Hardware decode backends cliprr can drive through ffmpeg."""

    NVIDIA = "nvidia"
    VAAPI = "vaapi"
    VIDEOTOOLBOX = "videotoolbox"


class Accelerator(BaseModel):
    """One detected decode accelerator."""

    name: str
    kind: AcceleratorKind
    device: Optional[str] = Field(default=None, description="e.g. /dev/dri/renderD128 or GPU index")
    max_sessions: int = Field(default=2, ge=1, description="Concurrent session limit")
    benchmark_fps: Optional[float] = Field(default=None, description="Single-session decode fps")
    concurrency_scaling: Optional[float] = Field(
        default=None, description="Two-session aggregate fps divided by single-session fps"
    )
    sustains_concurrency: Optional[bool] = Field(
        default=None, description="Benchmark verdict; None until benchmarked"
    )

    def hwaccel_args(self) -> List[str]:
        """FFmpeg input options selecting this accelerator."""
        if self.kind == AcceleratorKind.NVIDIA:
            args = ["-hwaccel", "cuda"]
            if self.device is not None:
                args.extend(["-hwaccel_device", self.device])
            return args
        if self.kind == AcceleratorKind.VAAPI:
            return ["-hwaccel", "vaapi", "-hwaccel_device", self.device or "/dev/dri/renderD128"]
        return ["-hwaccel", "videotoolbox"]


class HardwareProfile(BaseModel):
    """Detected host capability."""

    cpu_cores: int = Field(ge=1)
    accelerators: List[Accelerator] = Field(default_factory=list)
    cpu_benchmark_fps: Optional[float] = None
    probe_errors: List[str] = Field(default_factory=list)
    detected_at: datetime = Field(default_factory=datetime.now)
    benchmarked_at: Optional[datetime] = None

    @property
    def has_gpu(self) -> bool:
        return bool(self.accelerators)

    def accelerator_for_slot(self, slot: int) -> Optional[Accelerator]:
        """Round-robin mapping of GPU worker slots onto accelerators."""
        if not self.accelerators:
            return None
        return self.accelerators[slot % len(self.accelerators)]


ProfileListener = Callable[[HardwareProfile], None]


class HardwareProfiler:
    """Owns the process-wide hardware profile cache.

    The profile is computed on first use (or explicit detect()) and cached
    until the next detect(). Benchmark results are layered on the cached
    profile and discarded by detect().
    """

    def __init__(
        self,
        config: Optional[HardwareConfig] = None,
        temp_dir: Optional[str] = None,
        runner_factory: Callable[..., FfmpegRunner] = FfmpegRunner,
    ):
        self.config = config or HardwareConfig()
        self.temp_dir = temp_dir
        self._runner_factory = runner_factory
        self._lock = threading.RLock()
        self._profile: Optional[HardwareProfile] = None
        self._listeners: List[ProfileListener] = []

    def add_listener(self, listener: ProfileListener) -> None:
        """Called with the new profile after every detect() or benchmark()."""
        self._listeners.append(listener)

    def _publish(self, profile: HardwareProfile) -> None:
        for listener in list(self._listeners):
            listener(profile)

    def get_profile(self) -> HardwareProfile:
        with self._lock:
            if self._profile is None:
                self._profile = self._probe()
                profile = self._profile
            else:
                return self._profile
        self._publish(profile)
        return profile

    def detect(self) -> HardwareProfile:
        """Re-probe the host, replacing the cached profile."""
        with self._lock:
            self._profile = self._probe()
            profile = self._profile
        self._publish(profile)
        return profile

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    def _probe(self) -> HardwareProfile:
        errors: List[str] = []

        cpu_cores = psutil.cpu_count(logical=True) or 1

        accelerators: List[Accelerator] = []
        if self.config.enable_gpu:
            hwaccels = self._record(errors, self._probe_ffmpeg_hwaccels) or []
            accelerators.extend(self._record(errors, self._probe_nvidia, hwaccels) or [])
            skip_vendors = {"0x10de"} if accelerators else set()
            accelerators.extend(
                self._record(errors, self._probe_vaapi, hwaccels, skip_vendors) or []
            )
            accelerators.extend(self._record(errors, self._probe_videotoolbox, hwaccels) or [])

        profile = HardwareProfile(
            cpu_cores=cpu_cores, accelerators=accelerators, probe_errors=errors
        )
        logger.info(
            "Hardware detected: %d CPU cores, %d accelerator(s)%s",
            profile.cpu_cores,
            len(profile.accelerators),
            f", {len(errors)} probe error(s)" if errors else "",
        )
        return profile

    @staticmethod
    def _record(errors: List[str], probe: Callable, *args):
        """Run one probe; on HardwareProbeError log, record and return None."""
        try:
            return probe(*args)
        except HardwareProbeError as e:
            logger.warning("Hardware probe failed: %s", e)
            errors.append(str(e))
            return None

    def _run_probe(self, cmd: List[str]) -> Tuple[int, str, str]:
        """Run a probe command.

        Raises:
            HardwareProbeError: If the command is missing or times out
        """
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.config.probe_timeout_s,
                stdin=subprocess.DEVNULL,
            )
        except FileNotFoundError:
            raise HardwareProbeError(f"Command not found: {cmd[0]}")
        except subprocess.TimeoutExpired:
            raise HardwareProbeError(f"Command timed out: {' '.join(cmd)}")
        except OSError as e:
            raise HardwareProbeError(f"Command failed to start: {cmd[0]}: {e}")
        return proc.returncode, proc.stdout, proc.stderr

    def _probe_ffmpeg_hwaccels(self) -> List[str]:
        """Hardware acceleration methods compiled into ffmpeg."""
        try:
            exe = FfmpegRunner._get_ffmpeg_exe()
        except RuntimeError as e:
            # imageio-ffmpeg found neither a bundled nor a system binary
            raise HardwareProbeError(f"ffmpeg not available: {e}")

        returncode, stdout, stderr = self._run_probe([exe, "-hide_banner", "-hwaccels"])
        if returncode != 0:
            raise HardwareProbeError(f"ffmpeg -hwaccels exited with {returncode}: {stderr.strip()[:200]}")

        methods = []
        for line in stdout.splitlines():
            line = line.strip()
            if line and not line.endswith(":"):
                methods.append(line)
        return methods

    def _probe_nvidia(self, hwaccels: List[str]) -> List[Accelerator]:
        if platform.system() == "Darwin":
            return []
        try:
            returncode, stdout, _ = self._run_probe(
                ["nvidia-smi", "--query-gpu=index,name", "--format=csv,noheader"]
            )
        except HardwareProbeError:
            # No NVIDIA driver on this host; not an error worth recording
            return []
        if returncode != 0 or not stdout.strip():
            return []

        gpus = []
        for line in stdout.strip().splitlines():
            parts = [p.strip() for p in line.split(",", 1)]
            if len(parts) == 2:
                gpus.append((parts[0], parts[1]))

        if gpus and "cuda" not in hwaccels:
            raise HardwareProbeError(
                f"NVIDIA GPU present ({gpus[0][1]}) but ffmpeg lacks the cuda hwaccel"
            )

        return [
            Accelerator(
                name=name,
                kind=AcceleratorKind.NVIDIA,
                device=index,
                max_sessions=_get_nvidia_session_limit(name),
            )
            for index, name in gpus
        ]

    def _probe_vaapi(self, hwaccels: List[str], skip_vendors: set) -> List[Accelerator]:
        if not DRI_PATH.exists():
            return []
        render_nodes = sorted(DRI_PATH.glob("renderD*"))
        if not render_nodes:
            return []
        if "vaapi" not in hwaccels:
            raise HardwareProbeError(
                f"Render node {render_nodes[0]} present but ffmpeg lacks the vaapi hwaccel"
            )

        accelerators = []
        for node in render_nodes:
            vendor = self._read_vendor(node.name)
            if vendor in skip_vendors:
                continue
            accelerators.append(
                Accelerator(
                    name=f"{PCI_VENDORS.get(vendor, 'Unknown')} VAAPI ({node.name})",
                    kind=AcceleratorKind.VAAPI,
                    device=str(node),
                    max_sessions=8,
                )
            )
        return accelerators

    @staticmethod
    def _read_vendor(node_name: str) -> Optional[str]:
        vendor_file = SYS_DRM_PATH / node_name / "device" / "vendor"
        try:
            return vendor_file.read_text().strip().lower()
        except OSError:
            return None

    def _probe_videotoolbox(self, hwaccels: List[str]) -> List[Accelerator]:
        if platform.system() != "Darwin" or "videotoolbox" not in hwaccels:
            return []
        return [Accelerator(name="Apple VideoToolbox", kind=AcceleratorKind.VIDEOTOOLBOX, max_sessions=4)]

    # ------------------------------------------------------------------
    # Benchmark
    # ------------------------------------------------------------------

    def benchmark(self, profile: Optional[HardwareProfile] = None) -> HardwareProfile:
        """Run the bounded decode benchmark and cache the scored profile.

        Encodes a synthetic clip once, then measures decode throughput on the
        CPU and on each accelerator (single session, then two concurrent
        sessions for the concurrency verdict). Failures are recorded as probe
        errors; the benchmark itself never raises.
        """
        base = profile or self.get_profile()
        errors = list(base.probe_errors)
        logger.info("Starting hardware benchmark (%ss clip)", self.config.benchmark_clip_s)

        with tempfile.TemporaryDirectory(prefix="cliprr-bench-", dir=self._bench_dir()) as tmp:
            clip = str(Path(tmp) / "bench.mp4")
            result = self._new_runner().generate_test_clip(clip, self.config.benchmark_clip_s)
            if not result.success:
                msg = f"Benchmark clip generation failed: {result.error_summary}"
                logger.warning(msg)
                errors.append(msg)
                scored = base.model_copy(
                    update={"probe_errors": errors, "benchmarked_at": datetime.now()}
                )
                return self._store(scored)

            cpu_fps = self._measure_fps(clip, None, errors, "CPU")

            scored_accelerators = []
            for accel in base.accelerators:
                single = self._measure_fps(clip, accel.hwaccel_args(), errors, accel.name)
                scaling = None
                sustains = False
                if single:
                    aggregate = self._measure_concurrent_fps(clip, accel.hwaccel_args(), errors, accel.name)
                    if aggregate:
                        scaling = round(aggregate / single, 3)
                        sustains = scaling >= self.config.concurrency_scaling_threshold
                scored_accelerators.append(
                    accel.model_copy(
                        update={
                            "benchmark_fps": single,
                            "concurrency_scaling": scaling,
                            "sustains_concurrency": sustains,
                        }
                    )
                )

        scored = base.model_copy(
            update={
                "accelerators": scored_accelerators,
                "cpu_benchmark_fps": cpu_fps,
                "probe_errors": errors,
                "benchmarked_at": datetime.now(),
            }
        )
        logger.info(
            "Benchmark complete: CPU %s fps; %s",
            cpu_fps,
            ", ".join(
                f"{a.name} {a.benchmark_fps} fps (x{a.concurrency_scaling})"
                for a in scored.accelerators
            ) or "no accelerators",
        )
        return self._store(scored)

    def _store(self, profile: HardwareProfile) -> HardwareProfile:
        with self._lock:
            self._profile = profile
        self._publish(profile)
        return profile

    def _bench_dir(self) -> Optional[str]:
        if self.temp_dir:
            Path(self.temp_dir).mkdir(parents=True, exist_ok=True)
        return self.temp_dir

    def _new_runner(self) -> FfmpegRunner:
        timeout = self.config.benchmark_timeout_s
        return self._runner_factory(global_timeout_s=timeout, no_progress_timeout_s=min(60, timeout))

    @staticmethod
    def _fps(result: FfmpegResult) -> Optional[float]:
        frames = result.final_progress.frame if result.final_progress else 0
        if not result.success or frames <= 0 or result.duration_s <= 0:
            return None
        return round(frames / result.duration_s, 1)

    def _measure_fps(
        self, clip: str, hwaccel_args: Optional[List[str]], errors: List[str], label: str
    ) -> Optional[float]:
        result = self._new_runner().decode_benchmark(clip, hwaccel_args)
        fps = self._fps(result)
        if fps is None:
            msg = f"Benchmark decode failed on {label}: {result.error_summary}"
            logger.warning(msg)
            errors.append(msg)
        return fps

    def _measure_concurrent_fps(
        self, clip: str, hwaccel_args: List[str], errors: List[str], label: str
    ) -> Optional[float]:
        """Aggregate fps of two simultaneous decode sessions."""
        start = time.time()
        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [
                executor.submit(self._new_runner().decode_benchmark, clip, hwaccel_args)
                for _ in range(2)
            ]
            results = [f.result() for f in futures]
        elapsed = time.time() - start

        if not all(r.success for r in results):
            failed = next(r for r in results if not r.success)
            msg = f"Concurrent benchmark failed on {label}: {failed.error_summary}"
            logger.warning(msg)
            errors.append(msg)
            return None

        frames = sum(r.final_progress.frame for r in results if r.final_progress)
        return round(frames / elapsed, 1) if frames and elapsed > 0 else None
