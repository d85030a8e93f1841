"""FFmpeg runner with process isolation, timeout enforcement, and cancellation.

This module provides robust FFmpeg orchestration for audio extraction and
decode benchmarks. It prevents zombie processes, enforces timeouts, honours a
cancellation event and classifies failures for the job error taxonomy.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Cooperative cancellation through a threading.Event
- Real-time progress parsing from FFmpeg stderr
- Process tree cleanup with psutil
- Error classification (permanent, transient, timeout, cancelled)
"""

import logging
import re
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import psutil

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 200

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+)\.(\d+)")
_STATS_TIME_RE = re.compile(r"\btime=(\d+):(\d+):(\d+)\.(\d+)")
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+)\.(\d+)")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # Disk I/O stall, resource temporarily unavailable
    TIMEOUT = "timeout"         # Process timeout (global or no-progress)
    CANCELLED = "cancelled"     # Cancel event set while running


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Expected duration (if known)
    frame: int = 0                   # Current frame number
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    last_update: float = 0.0         # Timestamp of last update


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    media_duration_s: Optional[float] = None  # Input duration reported by FFmpeg

    @property
    def error_summary(self) -> str:
        """Last meaningful stderr line, for human-readable job errors."""
        for line in reversed(self.stderr.splitlines()):
            line = line.strip()
            if line and "=" not in line.split(" ")[0]:
                return line[:300]
        return f"ffmpeg exited with code {self.returncode}"


def check_ffmpeg() -> bool:
    """Verify ffmpeg is installed and runs."""
    try:
        subprocess.run(
            [FfmpegRunner._get_ffmpeg_exe(), "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, OSError, RuntimeError):
        return False


def _hms_to_seconds(h: str, m: str, s: str, frac: str) -> float:
    return int(h) * 3600 + int(m) * 60 + int(s) + float(f"0.{frac}")


class FfmpegRunner:
    """FFmpeg orchestration with timeout, cancellation and zombie prevention.

    Example:
        >>> cancel = threading.Event()
        >>> runner = FfmpegRunner(global_timeout_s=300, cancel_event=cancel)
        >>> result = runner.extract_audio("episode.mkv", "/tmp/head.wav", 11025, duration=600)
        >>> if not result.success:
        ...     print(result.error_type, result.error_summary)

    One runner may be shared by sequential calls from the same thread; use a
    runner per worker thread.
    """

    def __init__(
        self,
        global_timeout_s: float = 300,
        no_progress_timeout_s: float = 120,
        kill_grace_period_s: float = 5,
        ffmpeg_loglevel: str = "info",
        cancel_event: Optional[threading.Event] = None,
        poll_interval_s: float = 0.2,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Kill if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            ffmpeg_loglevel: FFmpeg log level (must keep the Duration banner)
            cancel_event: When set, the running process tree is killed
            poll_interval_s: How often timeouts and cancellation are checked
            progress_callback: Optional callback for progress updates
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.cancel_event = cancel_event or threading.Event()
        self.poll_interval_s = poll_interval_s
        self.progress_callback = progress_callback

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_lines: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._media_duration: Optional[float] = None

    def extract_audio(
        self,
        source_path: str,
        output_path: str,
        sample_rate: int,
        start: Optional[float] = None,
        duration: Optional[float] = None,
        hwaccel_args: Optional[List[str]] = None,
    ) -> FfmpegResult:
        """Extract a mono 16-bit PCM WAV of a region of the source.

        Uses fast seek before input (-ss before -i). The source is only read.

        Args:
            source_path: Input media file
            output_path: WAV file to write
            sample_rate: Output sample rate in Hz
            start: Region start in seconds (None = from the beginning)
            duration: Region length in seconds (None = to the end)
            hwaccel_args: Input options selecting a hardware decoder (GPU class)
        """
        exe = self._resolve_exe()
        if exe is None:
            return self._unavailable()

        cmd = [exe, "-y", "-nostdin"]
        if hwaccel_args:
            cmd.extend(hwaccel_args)
        if start:
            cmd.extend(["-ss", f"{start:.3f}"])
        cmd.extend(["-i", source_path])
        if duration is not None:
            cmd.extend(["-t", f"{duration:.3f}"])
        cmd.extend([
            "-vn", "-sn", "-dn",
            "-ac", "1",
            "-ar", str(sample_rate),
            "-c:a", "pcm_s16le",
            "-progress", "pipe:2",  # Progress to stderr
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ])
        return self.run(cmd, expected_duration=duration)

    def generate_test_clip(self, output_path: str, duration_s: float) -> FfmpegResult:
        """Encode a synthetic 720p clip (testsrc2 + sine) for benchmarks."""
        exe = self._resolve_exe()
        if exe is None:
            return self._unavailable()

        cmd = [
            exe, "-y", "-nostdin",
            "-f", "lavfi", "-i", f"testsrc2=size=1280x720:rate=30:duration={duration_s}",
            "-f", "lavfi", "-i", f"sine=frequency=440:duration={duration_s}",
            "-c:v", "libx264", "-preset", "ultrafast", "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-shortest",
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]
        return self.run(cmd, expected_duration=duration_s)

    def decode_benchmark(
        self, source_path: str, hwaccel_args: Optional[List[str]] = None
    ) -> FfmpegResult:
        """Decode the source to the null muxer as fast as possible."""
        exe = self._resolve_exe()
        if exe is None:
            return self._unavailable()

        cmd = [exe, "-nostdin"]
        if hwaccel_args:
            cmd.extend(hwaccel_args)
        cmd.extend([
            "-i", source_path,
            "-f", "null", "-",
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
        ])
        return self.run(cmd)

    def run(self, cmd: List[str], expected_duration: Optional[float] = None) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement, cancellation and monitoring.

        Args:
            cmd: FFmpeg command as list
            expected_duration: Expected output duration for progress reporting

        Returns:
            FfmpegResult with execution details (never raises for FFmpeg failures)
        """
        start_time = time.time()
        self._progress = FfmpegProgress(
            total_duration_s=expected_duration or 0.0, last_update=start_time
        )
        self._stderr_lines = deque(maxlen=STDERR_TAIL_LINES)
        self._media_duration = None

        if self.cancel_event.is_set():
            return self._result(-1, start_time, FfmpegErrorType.CANCELLED)

        logger.debug("Running: %s", " ".join(cmd))
        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,  # Line buffered for real-time progress
            )
        except OSError as e:
            # Executable missing or not runnable
            self._stderr_lines.append(str(e))
            return self._result(-1, start_time, FfmpegErrorType.PERMANENT)

        monitor = threading.Thread(
            target=self._monitor_progress, args=(self._process.stderr,), daemon=True
        )
        monitor.start()

        error_type: Optional[FfmpegErrorType] = None
        try:
            while self._process.poll() is None:
                if self.cancel_event.wait(self.poll_interval_s):
                    error_type = FfmpegErrorType.CANCELLED
                    break

                now = time.time()
                if now - start_time > self.global_timeout_s:
                    logger.warning("FFmpeg exceeded global timeout (%ss)", self.global_timeout_s)
                    error_type = FfmpegErrorType.TIMEOUT
                    break
                if now - self._progress.last_update > self.no_progress_timeout_s:
                    logger.warning(
                        "FFmpeg made no progress for %ss", self.no_progress_timeout_s
                    )
                    error_type = FfmpegErrorType.TIMEOUT
                    break

            if error_type is not None:
                self._kill_process_tree()
                returncode = -1
            else:
                returncode = self._process.returncode
        except BaseException:
            # Unexpected error - ensure cleanup
            self._kill_process_tree()
            raise
        finally:
            monitor.join(timeout=2)
            self._process = None

        if error_type is None and returncode != 0:
            error_type = self._classify_error("\n".join(self._stderr_lines))

        return self._result(returncode, start_time, error_type)

    def _result(
        self, returncode: int, start_time: float, error_type: Optional[FfmpegErrorType]
    ) -> FfmpegResult:
        return FfmpegResult(
            success=(returncode == 0 and error_type is None),
            returncode=returncode,
            stderr="\n".join(self._stderr_lines),
            duration_s=time.time() - start_time,
            error_type=error_type,
            final_progress=self._progress,
            media_duration_s=self._media_duration,
        )

    def _monitor_progress(self, stderr_stream) -> None:
        """Monitor FFmpeg stderr for progress updates.

        FFmpeg progress format (-progress pipe:2):
            frame=123
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        last_callback = 0.0

        try:
            for line in stderr_stream:
                line = line.rstrip()
                self._stderr_lines.append(line)

                if self._media_duration is None and "Duration:" in line:
                    match = _DURATION_RE.search(line)
                    if match:
                        self._media_duration = _hms_to_seconds(*match.groups())

                match = _OUT_TIME_RE.search(line) or _STATS_TIME_RE.search(line)
                if match:
                    self._progress.current_time_s = _hms_to_seconds(*match.groups())
                    self._progress.last_update = time.time()

                if line.startswith("frame="):
                    match = _FRAME_RE.search(line)
                    if match:
                        self._progress.frame = int(match.group(1))
                        self._progress.last_update = time.time()

                if "speed=" in line:
                    match = _SPEED_RE.search(line)
                    if match:
                        self._progress.speed = float(match.group(1))

                now = time.time()
                if self.progress_callback and now - last_callback >= 2.0:
                    try:
                        self.progress_callback(self._progress)
                        last_callback = now
                    except Exception:
                        # Don't crash monitor thread on callback errors
                        logger.exception("Progress callback error")
        except (OSError, ValueError) as e:
            # Stream closed underneath us during a kill
            logger.debug("Progress monitoring stopped: %s", e)

    def _kill_process_tree(self) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. SIGTERM to the process and its children
        2. Wait grace period
        3. SIGKILL survivors
        """
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
        except psutil.NoSuchProcess:
            return

        try:
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        for proc in children + [parent]:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(children + [parent], timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("FFmpeg process %s did not exit after SIGKILL", self._process.pid)

    @staticmethod
    def _classify_error(stderr: str) -> FfmpegErrorType:
        """Classify an FFmpeg failure from its stderr."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "does not contain any stream",
            "output file #0 does not contain any stream",
            "matches no streams",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        transient_patterns = [
            "i/o error",
            "resource temporarily unavailable",
            "no space left",
            "cannot allocate memory",
        ]
        for pattern in transient_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.TRANSIENT

        # Default: treat as transient
        return FfmpegErrorType.TRANSIENT

    def _resolve_exe(self) -> Optional[str]:
        """FFmpeg path, or None when no binary can be found (reason kept as stderr)."""
        try:
            return self._get_ffmpeg_exe()
        except RuntimeError as e:
            logger.error("FFmpeg unavailable: %s", e)
            self._stderr_lines = deque([f"ffmpeg unavailable: {e}"], maxlen=STDERR_TAIL_LINES)
            return None

    def _unavailable(self) -> FfmpegResult:
        self._progress = FfmpegProgress()
        self._media_duration = None
        return self._result(-1, time.time(), FfmpegErrorType.PERMANENT)

    @staticmethod
    def _get_ffmpeg_exe() -> str:
        """Get FFmpeg executable path (honours IMAGEIO_FFMPEG_EXE)."""
        import imageio_ffmpeg
        return imageio_ffmpeg.get_ffmpeg_exe()
