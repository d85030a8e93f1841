"""Tests for hardware probing and the decode benchmark (all subprocesses mocked)."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from cliprr import hardware
from cliprr.errors import HardwareProbeError
from cliprr.ffmpeg_runner import FfmpegErrorType, FfmpegProgress, FfmpegResult
from cliprr.hardware import (
    Accelerator,
    AcceleratorKind,
    HardwareProfile,
    HardwareProfiler,
    _get_nvidia_session_limit,
)
from cliprr.models import HardwareConfig


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


HWACCELS_OUT = "Hardware acceleration methods:\nvdpau\ncuda\nvaapi\n"


def fake_run(responses):
    """subprocess.run replacement keyed on the command's first element."""

    def run(cmd, **kwargs):
        for key, response in responses.items():
            if key in cmd[0] or key in " ".join(cmd):
                if isinstance(response, Exception):
                    raise response
                return response
        raise FileNotFoundError(cmd[0])

    return run


@pytest.fixture(autouse=True)
def no_dri(tmp_path, monkeypatch):
    """Point the VAAPI probe at an empty directory unless a test overrides it."""
    monkeypatch.setattr(hardware, "DRI_PATH", tmp_path / "no-dri")
    monkeypatch.setattr(hardware, "SYS_DRM_PATH", tmp_path / "no-sys")
    monkeypatch.setattr(hardware.platform, "system", lambda: "Linux")
    monkeypatch.setattr(hardware.FfmpegRunner, "_get_ffmpeg_exe", staticmethod(lambda: "ffmpeg"))


class TestAccelerator:
    def test_nvidia_args(self):
        accel = Accelerator(name="RTX", kind=AcceleratorKind.NVIDIA, device="1")
        assert accel.hwaccel_args() == ["-hwaccel", "cuda", "-hwaccel_device", "1"]

    def test_vaapi_args(self):
        accel = Accelerator(name="Intel", kind=AcceleratorKind.VAAPI, device="/dev/dri/renderD129")
        assert accel.hwaccel_args() == ["-hwaccel", "vaapi", "-hwaccel_device", "/dev/dri/renderD129"]

    def test_videotoolbox_args(self):
        accel = Accelerator(name="Apple", kind=AcceleratorKind.VIDEOTOOLBOX)
        assert accel.hwaccel_args() == ["-hwaccel", "videotoolbox"]

    def test_session_limits(self):
        assert _get_nvidia_session_limit("NVIDIA GeForce RTX 4090") == 5
        assert _get_nvidia_session_limit("Tesla T4") == 999
        assert _get_nvidia_session_limit("Mystery GPU") == 3

    def test_slot_round_robin(self):
        a = Accelerator(name="a", kind=AcceleratorKind.NVIDIA, device="0")
        b = Accelerator(name="b", kind=AcceleratorKind.NVIDIA, device="1")
        profile = HardwareProfile(cpu_cores=4, accelerators=[a, b])
        assert [profile.accelerator_for_slot(i).name for i in range(4)] == ["a", "b", "a", "b"]
        assert HardwareProfile(cpu_cores=4).accelerator_for_slot(0) is None


class TestDetection:
    def test_cpu_only_host(self):
        responses = {"-hwaccels": completed("Hardware acceleration methods:\n")}
        with patch("subprocess.run", side_effect=fake_run(responses)):
            with patch("psutil.cpu_count", return_value=6):
                profile = HardwareProfiler().detect()

        assert profile.cpu_cores == 6
        assert profile.accelerators == []
        assert profile.probe_errors == []
        assert not profile.has_gpu

    def test_nvidia_detected(self):
        responses = {
            "-hwaccels": completed(HWACCELS_OUT),
            "nvidia-smi": completed("0, NVIDIA GeForce RTX 3080\n1, Tesla T4\n"),
        }
        with patch("subprocess.run", side_effect=fake_run(responses)):
            profile = HardwareProfiler().detect()

        assert [a.name for a in profile.accelerators] == ["NVIDIA GeForce RTX 3080", "Tesla T4"]
        assert [a.device for a in profile.accelerators] == ["0", "1"]
        assert profile.accelerators[0].max_sessions == 3
        assert profile.accelerators[0].kind == AcceleratorKind.NVIDIA

    def test_nvidia_without_cuda_hwaccel_is_a_probe_error(self):
        responses = {
            "-hwaccels": completed("Hardware acceleration methods:\nvaapi\n"),
            "nvidia-smi": completed("0, NVIDIA GeForce RTX 3080\n"),
        }
        with patch("subprocess.run", side_effect=fake_run(responses)):
            profile = HardwareProfiler().detect()

        assert profile.accelerators == []
        assert any("cuda" in e for e in profile.probe_errors)

    def test_missing_ffmpeg_degrades_to_cpu(self):
        responses = {"-hwaccels": FileNotFoundError("ffmpeg")}
        with patch("subprocess.run", side_effect=fake_run(responses)):
            profile = HardwareProfiler().detect()

        assert profile.accelerators == []
        assert len(profile.probe_errors) == 1

    def test_no_ffmpeg_binary_degrades_to_cpu(self, monkeypatch):
        """imageio-ffmpeg raising for a missing binary is recorded, not propagated."""

        def no_binary():
            raise RuntimeError("No ffmpeg exe could be found")

        monkeypatch.setattr(hardware.FfmpegRunner, "_get_ffmpeg_exe", staticmethod(no_binary))
        with patch("subprocess.run", side_effect=fake_run({})):
            profiler = HardwareProfiler()
            profile = profiler.get_profile()

        assert profile.cpu_cores >= 1
        assert profile.accelerators == []
        assert any("ffmpeg not available" in e for e in profile.probe_errors)

    def test_probe_timeout_is_recorded(self):
        responses = {"-hwaccels": subprocess.TimeoutExpired(cmd="ffmpeg", timeout=10)}
        with patch("subprocess.run", side_effect=fake_run(responses)):
            profile = HardwareProfiler().detect()

        assert "timed out" in profile.probe_errors[0]

    def test_vaapi_render_nodes(self, tmp_path, monkeypatch):
        dri = tmp_path / "dri"
        dri.mkdir()
        (dri / "renderD128").touch()
        (dri / "renderD129").touch()
        sys_drm = tmp_path / "drm"
        for node, vendor in (("renderD128", "0x8086"), ("renderD129", "0x10de")):
            (sys_drm / node / "device").mkdir(parents=True)
            (sys_drm / node / "device" / "vendor").write_text(vendor + "\n")
        monkeypatch.setattr(hardware, "DRI_PATH", dri)
        monkeypatch.setattr(hardware, "SYS_DRM_PATH", sys_drm)

        responses = {
            "-hwaccels": completed(HWACCELS_OUT),
            "nvidia-smi": completed("0, NVIDIA GeForce RTX 3080\n"),
        }
        with patch("subprocess.run", side_effect=fake_run(responses)):
            profile = HardwareProfiler().detect()

        kinds = [(a.kind, a.device) for a in profile.accelerators]
        # The NVIDIA render node is already covered by the cuda accelerator
        assert kinds == [
            (AcceleratorKind.NVIDIA, "0"),
            (AcceleratorKind.VAAPI, str(dri / "renderD128")),
        ]
        assert profile.accelerators[1].name.startswith("Intel")

    def test_gpu_disabled_skips_probes(self):
        run = MagicMock()
        with patch("subprocess.run", run):
            profile = HardwareProfiler(HardwareConfig(enable_gpu=False)).detect()

        run.assert_not_called()
        assert profile.accelerators == []

    def test_run_probe_raises_probe_error(self):
        with patch("subprocess.run", side_effect=FileNotFoundError("nope")):
            with pytest.raises(HardwareProbeError):
                HardwareProfiler()._run_probe(["nope"])


class TestProfileCache:
    def test_get_profile_is_cached(self):
        profiler = HardwareProfiler()
        with patch.object(profiler, "_probe", return_value=HardwareProfile(cpu_cores=2)) as probe:
            first = profiler.get_profile()
            second = profiler.get_profile()

        assert first is second
        probe.assert_called_once()

    def test_detect_replaces_and_notifies(self):
        profiler = HardwareProfiler()
        seen = []
        profiler.add_listener(seen.append)
        with patch.object(
            profiler, "_probe", side_effect=[HardwareProfile(cpu_cores=2), HardwareProfile(cpu_cores=8)]
        ):
            profiler.get_profile()
            profiler.detect()

        assert [p.cpu_cores for p in seen] == [2, 8]
        assert profiler.get_profile().cpu_cores == 8


def bench_result(success=True, frames=600, duration_s=2.0):
    return FfmpegResult(
        success=success,
        returncode=0 if success else 1,
        stderr="" if success else "Device creation failed",
        duration_s=duration_s,
        error_type=None if success else FfmpegErrorType.PERMANENT,
        final_progress=FfmpegProgress(frame=frames),
    )


class FakeBenchRunner:
    """Decode results per hwaccel: CPU 300 fps, GPU 600 fps single."""

    concurrent_frames = 600

    def __init__(self, **kwargs):
        pass

    def generate_test_clip(self, output_path, duration_s):
        return bench_result()

    def decode_benchmark(self, source_path, hwaccel_args=None):
        if hwaccel_args:
            return bench_result(frames=self.concurrent_frames, duration_s=1.0)
        return bench_result(frames=600, duration_s=2.0)


class TestBenchmark:
    def _profile(self):
        return HardwareProfile(
            cpu_cores=4,
            accelerators=[Accelerator(name="RTX", kind=AcceleratorKind.NVIDIA, device="0")],
        )

    def test_benchmark_scores_accelerators(self, tmp_path):
        profiler = HardwareProfiler(temp_dir=str(tmp_path), runner_factory=FakeBenchRunner)
        with patch.object(profiler, "_probe", return_value=self._profile()):
            with patch.object(hardware, "time") as clock:
                clock.time.side_effect = [0.0, 1.0]
                profile = profiler.benchmark()

        assert profile.cpu_benchmark_fps == 300.0
        accel = profile.accelerators[0]
        assert accel.benchmark_fps == 600.0
        # Two sessions of 600 frames in 1s = 1200 fps aggregate
        assert accel.concurrency_scaling == 2.0
        assert accel.sustains_concurrency is True
        assert profile.benchmarked_at is not None
        assert profiler.get_profile() is profile

    def test_poor_scaling_is_not_trusted(self, tmp_path):
        class SaturatedRunner(FakeBenchRunner):
            concurrent_frames = 600

        profiler = HardwareProfiler(temp_dir=str(tmp_path), runner_factory=SaturatedRunner)
        with patch.object(profiler, "_probe", return_value=self._profile()):
            # Two sessions take 1.6s together: 750 fps aggregate, x1.25
            with patch.object(hardware, "time") as clock:
                clock.time.side_effect = [0.0, 1.6]
                profile = profiler.benchmark()

        assert profile.accelerators[0].concurrency_scaling == 1.25
        assert profile.accelerators[0].sustains_concurrency is False

    def test_failed_accelerator_recorded(self, tmp_path):
        class BrokenGpuRunner(FakeBenchRunner):
            def decode_benchmark(self, source_path, hwaccel_args=None):
                if hwaccel_args:
                    return bench_result(success=False)
                return super().decode_benchmark(source_path, hwaccel_args)

        profiler = HardwareProfiler(temp_dir=str(tmp_path), runner_factory=BrokenGpuRunner)
        with patch.object(profiler, "_probe", return_value=self._profile()):
            profile = profiler.benchmark()

        accel = profile.accelerators[0]
        assert accel.benchmark_fps is None
        assert accel.sustains_concurrency is False
        assert any("RTX" in e for e in profile.probe_errors)

    def test_clip_generation_failure(self, tmp_path):
        class NoEncoderRunner(FakeBenchRunner):
            def generate_test_clip(self, output_path, duration_s):
                return bench_result(success=False)

        profiler = HardwareProfiler(temp_dir=str(tmp_path), runner_factory=NoEncoderRunner)
        with patch.object(profiler, "_probe", return_value=self._profile()):
            profile = profiler.benchmark()

        assert profile.cpu_benchmark_fps is None
        assert profile.benchmarked_at is not None
        assert any("clip generation" in e for e in profile.probe_errors)
