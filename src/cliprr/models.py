"""Pydantic models for configuration and detection output."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class DetectionConfig(BaseModel):
    """Audio fingerprint and matching parameters."""

    sample_rate: int = Field(default=11025, gt=0, description="Mono resample rate for analysis (Hz)")
    hop_length: int = Field(default=512, gt=0, description="STFT hop length in samples")
    n_bands: int = Field(default=16, ge=2, le=128, description="Mel bands per fingerprint frame")
    window_s: float = Field(
        default=2.0, gt=0.0, description="Fingerprint window length in seconds (match resolution)"
    )
    sub_blocks: int = Field(
        default=4, ge=1, description="Temporal sub-blocks per window (adds ordering to the fingerprint)"
    )
    similarity_threshold: float = Field(
        default=0.80, ge=0.0, le=1.0, description="Minimum window correlation counted as a match"
    )
    min_agree_fraction: float = Field(
        default=0.5, gt=0.0, le=1.0, description="Fraction of siblings that must match a window"
    )
    merge_gap_s: float = Field(
        default=4.0, ge=0.0, description="Maximum gap bridged when merging matched windows"
    )
    min_segment_duration_s: float = Field(
        default=15.0, gt=0.0, description="Matches shorter than this are discarded as noise"
    )
    max_segment_duration_s: float = Field(
        default=240.0, gt=0.0, description="Matches longer than this are discarded"
    )
    intro_search_s: float = Field(
        default=600.0, gt=0.0, description="Seconds from the start searched for intros/recaps"
    )
    credits_search_s: float = Field(
        default=300.0, ge=0.0, description="Seconds from the end searched for credits (0 = skip)"
    )
    max_siblings: int = Field(default=6, ge=1, description="Maximum sibling episodes compared")
    extraction_timeout_s: int = Field(
        default=300, gt=0, description="Global timeout for one ffmpeg audio extraction"
    )
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Kill extraction when ffmpeg reports no progress for N seconds"
    )


class HardwareConfig(BaseModel):
    """Accelerator probing and benchmark settings."""

    enable_gpu: bool = Field(default=True, description="Probe for and use GPU accelerators")
    probe_timeout_s: float = Field(default=10.0, gt=0.0, description="Timeout per probe command")
    benchmark_clip_s: int = Field(
        default=20, gt=0, description="Length of the synthetic clip decoded by the benchmark"
    )
    benchmark_timeout_s: int = Field(
        default=300, gt=0, description="Upper bound for any single benchmark run"
    )
    gpu_jobs_per_accelerator: int = Field(
        default=2, ge=1, description="GPU slots per accelerator when it sustains concurrent sessions"
    )
    concurrency_scaling_threshold: float = Field(
        default=1.5,
        gt=1.0,
        description="Aggregate/single throughput ratio needed to trust concurrent sessions",
    )


class WorkerConfig(BaseModel):
    """Worker pool sizing and timing."""

    cpu_max: Optional[int] = Field(default=None, ge=0, description="Hard cap on CPU workers")
    gpu_max: Optional[int] = Field(default=None, ge=0, description="Hard cap on GPU workers")
    tick_interval_s: float = Field(
        default=5.0, gt=0.0, description="Pool resize / heartbeat / staleness check period"
    )
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Max wait between dequeue attempts when idle"
    )
    shutdown_grace_s: float = Field(
        default=10.0, ge=0.0, description="Time allowed for in-flight jobs to stop on shutdown"
    )
    invalid_transition_alarm_threshold: int = Field(
        default=3, ge=1, description="InvalidTransitionError count that raises a process alarm"
    )


class QueueConfig(BaseModel):
    """Job queue storage and recovery settings."""

    db_path: str = Field(default="data/cliprr.db", description="SQLite database path")
    default_queue: str = Field(default="show-processing", description="Lane used when none given")
    stale_after_s: int = Field(
        default=3600, gt=0, description="Active jobs without heartbeat for this long are stale"
    )
    requeue_orphans_on_startup: bool = Field(
        default=True, description="Fail and re-enqueue stale active jobs when the service starts"
    )
    max_attempts: int = Field(default=3, ge=1, description="Attempt limit used by retry_failed")


class PathsConfig(BaseModel):
    """Filesystem locations."""

    temp_dir: str = Field(default="data/temp", description="Root for per-job scratch directories")


class LoggingConfig(BaseModel):
    """Logging setup."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")


class ApiConfig(BaseModel):
    """HTTP surface settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8484, gt=0, lt=65536)


class CliprrConfig(BaseModel):
    """Complete application configuration with validation."""

    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    hardware: HardwareConfig = Field(default_factory=HardwareConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "CliprrConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "CliprrConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("temp_dir") is not None:
            config_dict["paths"]["temp_dir"] = cli_args["temp_dir"]
        if cli_args.get("cpu_workers") is not None:
            config_dict["workers"]["cpu_max"] = cli_args["cpu_workers"]
        if cli_args.get("gpu_workers") is not None:
            config_dict["workers"]["gpu_max"] = cli_args["gpu_workers"]
        if cli_args.get("no_gpu"):
            config_dict["hardware"]["enable_gpu"] = False
        if cli_args.get("threshold") is not None:
            config_dict["detection"]["similarity_threshold"] = cli_args["threshold"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return CliprrConfig.from_dict(config_dict)


class SegmentMatch(BaseModel):
    """A span of an episode that recurs across its siblings."""

    show_id: int
    episode_id: int
    season_number: int = Field(ge=0)
    start_offset: float = Field(ge=0.0, description="Start in seconds of media time")
    end_offset: float = Field(gt=0.0, description="End in seconds of media time")
    confidence: float = Field(ge=0.0, le=1.0, description="Mean window similarity of the match")
    label: Literal["intro", "credits"] = Field(default="intro")

    @field_validator("end_offset")
    @classmethod
    def end_after_start(cls, v: float, info) -> float:
        """Validate that end time is after start time."""
        if "start_offset" in info.data and v <= info.data["start_offset"]:
            raise ValueError(f"end_offset ({v}) must be > start_offset ({info.data['start_offset']})")
        return v

    @property
    def duration(self) -> float:
        return self.end_offset - self.start_offset


def sort_matches(matches: List[SegmentMatch]) -> List[SegmentMatch]:
    """Stable output order: by start offset, then end offset."""
    return sorted(matches, key=lambda m: (m.start_offset, m.end_offset, m.label))
